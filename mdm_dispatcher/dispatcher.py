"""Command dispatch pipeline for mdm-dispatcher.

Submissions are validated and acknowledged synchronously; the actual push to
the gateway runs on a bounded worker pool so callers (HTTP handlers, the CLI)
never wait on gateway latency. Each submission ends in exactly one
``CommandResult`` in the execution history:

- ``ACCEPTED`` when the gateway takes the notification,
- ``REJECTED`` when the gateway refuses it (never retried),
- ``FAILED_TO_SEND`` when transport failures outlast the retry policy or the
  dispatcher shuts down before the command could be delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Any, Dict, List, MutableMapping, Optional

from .config import DispatcherConfig
from .core.history import ExecutionHistoryStore
from .core.models import (
    CommandResult,
    CommandStatus,
    DispatchJob,
    SubmissionAck,
)
from .core.pool import (
    PoolClosedError,
    PoolSaturatedError,
    WorkerPool,
    cancel_requested,
)
from .core.protocols import (
    GatewayAccepted,
    GatewayClient,
    GatewayRejected,
    GatewayTransportError,
)
from .core.retry import RetryPolicy
from .logging import mask_token

LOGGER = logging.getLogger(__name__)

COMMAND_UUID_KEY = "CommandUUID"
SHUTDOWN_REASON = "dispatcher shutting down"
UNKNOWN_REJECTION_REASON = "Unknown reason"

_TOKEN_NOISE = re.compile(r"[\s<>]")


class CommandValidationError(ValueError):
    """Raised when a submission is missing required fields."""

    def __init__(self, message: str, *, code: str = "invalid_request") -> None:
        super().__init__(message)
        self.code = code


class DispatcherUnavailableError(RuntimeError):
    """Raised when submissions arrive while the dispatcher is not running."""


class DispatcherBusyError(RuntimeError):
    """Raised when the dispatch queue is full."""


def sanitize_token(device_token: str) -> str:
    """Strip the spaces and angle brackets of a printed token (`<ab12 cd34>`)."""
    return _TOKEN_NOISE.sub("", device_token)


def ensure_command_uuid(payload: MutableMapping[str, Any]) -> str:
    """Return the payload's CommandUUID, generating one in place if absent."""
    existing = payload.get(COMMAND_UUID_KEY)
    if existing is None or existing == "":
        generated = str(uuid.uuid4())
        payload[COMMAND_UUID_KEY] = generated
        LOGGER.warning("No CommandUUID found in payload. Generated new UUID: %s", generated)
        return generated
    return str(existing)


class CommandDispatcher:
    """Validates MDM command submissions and delivers them through a gateway.

    Usage:
        dispatcher = CommandDispatcher(config, gateway, history)
        await dispatcher.start()

        ack = dispatcher.submit(token, {"MessageType": "DeviceLock", "PIN": "1234"})
        ...
        await dispatcher.shutdown()
    """

    def __init__(
        self,
        config: DispatcherConfig,
        gateway: GatewayClient,
        history: Optional[ExecutionHistoryStore] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        dispatch = config.dispatch
        self._topic = config.apns.topic
        self._gateway = gateway
        self._history = history if history is not None else ExecutionHistoryStore()
        self._retry = retry_policy or RetryPolicy(
            max_retries=dispatch.max_retries,
            initial_backoff_seconds=dispatch.initial_backoff_seconds,
            max_backoff_seconds=dispatch.max_backoff_seconds,
            jitter_ratio=dispatch.backoff_jitter_ratio,
        )
        self._grace_seconds = dispatch.shutdown_grace_seconds
        self._pool = WorkerPool(
            self._run_job,
            size=dispatch.pool_size,
            max_queue_size=dispatch.max_queue_size,
            on_abandoned=self._abandon_job,
        )

    @property
    def history(self) -> ExecutionHistoryStore:
        return self._history

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def pending_count(self) -> int:
        return self._pool.pending_count

    @property
    def running(self) -> bool:
        return self._pool.running

    async def start(self) -> None:
        await self._pool.start()
        LOGGER.info(
            "Command dispatcher ready (topic=%s, workers=%d, max_retries=%d)",
            self._topic,
            self._pool.size,
            self._retry.max_retries,
        )

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        if self._pool.closed:
            return
        grace = self._grace_seconds if grace_seconds is None else grace_seconds
        LOGGER.info("Shutting down command dispatcher")
        abandoned = await self._pool.shutdown(grace)
        if abandoned:
            LOGGER.warning(
                "%d commands were abandoned during shutdown and recorded as %s",
                abandoned,
                CommandStatus.FAILED_TO_SEND.value,
            )

    async def __aenter__(self) -> "CommandDispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def submit(self, device_token: Any, payload: Any) -> SubmissionAck:
        """Validate a command and schedule it for delivery.

        Returns as soon as the command is queued; the outcome is recorded in
        the execution history later.

        Raises:
            CommandValidationError: The token or payload is missing.
            DispatcherUnavailableError: The dispatcher is not running.
            DispatcherBusyError: The dispatch queue is full.
        """
        if not isinstance(device_token, str) or not device_token.strip():
            raise CommandValidationError(
                "Invalid request body: deviceToken and payload are required"
            )
        if payload is None or not isinstance(payload, MutableMapping):
            raise CommandValidationError(
                "Invalid request body: deviceToken and payload are required"
            )

        token = sanitize_token(device_token)
        if not token:
            raise CommandValidationError(
                "Invalid request body: deviceToken and payload are required",
                code="invalid_token",
            )

        command_uuid = ensure_command_uuid(payload)

        try:
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise CommandValidationError(
                f"Payload is not JSON serializable: {exc}", code="invalid_payload"
            ) from exc

        job = DispatchJob(
            device_token=token,
            topic=self._topic,
            command_uuid=command_uuid,
            payload=body,
        )

        try:
            self._pool.submit(job)
        except PoolClosedError as exc:
            raise DispatcherUnavailableError(str(exc)) from exc
        except PoolSaturatedError as exc:
            raise DispatcherBusyError(str(exc)) from exc

        LOGGER.info(
            "Submitting MDM command %s to device token %s",
            command_uuid,
            mask_token(token),
        )
        return SubmissionAck(command_uuid=command_uuid, device_token=token)

    def snapshot(self) -> Dict[str, List[CommandResult]]:
        return self._history.snapshot()

    async def _run_job(self, job: DispatchJob) -> None:
        """Send one attempt of a job and settle or reschedule it."""
        try:
            outcome = await self._gateway.send(job.device_token, job.topic, job.payload)
        except asyncio.CancelledError:
            if self._pool.closed or cancel_requested():
                raise
            self._handle_transport_failure(
                job, GatewayTransportError("Gateway call was cancelled")
            )
            return
        except Exception as exc:
            self._handle_transport_failure(job, exc)
            return

        if isinstance(outcome, GatewayAccepted):
            LOGGER.info(
                "Command %s for device %s accepted by APNs.",
                job.command_uuid,
                mask_token(job.device_token),
            )
            self._settle(job, CommandStatus.ACCEPTED)
            return

        if isinstance(outcome, GatewayRejected):
            self._handle_rejection(job, outcome)
            return

        self._handle_transport_failure(
            job, TypeError(f"Unexpected gateway outcome: {outcome!r}")
        )

    def _handle_rejection(self, job: DispatchJob, outcome: GatewayRejected) -> None:
        reason = outcome.reason or UNKNOWN_REJECTION_REASON
        LOGGER.warning(
            "Command %s for device %s rejected by APNs. Reason: %s",
            job.command_uuid,
            mask_token(job.device_token),
            reason,
        )
        if outcome.invalidated_at is not None:
            LOGGER.error(
                "Token for device %s was invalidated at %s. It should be removed from the system.",
                mask_token(job.device_token),
                outcome.invalidated_at.isoformat(),
            )
        self._settle(job, CommandStatus.REJECTED, reason)

    def _handle_transport_failure(self, job: DispatchJob, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        job.last_error = message

        if self._retry.should_retry(job.attempt):
            job.attempt += 1
            delay = self._retry.delay_for(job.attempt - 1)
            LOGGER.warning(
                "Failed to send command %s to device %s: %s; retry %d/%d in %.2fs",
                job.command_uuid,
                mask_token(job.device_token),
                message,
                job.attempt,
                self._retry.max_retries,
                delay,
            )
            self._pool.submit_later(job, delay)
            return

        LOGGER.error(
            "Max retries reached for command %s to device %s: %s",
            job.command_uuid,
            mask_token(job.device_token),
            message,
        )
        self._settle(job, CommandStatus.FAILED_TO_SEND, message)

    def _abandon_job(self, job: DispatchJob) -> None:
        LOGGER.warning(
            "Command %s for device %s abandoned after %d attempts",
            job.command_uuid,
            mask_token(job.device_token),
            job.attempt + 1,
        )
        self._settle(job, CommandStatus.FAILED_TO_SEND, SHUTDOWN_REASON)

    def _settle(
        self, job: DispatchJob, status: CommandStatus, reason: Optional[str] = None
    ) -> None:
        self._history.record(
            job.device_token,
            CommandResult(
                command_uuid=job.command_uuid,
                status=status,
                rejection_reason=reason,
            ),
        )
