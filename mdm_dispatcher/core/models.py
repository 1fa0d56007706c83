"""Domain models for command dispatch and execution history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class CommandStatus(str, Enum):
    """Terminal outcome of a dispatched command."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    FAILED_TO_SEND = "FAILED_TO_SEND"


@dataclass(slots=True)
class CommandRequest:
    device_token: str
    payload: Dict[str, Any]

    @classmethod
    def from_json(cls, data: Any) -> "CommandRequest":
        """Build a request from a decoded ``{deviceToken, payload}`` body."""
        if not isinstance(data, Mapping):
            data = {}
        return cls(
            device_token=data.get("deviceToken"),
            payload=data.get("payload"),
        )


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Immutable record of a command's terminal outcome."""

    command_uuid: str
    status: CommandStatus
    rejection_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "commandUUID": self.command_uuid,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "rejectionReason": self.rejection_reason,
        }


@dataclass(frozen=True, slots=True)
class SubmissionAck:
    command_uuid: str
    device_token: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "message": "Command submitted for processing",
            "deviceToken": self.device_token,
            "commandUUID": self.command_uuid,
        }


@dataclass(slots=True)
class DispatchJob:
    """A single command on its way to the gateway.

    The same job instance is re-enqueued for every retry; only ``attempt``
    changes between attempts.
    """

    device_token: str
    topic: str
    command_uuid: str
    payload: bytes
    attempt: int = 0
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None
