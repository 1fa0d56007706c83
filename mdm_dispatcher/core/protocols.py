"""Protocol definitions for push gateway clients."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Union


class GatewayTransportError(RuntimeError):
    """Raised when a notification could not be delivered to the gateway.

    Covers network, TLS and timeout failures as well as transient gateway
    responses (throttling, server errors). These are retried.
    """

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True, slots=True)
class GatewayAccepted:
    notification_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GatewayRejected:
    reason: str
    invalidated_at: Optional[datetime] = None
    status: Optional[int] = None


GatewayOutcome = Union[GatewayAccepted, GatewayRejected]


class GatewayClient(Protocol):
    """Minimal contract for push-notification gateway clients."""

    async def send(
        self, device_token: str, topic: str, payload: bytes
    ) -> GatewayOutcome:
        """Send a notification and report the gateway's verdict.

        Raises:
            GatewayTransportError: If the notification never reached a
                definitive answer from the gateway.
        """
        ...

    async def aclose(self) -> None:
        """Close any underlying connections."""
        ...
