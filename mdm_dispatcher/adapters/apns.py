"""HTTP/2 client for the Apple Push Notification service."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..config import ApnsConfig, ConfigurationError
from ..core.protocols import (
    GatewayAccepted,
    GatewayOutcome,
    GatewayRejected,
    GatewayTransportError,
)
from ..logging import mask_token

LOGGER = logging.getLogger(__name__)

EXPIRED_PROVIDER_TOKEN = "ExpiredProviderToken"


class ProviderTokenSigner:
    """Issues ES256 provider tokens for APNs token-based authentication.

    APNs accepts a provider token for up to an hour and throttles clients that
    re-sign too often, so the signed token is cached and only refreshed after
    ``refresh_seconds`` or when APNs reports it expired.
    """

    def __init__(
        self,
        *,
        team_id: str,
        key_id: str,
        private_key: ec.EllipticCurvePrivateKey,
        refresh_seconds: int = 3000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._team_id = team_id
        self._key_id = key_id
        self._private_key = private_key
        self._refresh_seconds = refresh_seconds
        self._clock = clock or time.time
        self._token: Optional[str] = None
        self._issued_at = 0

    @classmethod
    def from_file(
        cls,
        path: Path,
        *,
        team_id: str,
        key_id: str,
        refresh_seconds: int = 3000,
    ) -> "ProviderTokenSigner":
        """Load a PKCS#8 ``.p8`` signing key downloaded from Apple."""
        try:
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Failed to load APNs signing key from {path}: {exc}"
            ) from exc
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ConfigurationError(f"APNs signing key at {path} is not an EC key")
        return cls(
            team_id=team_id,
            key_id=key_id,
            private_key=key,
            refresh_seconds=refresh_seconds,
        )

    def token(self) -> str:
        now = int(self._clock())
        if self._token is None or now - self._issued_at >= self._refresh_seconds:
            self._token = self._sign(now)
            self._issued_at = now
            LOGGER.debug("Signed new APNs provider token (kid=%s)", self._key_id)
        return self._token

    def invalidate(self) -> None:
        self._token = None

    def _sign(self, issued_at: int) -> str:
        return jwt.encode(
            {"iss": self._team_id, "iat": issued_at},
            self._private_key,
            algorithm="ES256",
            headers={"kid": self._key_id},
        )


class ApnsGatewayClient:
    """Sends MDM notifications to APNs over HTTP/2.

    Responses are mapped onto gateway outcomes: 200 is an acceptance, 429 and
    5xx are transient transport failures, and any other status is a rejection
    carrying Apple's reason string.
    """

    def __init__(
        self,
        config: ApnsConfig,
        signer: ProviderTokenSigner,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._signer = signer
        self._client = httpx.AsyncClient(
            base_url=f"https://{config.host}",
            http2=True,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )
        LOGGER.info("APNs client initialized for host: %s", config.host)

    @classmethod
    def from_config(cls, config: ApnsConfig) -> "ApnsGatewayClient":
        if not config.team_id or not config.key_id or config.auth_key_path is None:
            raise ConfigurationError("APNs credentials are not configured")
        signer = ProviderTokenSigner.from_file(
            config.auth_key_path,
            team_id=config.team_id,
            key_id=config.key_id,
            refresh_seconds=config.token_refresh_seconds,
        )
        return cls(config, signer)

    async def send(
        self, device_token: str, topic: str, payload: bytes
    ) -> GatewayOutcome:
        headers = {
            "authorization": f"bearer {self._signer.token()}",
            "apns-topic": topic,
            "apns-push-type": "mdm",
            "content-type": "application/json",
        }

        try:
            response = await self._client.post(
                f"/3/device/{device_token}", content=payload, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise GatewayTransportError(f"APNs request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise GatewayTransportError(f"APNs request failed: {exc}") from exc

        if response.status_code == 200:
            return GatewayAccepted(notification_id=response.headers.get("apns-id"))

        body = _parse_body(response)
        reason = str(body.get("reason") or f"HTTP {response.status_code}")

        if reason == EXPIRED_PROVIDER_TOKEN:
            self._signer.invalidate()
            raise GatewayTransportError(
                "APNs provider token expired", status=response.status_code
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayTransportError(
                f"APNs returned {response.status_code}: {reason}",
                status=response.status_code,
            )

        invalidated_at = None
        if response.status_code == 410:
            invalidated_at = _parse_timestamp(body.get("timestamp"))

        LOGGER.debug(
            "APNs rejected notification for %s with status %d (%s)",
            mask_token(device_token),
            response.status_code,
            reason,
        )
        return GatewayRejected(
            reason=reason,
            invalidated_at=invalidated_at,
            status=response.status_code,
        )

    async def aclose(self) -> None:
        LOGGER.info("Shutting down APNs client...")
        await self._client.aclose()
        LOGGER.info("APNs client shut down successfully.")


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """APNs reports token invalidation as milliseconds since the epoch."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
