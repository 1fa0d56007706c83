import asyncio
from configparser import ConfigParser
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from mdm_dispatcher.config import (
    ApnsConfig,
    DispatchConfig,
    DispatcherConfig,
    LoggingConfig,
    ServerConfig,
)
from mdm_dispatcher.core.protocols import GatewayAccepted, GatewayOutcome


class FakeGateway:
    """Gateway double that answers through a per-call outcome function.

    The outcome function receives the device token and the zero-based call
    index for that token; it returns a gateway outcome or an exception to
    raise.
    """

    def __init__(
        self,
        outcome: Optional[Callable[[str, int], Any]] = None,
        *,
        delay: Union[float, Callable[[str], float]] = 0.0,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.calls: list[tuple[str, str, bytes]] = []
        self.closed = False
        self._outcome = outcome or (lambda token, index: GatewayAccepted())
        self._delay = delay
        self._gate = gate

    def calls_for(self, device_token: str) -> list[bytes]:
        return [payload for token, _, payload in self.calls if token == device_token]

    async def send(self, device_token: str, topic: str, payload: bytes) -> GatewayOutcome:
        index = len(self.calls_for(device_token))
        self.calls.append((device_token, topic, payload))
        if self._gate is not None:
            await self._gate.wait()
        delay = self._delay(device_token) if callable(self._delay) else self._delay
        if delay:
            await asyncio.sleep(delay)
        result = self._outcome(device_token, index)
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def make_config() -> Callable[..., DispatcherConfig]:
    """Build an in-memory configuration with fast retries."""

    def factory(**dispatch: Any) -> DispatcherConfig:
        settings = {
            "pool_size": 4,
            "max_retries": 3,
            "initial_backoff_seconds": 0.0,
            "shutdown_grace_seconds": 1.0,
        }
        settings.update(dispatch)
        return DispatcherConfig(
            apns=ApnsConfig(team_id="TEAM123456", key_id="KEY7890123", topic="com.apple.mgmt.test"),
            server=ServerConfig(host="127.0.0.1", port=0),
            dispatch=DispatchConfig(**settings),
            logging=LoggingConfig(path=None),
            raw=ConfigParser(),
            path=Path("mdm-dispatcher.cfg"),
        )

    return factory


@pytest.fixture
def fake_gateway() -> type[FakeGateway]:
    return FakeGateway


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def wait_for() -> Callable[..., Any]:
    """Await until a predicate holds, failing the test after a timeout."""
    return _wait_for
