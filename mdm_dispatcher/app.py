"""Main application entry-point for mdm-dispatcher."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from .adapters import ApnsGatewayClient
from .config import DispatcherConfig, load_config
from .core.history import ExecutionHistoryStore
from .core.protocols import GatewayClient
from .dispatcher import CommandDispatcher
from .health import HealthReporter
from .logging import configure_logging
from .server import CommandApiServer

LOGGER = logging.getLogger(__name__)


class DispatcherApp:
    """Coordinates application startup and shutdown.

    Startup order is gateway client, dispatcher, HTTP server; shutdown runs in
    reverse so that no new commands arrive while the dispatcher drains and the
    gateway connection is only closed once nothing can use it.

    The gateway can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        *,
        gateway: Optional[GatewayClient] = None,
        history: Optional[ExecutionHistoryStore] = None,
    ) -> None:
        self._config = config or load_config()
        self._gateway = gateway
        self._history = history if history is not None else ExecutionHistoryStore()
        self._dispatcher: Optional[CommandDispatcher] = None
        self._server: Optional[CommandApiServer] = None
        self._health = HealthReporter()
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def dispatcher(self) -> Optional[CommandDispatcher]:
        return self._dispatcher

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Start all services and block until ``request_shutdown``."""

        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()

        LOGGER.info("Initializing MDM command dispatcher (config: %s)", self._config.path)
        try:
            await self._start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("mdm-dispatcher received shutdown signal")
            raise
        finally:
            await self._stop_services()
            self._remove_signal_handlers()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[DispatcherConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("mdm-dispatcher received shutdown signal")

    async def _start_services(self) -> None:
        apns = self._config.apns
        LOGGER.info(
            "APNs environment: %s", "Production" if apns.production else "Development"
        )

        if self._gateway is None:
            self._gateway = ApnsGatewayClient.from_config(apns)
        await self._health.update("gateway", True, apns.host)

        self._dispatcher = CommandDispatcher(self._config, self._gateway, self._history)
        await self._dispatcher.start()
        await self._health.update("dispatcher", True, None)

        server_config = self._config.server
        server = CommandApiServer(
            self._dispatcher,
            self._health,
            server_config.host,
            server_config.port,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start HTTP server: %s", exc)
            await server.stop()
            await self._health.update("api", False, str(exc))
            raise
        self._server = server
        await self._health.update("api", True, None)

    async def _stop_services(self) -> None:
        LOGGER.info("Shutting down gracefully...")

        if self._server is not None:
            await self._server.stop()
            self._server = None
            await self._health.update("api", False, "shutdown")

        if self._dispatcher is not None:
            try:
                await self._dispatcher.shutdown()
            except Exception:
                LOGGER.exception("Error during dispatcher shutdown")
            await self._health.update("dispatcher", False, "shutdown")

        if self._gateway is not None:
            try:
                await self._gateway.aclose()
            except Exception:
                LOGGER.exception("Failed to cleanly shut down gateway client")
            self._gateway = None
            await self._health.update("gateway", False, "shutdown")

        LOGGER.info("MDM command dispatcher shut down complete.")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows and non-main threads have no signal support.
                LOGGER.debug("Signal handler for %s not installed", signum)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
