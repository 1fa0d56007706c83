"""HTTP API for submitting commands and reading dispatch history."""

from __future__ import annotations

import contextlib
import logging
from typing import Optional

from aiohttp import web

from .core.models import CommandRequest
from .dispatcher import (
    CommandDispatcher,
    CommandValidationError,
    DispatcherBusyError,
    DispatcherUnavailableError,
)
from .health import HealthReporter
from .logging import mask_token

LOGGER = logging.getLogger(__name__)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


class CommandApiServer:
    """Serves ``/command``, ``/status`` and ``/healthz``."""

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        health: HealthReporter,
        host: str,
        port: int,
    ) -> None:
        self._dispatcher = dispatcher
        self._health = health
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/command", self._handle_command)
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/healthz", self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "HTTP server started on http://%s:%s. Endpoints available at /status and /command",
            self._host,
            self._port,
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_command(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            LOGGER.warning("Failed to parse JSON request body")
            return _error(400, "Malformed JSON request body")

        command = CommandRequest.from_json(data)
        try:
            ack = self._dispatcher.submit(command.device_token, command.payload)
        except CommandValidationError as exc:
            return _error(400, str(exc))
        except (DispatcherBusyError, DispatcherUnavailableError) as exc:
            LOGGER.warning(
                "Command for device %s refused: %s",
                mask_token(command.device_token),
                exc,
            )
            return _error(503, str(exc))
        except Exception:
            LOGGER.exception("An unexpected error occurred while submitting a command")
            return _error(500, "Internal Server Error")

        return web.json_response(ack.as_dict(), status=202)

    async def _handle_status(self, request: web.Request) -> web.Response:
        try:
            history = self._dispatcher.history.as_dict()
        except Exception:
            LOGGER.exception("Failed to retrieve and serialize execution history")
            return _error(500, "Internal Server Error")
        return web.json_response(history)

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._health.snapshot()
        snapshot["dispatcher"] = {
            "running": self._dispatcher.running,
            "pending": self._dispatcher.pending_count,
        }
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
