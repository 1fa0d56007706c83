"""In-memory execution history for dispatched commands.

The store keeps, per device token, the terminal results of every command sent
to that token in the order they completed. It is deliberately process-local:
history is lost on restart.

Dispatch jobs append from worker tasks while status queries read from HTTP
handlers or other threads, so every access goes through a single lock. Readers
always receive copies, never the internal lists.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from ..logging import mask_token
from .models import CommandResult

LOGGER = logging.getLogger(__name__)


class ExecutionHistoryStore:
    """Append-only, per-token log of command results.

    Usage:
        store = ExecutionHistoryStore()
        store.record(token, CommandResult(uuid, CommandStatus.ACCEPTED))

        for token, results in store.snapshot().items():
            ...
    """

    def __init__(self) -> None:
        self._history: Dict[str, List[CommandResult]] = {}
        self._lock = threading.Lock()

    def record(self, device_token: Optional[str], result: Optional[CommandResult]) -> None:
        """Append a result to the token's history.

        Blank tokens and missing results are ignored.
        """
        if not device_token or not device_token.strip() or result is None:
            return

        with self._lock:
            self._history.setdefault(device_token, []).append(result)

        LOGGER.debug(
            "Recorded %s for command %s on device %s",
            result.status.value,
            result.command_uuid,
            mask_token(device_token),
        )

    def snapshot(self) -> Dict[str, List[CommandResult]]:
        """Return an independent copy of the full history."""
        with self._lock:
            return {token: list(results) for token, results in self._history.items()}

    def find(self, command_uuid: str) -> Optional[CommandResult]:
        """Return the most recent result recorded for a command UUID."""
        with self._lock:
            for results in self._history.values():
                for result in reversed(results):
                    if result.command_uuid == command_uuid:
                        return result
        return None

    def as_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            token: [result.as_dict() for result in results]
            for token, results in self.snapshot().items()
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)
