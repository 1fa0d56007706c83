"""Logging setup for the dispatcher service and CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# aiohttp logs one access line per POST /command; httpx, httpcore and hpack
# log every HTTP/2 frame exchanged with APNs at DEBUG.
NETWORK_LOGGERS = ("aiohttp.access", "httpx", "httpcore", "hpack")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Route dispatcher logs to stderr and, optionally, a log file.

    Replaces any handlers already on the root logger, so calling it again
    does not duplicate output.
    ``log_path`` comes from the ``[logging]`` section
    (``~/.mdm-dispatcher/logs/mdm-dispatcher.log`` unless overridden) and its
    directory is created on demand. Unless ``log_network`` is set, the
    request and APNs connection chatter from ``NETWORK_LOGGERS`` is held
    at WARNING so command outcomes stay readable.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = logging.NOTSET if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)


def mask_token(token: Optional[str]) -> str:
    """Return a log-safe rendition of a device token."""

    if not token or len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"
