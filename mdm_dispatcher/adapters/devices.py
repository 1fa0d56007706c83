"""Wrappers around the libimobiledevice command-line tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List

from .. import constants

LOGGER = logging.getLogger(__name__)


class DeviceToolError(RuntimeError):
    """Raised when a device tool cannot be run or exits unsuccessfully."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class RestoreMode(str, Enum):
    UPDATE = "--update"
    ERASE = "--erase"


@dataclass(slots=True)
class RestoreReport:
    mode: RestoreMode
    exit_code: int
    output: List[str]

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


async def _spawn(*args: str) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise DeviceToolError(f"Error executing {args[0]}: {exc}") from exc


async def list_devices(binary: str = constants.IDEVICE_ID_PATH) -> List[str]:
    """Return the UDIDs of attached iOS devices."""

    process = await _spawn(binary, "-l")
    stdout, _ = await process.communicate()
    if process.returncode != 0:
        LOGGER.warning("idevice_id exited with code: %s", process.returncode)
        raise DeviceToolError(
            f"idevice_id failed with exit code: {process.returncode}",
            exit_code=process.returncode,
        )

    devices = [
        line.strip()
        for line in stdout.decode("utf-8", errors="replace").splitlines()
        if line.strip()
    ]
    LOGGER.info("Found %d devices: %s", len(devices), ", ".join(devices))
    return devices


class RestoreRunner:
    """Runs ``idevicerestore`` one restore at a time."""

    def __init__(self, binary: str = constants.IDEVICERESTORE_PATH) -> None:
        self._binary = binary
        self._lock = asyncio.Lock()

    @property
    def restoring(self) -> bool:
        return self._lock.locked()

    async def restore(
        self, ipsw_path: Path, mode: RestoreMode = RestoreMode.UPDATE
    ) -> RestoreReport:
        if not ipsw_path.is_file():
            LOGGER.error("IPSW file does not exist: %s", ipsw_path)
            raise DeviceToolError(f"IPSW file not found: {ipsw_path}")
        if self._lock.locked():
            LOGGER.warning("Restore already in progress")
            raise DeviceToolError("Restore operation already in progress")

        async with self._lock:
            LOGGER.info("Starting %s restore with %s", mode.name, ipsw_path)
            process = await _spawn(self._binary, mode.value, str(ipsw_path))

            output: List[str] = []
            assert process.stdout is not None
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                output.append(line)
                LOGGER.info("Restore output: %s", line)

            exit_code = await process.wait()

        if exit_code == 0:
            LOGGER.info("Restore completed successfully")
        else:
            LOGGER.warning("Restore failed with exit code: %s", exit_code)
        return RestoreReport(mode=mode, exit_code=exit_code, output=output)
