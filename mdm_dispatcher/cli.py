"""Command-line interface for mdm-dispatcher."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import constants
from .adapters import (
    ApnsGatewayClient,
    DeviceToolError,
    RestoreMode,
    RestoreRunner,
    list_devices,
)
from .app import DispatcherApp
from .config import ConfigurationError, DispatcherConfig, load_config, validate_config
from .core.history import ExecutionHistoryStore
from .core.models import CommandResult, CommandStatus
from .core.protocols import GatewayClient
from .dispatcher import CommandDispatcher, CommandValidationError
from .logging import configure_logging
from .version import __version__

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdm-dispatcher", description="Dispatch MDM commands through APNs"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the dispatcher HTTP service")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    send_parser = subparsers.add_parser(
        "send", help="Send a single command and wait for its outcome"
    )
    send_parser.add_argument("--token", required=True, help="APNs device token")
    send_parser.add_argument(
        "--payload", required=True, help="Command payload as a JSON object"
    )
    send_parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for a terminal outcome (default: 60)",
    )

    subparsers.add_parser("devices", help="List attached iOS devices")

    restore_parser = subparsers.add_parser(
        "restore", help="Restore an attached device from an IPSW image"
    )
    restore_parser.add_argument("--ipsw", type=Path, required=True)
    restore_parser.add_argument(
        "--erase", action="store_true", help="Erase the device instead of updating"
    )

    return parser


async def send_command(
    config: DispatcherConfig,
    device_token: str,
    payload: Dict[str, Any],
    *,
    timeout: float = 60.0,
    gateway: Optional[GatewayClient] = None,
    poll_interval: float = 0.05,
) -> Optional[CommandResult]:
    """Dispatch one command through a short-lived dispatcher.

    Returns the terminal result. A command still pending when ``timeout``
    expires is abandoned at once, without waiting out the shutdown grace
    period, and reported as FAILED_TO_SEND. Invalid submissions raise
    ``CommandValidationError``.
    """

    client = gateway or ApnsGatewayClient.from_config(config.apns)
    history = ExecutionHistoryStore()
    dispatcher = CommandDispatcher(config, client, history)

    try:
        async with dispatcher:
            ack = dispatcher.submit(device_token, payload)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while history.find(ack.command_uuid) is None and loop.time() < deadline:
                await asyncio.sleep(poll_interval)
            if history.find(ack.command_uuid) is None:
                LOGGER.warning("Timed out waiting for command %s", ack.command_uuid)
                await dispatcher.shutdown(grace_seconds=0)
    finally:
        await client.aclose()

    return history.find(ack.command_uuid)


def _print_config(config: DispatcherConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            print(f"{key} = {value}")
        print()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 1

    if args.command == "show-config":
        _print_config(config)
        return 0

    if args.command in {"start", "send"}:
        try:
            validate_config(config)
        except ConfigurationError as exc:
            LOGGER.error("Fatal configuration error: %s", exc)
            return 1

    if args.command == "start":
        DispatcherApp.start(config)
        return 0

    configure_logging(
        config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )

    if args.command == "send":
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as exc:
            LOGGER.error("Payload is not valid JSON: %s", exc)
            return 1
        try:
            result = asyncio.run(
                send_command(config, args.token, payload, timeout=args.timeout)
            )
        except (CommandValidationError, ConfigurationError) as exc:
            LOGGER.error("Command not sent: %s", exc)
            return 1
        if result is None:
            return 1
        print(json.dumps(result.as_dict(), indent=2))
        return 0 if result.status == CommandStatus.ACCEPTED else 1

    if args.command == "devices":
        try:
            devices = asyncio.run(list_devices())
        except DeviceToolError as exc:
            LOGGER.error("Device listing failed: %s", exc)
            return 1
        if not devices:
            print("No iOS devices detected.")
        for device in devices:
            print(device)
        return 0

    if args.command == "restore":
        mode = RestoreMode.ERASE if args.erase else RestoreMode.UPDATE
        try:
            report = asyncio.run(RestoreRunner().restore(args.ipsw, mode))
        except DeviceToolError as exc:
            LOGGER.error("Restore failed: %s", exc)
            return 1
        print(f"Restore completed with exit code: {report.exit_code}")
        return 0 if report.succeeded else 1

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
