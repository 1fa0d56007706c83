"""Constants used across the mdm-dispatcher package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "mdm-dispatcher"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".mdm-dispatcher" / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".mdm-dispatcher" / "logs" / f"{APP_NAME}.log"

APNS_PRODUCTION_HOST = "api.push.apple.com"
APNS_DEVELOPMENT_HOST = "api.sandbox.push.apple.com"

DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 8080

DEFAULT_POOL_SIZE = 10
DEFAULT_MAX_RETRIES = 5

IDEVICE_ID_PATH = "/usr/local/bin/idevice_id"
IDEVICERESTORE_PATH = "/usr/local/bin/idevicerestore"
