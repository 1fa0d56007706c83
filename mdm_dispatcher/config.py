"""Configuration loader for mdm-dispatcher."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or invalid."""


@dataclass(slots=True)
class ApnsConfig:
    team_id: Optional[str] = None
    key_id: Optional[str] = None
    auth_key_path: Optional[Path] = None
    topic: Optional[str] = None
    production: bool = False
    request_timeout_seconds: float = 10.0
    token_refresh_seconds: int = 3000  # APNs rejects provider tokens older than one hour

    @property
    def host(self) -> str:
        if self.production:
            return constants.APNS_PRODUCTION_HOST
        return constants.APNS_DEVELOPMENT_HOST


@dataclass(slots=True)
class ServerConfig:
    host: str = constants.DEFAULT_HTTP_HOST
    port: int = constants.DEFAULT_HTTP_PORT


@dataclass(slots=True)
class DispatchConfig:
    pool_size: int = constants.DEFAULT_POOL_SIZE
    max_queue_size: int = 0  # 0 = unbounded
    max_retries: int = constants.DEFAULT_MAX_RETRIES
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    backoff_jitter_ratio: float = 0.5
    shutdown_grace_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class DispatcherConfig:
    apns: ApnsConfig
    server: ServerConfig
    dispatch: DispatchConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


# Environment variables take precedence over the config file.
ENV_OVERRIDES = {
    "APNS_TEAM_ID": ("apns", "team_id"),
    "APNS_KEY_ID": ("apns", "key_id"),
    "APNS_AUTH_KEY_PATH": ("apns", "auth_key_path"),
    "APNS_TOPIC": ("apns", "topic"),
    "APNS_PRODUCTION": ("apns", "production"),
    "SERVER_HTTP_HOST": ("server", "host"),
    "SERVER_HTTP_PORT": ("server", "port"),
    "SERVER_THREAD_POOL_SIZE": ("dispatch", "pool_size"),
    "MDM_MAX_RETRIES": ("dispatch", "max_retries"),
    "MDM_LOG_LEVEL": ("logging", "level"),
}


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="").strip()
    return value or None


def load_config(
    path: Optional[Path] = None, *, env: Optional[Mapping[str, str]] = None
) -> DispatcherConfig:
    """Load configuration from disk and the environment, applying defaults.

    The result is not validated; call ``validate_config`` before connecting to
    APNs.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    environ = os.environ if env is None else env

    parser = ConfigParser()
    parser.read_dict(
        {
            "apns": {
                "production": "false",
                "request_timeout_seconds": "10.0",
                "token_refresh_seconds": "3000",
            },
            "server": {
                "host": constants.DEFAULT_HTTP_HOST,
                "port": str(constants.DEFAULT_HTTP_PORT),
            },
            "dispatch": {
                "pool_size": str(constants.DEFAULT_POOL_SIZE),
                "max_queue_size": "0",
                "max_retries": str(constants.DEFAULT_MAX_RETRIES),
                "initial_backoff_seconds": "0.5",
                "max_backoff_seconds": "30.0",
                "backoff_jitter_ratio": "0.5",
                "shutdown_grace_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    for variable, (section, option) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is not None and value.strip():
            parser.set(section, option, value.strip())

    auth_key_path = _optional(parser, "apns", "auth_key_path")

    try:
        apns = ApnsConfig(
            team_id=_optional(parser, "apns", "team_id"),
            key_id=_optional(parser, "apns", "key_id"),
            auth_key_path=Path(auth_key_path).expanduser() if auth_key_path else None,
            topic=_optional(parser, "apns", "topic"),
            production=parser.getboolean("apns", "production", fallback=False),
            request_timeout_seconds=max(
                0.1,
                parser.getfloat("apns", "request_timeout_seconds", fallback=10.0),
            ),
            token_refresh_seconds=max(
                60, parser.getint("apns", "token_refresh_seconds", fallback=3000)
            ),
        )

        server = ServerConfig(
            host=parser.get("server", "host"),
            port=parser.getint("server", "port"),
        )

        dispatch = DispatchConfig(
            pool_size=max(1, parser.getint("dispatch", "pool_size")),
            max_queue_size=max(0, parser.getint("dispatch", "max_queue_size")),
            max_retries=max(0, parser.getint("dispatch", "max_retries")),
            initial_backoff_seconds=max(
                0.0, parser.getfloat("dispatch", "initial_backoff_seconds")
            ),
            max_backoff_seconds=max(
                0.0, parser.getfloat("dispatch", "max_backoff_seconds")
            ),
            backoff_jitter_ratio=max(
                0.0,
                min(1.0, parser.getfloat("dispatch", "backoff_jitter_ratio")),
            ),
            shutdown_grace_seconds=max(
                0.0, parser.getfloat("dispatch", "shutdown_grace_seconds")
            ),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid setting in {config_path}: {exc}") from exc

    log_path_value = _optional(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return DispatcherConfig(
        apns=apns,
        server=server,
        dispatch=dispatch,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def validate_config(config: DispatcherConfig) -> None:
    """Ensure the APNs credentials needed to send commands are present."""

    apns = config.apns
    if not apns.team_id:
        raise ConfigurationError(
            "APNS Team ID (APNS_TEAM_ID / [apns] team_id) is not configured."
        )
    if not apns.key_id:
        raise ConfigurationError(
            "APNS Key ID (APNS_KEY_ID / [apns] key_id) is not configured."
        )
    if not apns.topic:
        raise ConfigurationError(
            "APNS Topic (APNS_TOPIC / [apns] topic) is not configured."
        )
    if apns.auth_key_path is None:
        raise ConfigurationError(
            "APNS Auth Key Path (APNS_AUTH_KEY_PATH / [apns] auth_key_path) is not configured."
        )
    if not apns.auth_key_path.is_file() or not os.access(apns.auth_key_path, os.R_OK):
        raise ConfigurationError(
            f"APNS Auth Key file does not exist or is not readable at: {apns.auth_key_path}"
        )


def save_config(config: DispatcherConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
