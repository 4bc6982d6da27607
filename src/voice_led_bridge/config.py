"""Configuration loading for the voice LED bridge."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional
from urllib.parse import urlsplit

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "VOICE_LED_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

# Unprefixed variables understood for compatibility with older deployments.
LEGACY_ENV_KEYS = {
    "DISCORD_TOKEN": "discord_token",
    "MQTT_BROKER": "mqtt_broker",
    "MQTT_USERNAME": "mqtt_username",
    "MQTT_PASSWORD": "mqtt_password",
}

MQTT_SCHEMES = {"mqtt": 1883, "mqtts": 8883}
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_INT_FIELDS = {
    "mqtt_keepalive",
    "mqtt_qos",
    "api_port",
    "config_version",
}
_FLOAT_FIELDS = {
    "mqtt_reconnect_delay",
    "mqtt_ack_timeout",
    "integrity_check_interval",
}
_BOOL_FIELDS = {
    "mqtt_tls_insecure",
    "api_enabled",
    "api_docs",
    "migrate_only",
}
_LEVEL_FIELDS = {
    "log_level",
    "store_log_level",
    "mqtt_log_level",
    "presence_log_level",
    "api_log_level",
}


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "voice-led-bridge" / "led-map.sqlite3"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    db_path: Path = _default_db_path()
    discord_token: Optional[str] = None
    mqtt_broker: str = "mqtt://localhost:1883"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: Optional[str] = None
    mqtt_keepalive: int = 60
    mqtt_qos: int = 1
    mqtt_reconnect_delay: float = 5.0
    mqtt_ack_timeout: float = 10.0
    mqtt_tls_insecure: bool = False
    topic_template: str = "lights/{device}/control"
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    integrity_check_interval: float = 6 * 60 * 60
    log_format: str = "plain"
    log_level: str = "INFO"
    store_log_level: Optional[str] = None
    mqtt_log_level: Optional[str] = None
    presence_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def mqtt_host(self) -> str:
        return urlsplit(self.mqtt_broker).hostname or "localhost"

    @property
    def mqtt_port(self) -> int:
        parts = urlsplit(self.mqtt_broker)
        return parts.port or MQTT_SCHEMES[parts.scheme.lower()]

    @property
    def mqtt_tls(self) -> bool:
        return urlsplit(self.mqtt_broker).scheme.lower() == "mqtts"

    def missing_required(self) -> List[str]:
        """Return the names of settings that must be supplied before running."""

        missing: List[str] = []
        if not self.discord_token:
            missing.append(f"{CONFIG_ENV_PREFIX}DISCORD_TOKEN")
        return missing

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        masked_keys = {
            "discord_token": "***REDACTED***" if self.discord_token else None,
            "mqtt_password": "***REDACTED***" if self.mqtt_password else None,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
        }
        base: Dict[str, Any] = {
            "config_version": self.config_version,
            "db_path": str(self.db_path),
            "mqtt_broker": self.mqtt_broker,
            "mqtt_username": self.mqtt_username,
            "mqtt_client_id": self.mqtt_client_id,
            "mqtt_keepalive": self.mqtt_keepalive,
            "mqtt_qos": self.mqtt_qos,
            "mqtt_reconnect_delay": self.mqtt_reconnect_delay,
            "mqtt_ack_timeout": self.mqtt_ack_timeout,
            "mqtt_tls_insecure": self.mqtt_tls_insecure,
            "topic_template": self.topic_template,
            "api_enabled": self.api_enabled,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "integrity_check_interval": self.integrity_check_interval,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "store_log_level": self.store_log_level,
            "mqtt_log_level": self.mqtt_log_level,
            "presence_log_level": self.presence_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
        }
        base.update(masked_keys)
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        legacy_env = _load_legacy_env_config()
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, legacy_env)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_broker(config.mqtt_broker)
    _validate_range("mqtt_keepalive", config.mqtt_keepalive, 5, 3600)
    _validate_range("mqtt_qos", config.mqtt_qos, 0, 2)
    _validate_range("mqtt_reconnect_delay", config.mqtt_reconnect_delay, 0.1, 3600.0)
    _validate_range("mqtt_ack_timeout", config.mqtt_ack_timeout, 0.1, 300.0)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("integrity_check_interval", config.integrity_check_interval, 0.0, 604800.0)
    if "{device}" not in config.topic_template:
        raise ValueError(
            f"topic_template must contain a '{{device}}' placeholder; got {config.topic_template!r}."
        )
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name in sorted(_LEVEL_FIELDS):
        _validate_log_level_value(getattr(config, field_name), field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_broker(url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme.lower() not in MQTT_SCHEMES:
        raise ValueError(
            f"mqtt_broker must use one of {sorted(MQTT_SCHEMES)} schemes; got {url!r}."
        )
    if not parts.hostname:
        raise ValueError(f"mqtt_broker must include a host; got {url!r}.")
    try:
        parts.port
    except ValueError as exc:
        raise ValueError(f"mqtt_broker has an invalid port; got {url!r}.") from exc


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="voice-led-bridge",
        description="Light up LEDs when Discord users join or leave voice channels.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument("--discord-token", type=str, help="Discord bot token.")
    parser.add_argument(
        "--mqtt-broker",
        type=str,
        help="Broker URL, e.g. mqtt://localhost:1883 or mqtts://broker:8883.",
    )
    parser.add_argument("--mqtt-username", type=str, help="Broker username.")
    parser.add_argument("--mqtt-password", type=str, help="Broker password.")
    parser.add_argument("--mqtt-client-id", type=str, help="MQTT client identifier.")
    parser.add_argument("--mqtt-keepalive", type=int, help="MQTT keepalive in seconds.")
    parser.add_argument(
        "--mqtt-qos",
        type=int,
        choices=[0, 1, 2],
        help="Quality of service used for LED commands.",
    )
    parser.add_argument(
        "--mqtt-reconnect-delay",
        type=float,
        help="Seconds between broker reconnect attempts.",
    )
    parser.add_argument(
        "--mqtt-ack-timeout",
        type=float,
        help="Seconds to wait for a broker acknowledgement before reporting failure.",
    )
    parser.add_argument(
        "--mqtt-tls-insecure",
        action="store_true",
        help="Skip broker certificate verification for mqtts:// connections.",
    )
    parser.add_argument(
        "--topic-template",
        type=str,
        help="Topic template for LED commands; must contain {device}.",
    )
    parser.add_argument("--api-host", type=str, help="Bind address for the admin API.")
    parser.add_argument("--api-port", type=int, help="TCP port for the admin API.")
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not start the admin API.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument(
        "--integrity-check-interval",
        type=float,
        help="Seconds between SQLite integrity checks (0 disables).",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Log verbosity level.")
    parser.add_argument(
        "--store-log-level",
        choices=LOG_LEVELS,
        help="Log verbosity for the configuration store.",
    )
    parser.add_argument(
        "--mqtt-log-level",
        choices=LOG_LEVELS,
        help="Log verbosity for the broker gateway.",
    )
    parser.add_argument(
        "--presence-log-level",
        choices=LOG_LEVELS,
        help="Log verbosity for voice presence handling.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=LOG_LEVELS,
        help="Log verbosity for the admin API.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run database migrations and exit without starting services.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _load_legacy_env_config() -> Dict[str, Any]:
    return {
        field: os.environ[env_key]
        for env_key, field in LEGACY_ENV_KEYS.items()
        if os.environ.get(env_key)
    }


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    skipped = {"config", "no_api", "no_api_docs", "mqtt_tls_insecure", "migrate_only"}
    mapping = {k: v for k, v in vars(args).items() if k not in skipped and v is not None}
    if args.no_api:
        mapping["api_enabled"] = False
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.mqtt_tls_insecure:
        mapping["mqtt_tls_insecure"] = True
    if args.migrate_only:
        mapping["migrate_only"] = True
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key == "db_path":
            data[key] = _coerce_path(value)
        elif key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        else:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - surfaced before logging is configured
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
