#!/usr/bin/env python3
"""
Loki Notifier - Configuration

Loads the service configuration from a YAML file and environment variables and
validates it once at startup. The result is an immutable snapshot; nothing
mutates it after load.

Lookup order (later wins):
    1. built-in defaults
    2. YAML file (CONFIG_PATH, default config/config.yaml; a missing file is fine)
    3. environment variables named after the dotted key, upper-cased, with
       '.' replaced by '_' (telegram.bot_token -> TELEGRAM_BOT_TOKEN)

Channel rules only come from the YAML file.
"""

import os
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from loki_notifier.logging_utils import get_logger
from loki_notifier.models import ChannelRule, Destination

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_BLOCK = "block"
OVERFLOW_POLICIES = (OVERFLOW_DROP_OLDEST, OVERFLOW_BLOCK)

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "app": {
        "name": "loki-notifier",
        "environment": "development",
        "log_level": "info",
    },
    "api": {
        "host": "0.0.0.0",
        "port": 7777,
        "cert_location": "",
        "key_location": "",
    },
    "telegram": {
        "bot_token": "",
        "chat_id": 0,
        "api_url": "https://api.telegram.org",
        "timeout": 10.0,
    },
    "dispatch": {
        "workers": 4,
        "queue_size": 1000,
        "overflow_policy": OVERFLOW_DROP_OLDEST,
        "shutdown_timeout": 10.0,
    },
}


class ConfigError(ValueError):
    """Raised when configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class AppSettings:
    name: str
    environment: str
    log_level: str


@dataclass(frozen=True)
class ApiSettings:
    host: str
    port: int
    cert_location: str = ""
    key_location: str = ""

    @property
    def tls_enabled(self) -> bool:
        return bool(self.cert_location and self.key_location)


@dataclass(frozen=True)
class TelegramSettings:
    bot_token: str = field(repr=False)
    chat_id: int
    api_url: str
    timeout: float


@dataclass(frozen=True)
class DispatchSettings:
    workers: int
    queue_size: int
    overflow_policy: str
    shutdown_timeout: float


@dataclass(frozen=True)
class AppConfig:
    app: AppSettings
    api: ApiSettings
    telegram: TelegramSettings
    dispatch: DispatchSettings
    channels: Tuple[ChannelRule, ...] = ()

    @property
    def default_destination(self) -> Destination:
        return Destination(name="default", token=self.telegram.bot_token, chat_id=self.telegram.chat_id)

    def describe(self) -> Dict[str, Any]:
        """Config summary safe to log or expose (no tokens)."""
        return {
            "app": {"name": self.app.name, "environment": self.app.environment, "log_level": self.app.log_level},
            "api": {"host": self.api.host, "port": self.api.port, "tls": self.api.tls_enabled},
            "telegram": {"chat_id": self.telegram.chat_id, "api_url": self.telegram.api_url,
                         "timeout": self.telegram.timeout},
            "dispatch": {"workers": self.dispatch.workers, "queue_size": self.dispatch.queue_size,
                         "overflow_policy": self.dispatch.overflow_policy},
            "channels": [{"name": c.name, "needle": c.needle, "chat_id": c.chat_id} for c in self.channels],
        }


# =====================================================================
# LOADING
# =====================================================================

def _read_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        logger.warning(f"Config file not found at {path}; using defaults and environment")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return data


def _merge(raw: Mapping[str, Any], environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    merged = copy.deepcopy(DEFAULTS)

    for section, values in merged.items():
        file_section = raw.get(section) or {}
        if not isinstance(file_section, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        for key in values:
            if key in file_section and file_section[key] is not None:
                values[key] = file_section[key]

            env_key = f"{section}_{key}".upper()
            if env_key in environ:
                values[key] = environ[env_key]

    return merged


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got: {value!r}")


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got: {value!r}")


def _parse_channels(raw_channels: Any) -> Tuple[ChannelRule, ...]:
    if raw_channels is None:
        return ()
    if not isinstance(raw_channels, list):
        raise ConfigError("'channels' must be a list")

    rules: List[ChannelRule] = []
    for index, item in enumerate(raw_channels):
        if not isinstance(item, dict):
            raise ConfigError(f"channels[{index}] must be a mapping")

        name = str(item.get("name") or "").strip()
        needle = str(item.get("needle") or "")
        if not name:
            raise ConfigError(f"channels[{index}] is missing 'name'")
        if not needle:
            # An empty needle is a substring of every name and would capture all streams
            raise ConfigError(f"channel '{name}' is missing 'needle'")

        rules.append(ChannelRule(
            name=name,
            needle=needle,
            token=str(item.get("telegram_token") or ""),
            chat_id=_as_int(item.get("telegram_chat_id") or 0, f"channels[{index}].telegram_chat_id"),
        ))

    return tuple(rules)


def build_config(raw: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build and validate an AppConfig from a raw mapping (as read from YAML).

    Raises:
        ConfigError: If any value is missing or invalid.
    """
    environ = os.environ if environ is None else environ
    merged = _merge(raw, environ)

    app_s = merged["app"]
    api_s = merged["api"]
    tg_s = merged["telegram"]
    dsp_s = merged["dispatch"]

    config = AppConfig(
        app=AppSettings(
            name=str(app_s["name"]),
            environment=str(app_s["environment"]),
            log_level=str(app_s["log_level"]),
        ),
        api=ApiSettings(
            host=str(api_s["host"]),
            port=_as_int(api_s["port"], "api.port"),
            cert_location=str(api_s["cert_location"] or ""),
            key_location=str(api_s["key_location"] or ""),
        ),
        telegram=TelegramSettings(
            bot_token=str(tg_s["bot_token"] or ""),
            chat_id=_as_int(tg_s["chat_id"], "telegram.chat_id"),
            api_url=str(tg_s["api_url"]).rstrip("/"),
            timeout=_as_float(tg_s["timeout"], "telegram.timeout"),
        ),
        dispatch=DispatchSettings(
            workers=_as_int(dsp_s["workers"], "dispatch.workers"),
            queue_size=_as_int(dsp_s["queue_size"], "dispatch.queue_size"),
            overflow_policy=str(dsp_s["overflow_policy"]).lower(),
            shutdown_timeout=_as_float(dsp_s["shutdown_timeout"], "dispatch.shutdown_timeout"),
        ),
        channels=_parse_channels(raw.get("channels")),
    )

    validate_config(config)
    return config


def validate_config(config: AppConfig) -> None:
    """Fail fast on invalid settings."""
    if config.api.port < 1 or config.api.port > 65535:
        raise ConfigError(f"api.port must be between 1-65535, got: {config.api.port}")

    if bool(config.api.cert_location) != bool(config.api.key_location):
        raise ConfigError("api.cert_location and api.key_location must be set together")

    if not config.telegram.bot_token:
        raise ConfigError("telegram.bot_token is required but not set")
    if config.telegram.chat_id == 0:
        raise ConfigError("telegram.chat_id is required but not set")
    if config.telegram.timeout <= 0:
        raise ConfigError(f"telegram.timeout must be positive, got: {config.telegram.timeout}")

    if config.dispatch.workers < 1:
        raise ConfigError(f"dispatch.workers too low (min 1): {config.dispatch.workers}")
    if config.dispatch.queue_size < 1:
        raise ConfigError(f"dispatch.queue_size too low (min 1): {config.dispatch.queue_size}")
    if config.dispatch.overflow_policy not in OVERFLOW_POLICIES:
        raise ConfigError(
            f"dispatch.overflow_policy must be one of {', '.join(OVERFLOW_POLICIES)}, "
            f"got: {config.dispatch.overflow_policy}"
        )

    names = [c.name for c in config.channels]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"duplicate channel names: {duplicates}")

    for channel in config.channels:
        if not channel.has_credentials:
            logger.warning(
                f"Channel '{channel.name}' has no telegram_token/telegram_chat_id; "
                "matching streams will use the default destination"
            )


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load and validate configuration.

    Args:
        path: YAML file path (default: $CONFIG_PATH or config/config.yaml)
        environ: Environment mapping (default: os.environ)

    Returns:
        AppConfig: Validated, immutable configuration.

    Raises:
        ConfigError: On unreadable file or invalid values.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)

    config = build_config(_read_yaml(path), environ)
    logger.info(
        f"Configuration loaded and validated successfully "
        f"({len(config.channels)} channel rule(s), {config.dispatch.workers} dispatch worker(s))"
    )
    return config
