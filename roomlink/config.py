from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, TypeVar

from .constants import (
    DIRECT_DEST_NAME,
    LAN_PORT,
    MAX_MESSAGE_CHARS,
    MAX_ROOM_HISTORY,
    MAX_STORED_MESSAGES,
    NICK_MAX_CHARS,
    RELAY_DEST_NAME,
    ROOM_CODE_MAX_CHARS,
    TYPING_TIMEOUT_S,
)

_DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = RELAY_DEST_NAME
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "roomlink"
    nick_max_chars: int = NICK_MAX_CHARS
    max_room_code_len: int = ROOM_CODE_MAX_CHARS
    max_history_per_room: int = MAX_ROOM_HISTORY
    max_message_chars: int = MAX_MESSAGE_CHARS
    max_frame_bytes: int = 64 * 1024
    rate_limit_msgs_per_minute: int = 240
    health_host: str = "127.0.0.1"
    health_port: int = 5001
    cors_origin: str = "http://localhost:3000"
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = _DEFAULT_LOG_FORMAT
    log_datefmt: str | None = None


@dataclass(frozen=True)
class ClientRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    relay_destination: str | None = None
    relay_dest_name: str = RELAY_DEST_NAME
    path_timeout_s: float = 15.0
    direct_dest_name: str = DIRECT_DEST_NAME
    discovery_timeout_s: float = 5.0
    lan_port: int = LAN_PORT
    lan_bind_ip: str = "0.0.0.0"
    lan_broadcast_ip: str = "255.255.255.255"
    store_path: str | None = None
    max_stored_messages: int = MAX_STORED_MESSAGES
    max_message_chars: int = MAX_MESSAGE_CHARS
    typing_timeout_s: float = TYPING_TIMEOUT_S
    encrypt_direct: bool = True
    log_level: str = "WARNING"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = _DEFAULT_LOG_FORMAT
    log_datefmt: str | None = None


Config = TypeVar("Config", HubRuntimeConfig, ClientRuntimeConfig)

# Environment variable -> config field.
ENV_OVERRIDES: dict[str, str] = {
    "ROOMLINK_RELAY_DESTINATION": "relay_destination",
    "ROOMLINK_CORS_ORIGIN": "cors_origin",
    "ROOMLINK_HEALTH_PORT": "health_port",
    "ROOMLINK_STORE_PATH": "store_path",
    "ROOMLINK_LOG_LEVEL": "log_level",
}

_NULLABLE_STR_FIELDS = (
    "configdir",
    "relay_destination",
    "store_path",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def _coerce(base: Any, name: str, value: Any) -> Any:
    current = getattr(base, name)
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_config_data(base: Config, data: dict, *, section: str = "hub") -> Config:
    """Overlay a parsed TOML document onto ``base``.

    Keys may sit at top level or in the ``section`` table; the ``[logging]``
    table maps onto the ``log_*`` fields.
    """
    sect = data.get(section) if isinstance(data, dict) else None
    if isinstance(sect, dict):
        data = {**data, **sect}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for key in ("level", "rns_level", "console", "file", "format", "datefmt"):
            if key in log_table:
                mapped[f"log_{key}"] = log_table.get(key)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: _coerce(base, k, v) for k, v in data.items() if k in allowed}

    for key in _NULLABLE_STR_FIELDS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def apply_env(base: Config, environ: Mapping[str, str] | None = None) -> Config:
    env = os.environ if environ is None else environ
    names = {f.name for f in fields(base)}
    updates: dict[str, Any] = {}
    for var, name in ENV_OVERRIDES.items():
        if name not in names:
            continue
        raw = env.get(var)
        if raw is None or not raw.strip():
            continue
        try:
            updates[name] = _coerce(base, name, raw.strip())
        except ValueError as e:
            raise ValueError(f"invalid {var}={raw!r}: {e}") from e
    return replace(base, **updates) if updates else base
