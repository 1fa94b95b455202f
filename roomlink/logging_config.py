"""Logging setup for ``roomlinkd`` and the ``roomlink`` terminal client.

The hub logs to stderr and an optional file. The terminal client shares its
console with the chat view, so with a log file configured everything goes
there; without one only warnings reach the console.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import ClientRuntimeConfig, HubRuntimeConfig

_FALLBACK_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_CLIENT_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def parse_level(value: object, default: int) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text == "WARN":
        return logging.WARNING
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else default


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        logging.getLogger("roomlink.logging").debug(
            "Could not restrict log file mode path=%s", p, exc_info=True
        )
    return handler


def _formatter(cfg: HubRuntimeConfig | ClientRuntimeConfig) -> logging.Formatter:
    fmt = str(cfg.log_format or "").strip() or _FALLBACK_FORMAT
    return logging.Formatter(fmt=fmt, datefmt=cfg.log_datefmt or None)


def _install(handlers: list[logging.Handler], level: int, rns_level: int) -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(rns_level)
    logging.captureWarnings(True)


def configure_hub_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Console and optional file logging for the relay hub. Safe to call again."""
    level = parse_level(override_level or cfg.log_level, logging.INFO)
    formatter = _formatter(cfg)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    log_file = override_file or cfg.log_file
    if log_file:
        handlers.append(_file_handler(log_file))
    for h in handlers:
        h.setFormatter(formatter)

    _install(handlers, level, parse_level(cfg.log_rns_level, logging.WARNING))
    # Request lines from the liveness endpoint only show up at DEBUG.
    logging.getLogger("werkzeug").setLevel(logging.INFO if level <= logging.DEBUG else logging.WARNING)


def configure_client_logging(
    cfg: ClientRuntimeConfig,
    *,
    override_level: str | None = None,
) -> None:
    """Keep log records out of the chat console unless they are warnings."""
    level = parse_level(override_level or cfg.log_level, logging.WARNING)

    handlers: list[logging.Handler] = []
    if cfg.log_file:
        file_handler = _file_handler(cfg.log_file)
        file_handler.setFormatter(_formatter(cfg))
        handlers.append(file_handler)
    elif cfg.log_console:
        console = logging.StreamHandler()
        console.setLevel(max(level, logging.WARNING))
        console.setFormatter(logging.Formatter(_CLIENT_CONSOLE_FORMAT))
        handlers.append(console)

    _install(handlers, level, parse_level(cfg.log_rns_level, logging.WARNING))
