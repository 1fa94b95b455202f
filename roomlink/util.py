from __future__ import annotations

import os
import secrets
import string
import uuid
from datetime import datetime, timezone

from .constants import NICK_MAX_CHARS, ROOM_CODE_GEN_LEN, ROOM_CODE_MAX_CHARS

_ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def iso_now() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def new_id() -> str:
    return uuid.uuid4().hex


def _has_control_chars(s: str) -> bool:
    return any(ch in s for ch in ("\n", "\r", "\x00"))


def normalize_nick(value, *, max_chars: int = NICK_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if _has_control_chars(s):
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_room_code(value, *, max_chars: int = ROOM_CODE_MAX_CHARS) -> str:
    if not isinstance(value, str):
        raise ValueError("room code must be a string")

    s = value.strip().upper()
    if not s:
        raise ValueError("room code must not be empty")
    if max_chars and len(s) > int(max_chars):
        raise ValueError(f"room code too long (max {max_chars})")
    if any(ch.isspace() for ch in s) or _has_control_chars(s):
        raise ValueError("room code must not contain whitespace")
    return s


def generate_room_code(length: int = ROOM_CODE_GEN_LEN) -> str:
    return "".join(secrets.choice(_ROOM_CODE_ALPHABET) for _ in range(length))


def fmt_hash(h, *, prefix: int = 12) -> str:
    if isinstance(h, (bytes, bytearray)):
        s = bytes(h).hex()
        return s if prefix <= 0 else s[: min(prefix, len(s))]
    if isinstance(h, str) and h:
        return h if prefix <= 0 else h[:prefix]
    return "-"


def parse_hex_hash(text: str) -> bytes:
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = "".join(ch for ch in s if not ch.isspace() and ch not in "<>:")
    try:
        b = bytes.fromhex(s)
    except Exception as e:
        raise ValueError(f"invalid destination hash {text!r}: {e}") from e
    if len(b) < 4:
        raise ValueError(f"destination hash too short: {text!r}")
    return b
