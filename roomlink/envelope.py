from __future__ import annotations

import os
import time

from .constants import K_BODY, K_ID, K_T, K_TS, K_V, RELAY_VERSION


def now_ms() -> int:
    return int(time.time() * 1000)


def frame_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    frame_type: int,
    *,
    body=None,
    fid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RELAY_VERSION,
        K_T: int(frame_type),
        K_ID: fid or frame_id(),
        K_TS: ts or now_ms(),
    }
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != RELAY_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, int):
        raise TypeError("frame type must be an integer")

    fid = env[K_ID]
    if not isinstance(fid, (bytes, bytearray)):
        raise TypeError("frame id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")
