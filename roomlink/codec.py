from __future__ import annotations

from typing import Any

import cbor2

from .errors import MalformedFrameError


def encode(frame: dict[int, Any]) -> bytes:
    return cbor2.dumps(frame)


def decode(data: bytes) -> Any:
    """Decode one relay frame, mapping CBOR failures to MalformedFrameError."""
    if not data:
        raise MalformedFrameError("empty frame")
    try:
        return cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
        raise MalformedFrameError(f"undecodable frame: {e}") from e
