"""Room key derivation and authenticated symmetric encryption.

Direct-link frames are sealed with a key every member of a room can derive
from the room code, so no key exchange is needed on a link without an arbiter.
"""

from __future__ import annotations

import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import MalformedFrameError

KEY_BYTES = 32
NONCE_BYTES = 12
KDF_ITERATIONS = 100_000
KDF_SALT = b"roomlink-room-key"


class RoomCipher(Protocol):
    def seal(self, plaintext: bytes) -> bytes: ...

    def open(self, blob: bytes) -> bytes: ...


def derive_room_key(room_code: str) -> bytes:
    """PBKDF2-HMAC-SHA256 over the room code."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(room_code.encode("utf-8"))


class AesGcmCipher:
    """AES-256-GCM; output is ``nonce || ciphertext+tag``."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError(f"key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(bytes(key))

    def seal(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_BYTES)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def open(self, blob: bytes) -> bytes:
        if len(blob) <= NONCE_BYTES:
            raise MalformedFrameError("sealed frame too short")
        nonce, ct = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
        try:
            return self._aead.decrypt(nonce, ct, None)
        except InvalidTag as e:
            raise MalformedFrameError("sealed frame failed authentication") from e
