import os

import pytest

from roomlink.crypto import AesGcmCipher, derive_room_key
from roomlink.errors import MalformedFrameError


def test_derived_key_is_deterministic_per_room() -> None:
    assert derive_room_key("ABCD") == derive_room_key("ABCD")
    assert derive_room_key("ABCD") != derive_room_key("WXYZ")
    assert len(derive_room_key("ABCD")) == 32


def test_seal_and_open() -> None:
    cipher = AesGcmCipher(os.urandom(32))
    blob = cipher.seal(b"hello")
    assert blob != b"hello"
    assert cipher.open(blob) == b"hello"
    # Fresh nonce per frame.
    assert cipher.seal(b"hello") != blob


def test_open_with_wrong_key_is_malformed() -> None:
    blob = AesGcmCipher(derive_room_key("ABCD")).seal(b"hello")
    with pytest.raises(MalformedFrameError):
        AesGcmCipher(derive_room_key("WXYZ")).open(blob)


def test_open_rejects_truncated_and_tampered_frames() -> None:
    cipher = AesGcmCipher(os.urandom(32))
    blob = cipher.seal(b"hello")
    with pytest.raises(MalformedFrameError):
        cipher.open(blob[:8])
    tampered = blob[:-1] + bytes([blob[-1] ^ 1])
    with pytest.raises(MalformedFrameError):
        cipher.open(tampered)


def test_key_length_enforced() -> None:
    with pytest.raises(ValueError):
        AesGcmCipher(b"short")
