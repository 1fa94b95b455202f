"""Local durable storage for the client.

Holds the current user (so a session can resume after a restart), a capped
log of messages and the room key material. Backed by a TOML document written
atomically on every change, or memory-only when no path is given.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from pathlib import Path

import tomlkit

from .constants import MAX_STORED_MESSAGES
from .errors import MalformedFrameError
from .models import Message, User
from .util import expand_path


class LocalStore:
    """User, message log and key storage with FIFO eviction."""

    def __init__(
        self, path: str | None = None, *, max_messages: int = MAX_STORED_MESSAGES
    ) -> None:
        self.log = logging.getLogger("roomlink.store")
        self.path = expand_path(path) if path else None
        self.max_messages = max(1, int(max_messages))

        self._lock = threading.RLock()
        self._user: User | None = None
        self._messages: deque[Message] = deque()
        self._ids: set[str] = set()
        self._key: bytes | None = None

        if self.path:
            self._load()

    # User

    def save_user(self, user: User) -> None:
        with self._lock:
            self._user = user
            self._flush()

    def get_user(self) -> User | None:
        with self._lock:
            return self._user

    def clear_user(self) -> None:
        with self._lock:
            self._user = None
            self._flush()

    # Messages

    def add_message(self, message: Message) -> bool:
        """Append a message; returns False if its id is already stored."""
        with self._lock:
            if message.id in self._ids:
                return False
            self._messages.append(message)
            self._ids.add(message.id)
            while len(self._messages) > self.max_messages:
                evicted = self._messages.popleft()
                self._ids.discard(evicted.id)
            self._flush()
            return True

    def get_messages(self, room_code: str | None = None) -> list[Message]:
        with self._lock:
            if room_code is None:
                return list(self._messages)
            return [m for m in self._messages if m.room_code == room_code]

    def clear_messages(self) -> None:
        with self._lock:
            self._messages.clear()
            self._ids.clear()
            self._flush()

    # Key material

    def save_encryption_key(self, key: bytes) -> None:
        with self._lock:
            self._key = bytes(key)
            self._flush()

    def get_encryption_key(self) -> bytes | None:
        with self._lock:
            return self._key

    def clear_encryption_key(self) -> None:
        with self._lock:
            self._key = None
            self._flush()

    def clear_all(self) -> None:
        with self._lock:
            self._user = None
            self._messages.clear()
            self._ids.clear()
            self._key = None
            self._flush()

    def usage(self) -> int:
        """Bytes used by the backing file."""
        if not self.path:
            return 0
        try:
            return os.path.getsize(self.path)
        except OSError:
            return 0

    # Persistence

    def _load(self) -> None:
        assert self.path is not None
        if not os.path.exists(self.path):
            return

        try:
            with open(self.path, encoding="utf-8") as f:
                doc = tomlkit.parse(f.read()).unwrap()
        except Exception as e:
            self.log.warning("Ignoring unreadable store path=%s err=%s", self.path, e)
            return

        user = doc.get("user")
        if isinstance(user, dict):
            name = user.get("name")
            room_code = user.get("room_code")
            if isinstance(name, str) and isinstance(room_code, str):
                self._user = User(name=str(name), room_code=str(room_code))

        keys = doc.get("keys")
        if isinstance(keys, dict):
            room_key = keys.get("room")
            if isinstance(room_key, str) and room_key:
                try:
                    self._key = bytes.fromhex(str(room_key))
                except ValueError:
                    self.log.warning("Ignoring invalid key material in %s", self.path)

        bad = 0
        for item in doc.get("messages", []):
            try:
                m = Message.from_wire(item)
            except MalformedFrameError:
                bad += 1
                continue
            if m.id in self._ids:
                continue
            self._messages.append(m)
            self._ids.add(m.id)

        while len(self._messages) > self.max_messages:
            self._ids.discard(self._messages.popleft().id)

        if bad:
            self.log.warning("Skipped %s malformed stored messages", bad)
        self.log.debug(
            "Loaded store path=%s messages=%s user=%s",
            self.path,
            len(self._messages),
            self._user is not None,
        )

    def _flush(self) -> None:
        if not self.path:
            return

        doc = tomlkit.document()
        doc.add(tomlkit.comment("roomlink local store; maintained by roomlink"))

        if self._user is not None:
            user_tbl = tomlkit.table()
            user_tbl["name"] = self._user.name
            user_tbl["room_code"] = self._user.room_code
            doc["user"] = user_tbl

        if self._key is not None:
            keys_tbl = tomlkit.table()
            keys_tbl["room"] = self._key.hex()
            doc["keys"] = keys_tbl

        if self._messages:
            aot = tomlkit.aot()
            for m in self._messages:
                aot.append(tomlkit.item(m.to_wire()))
            doc["messages"] = aot

        p = Path(self.path)
        if p.parent:
            p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(tomlkit.dumps(doc))
            try:
                os.chmod(tmp, 0o600)
            except Exception:
                pass
            os.replace(tmp, p)
        except OSError as e:
            self.log.warning("Store write failed path=%s err=%s", self.path, e)
