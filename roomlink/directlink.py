from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from .constants import (
    DIRECT_VERSION,
    F_MESSAGE,
    F_USER_JOINED,
    F_USER_LEFT,
    F_USER_PRESENT,
)
from .crypto import RoomCipher
from .errors import MalformedFrameError, NoActiveLinkError, TransportInitError
from .models import Message
from .util import iso_now


class SubLink(Protocol):
    """One physical path a direct-link transport can run over."""

    name: str

    @property
    def is_open(self) -> bool: ...

    def open(self, on_bytes: Callable[[bytes], None]) -> None: ...

    def send(self, data: bytes) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class LinkConnected:
    path: str


@dataclass(frozen=True)
class LinkMessage:
    message: Message


@dataclass(frozen=True)
class LinkPeerJoined:
    name: str
    room_code: str
    peer_id: str
    timestamp: str


@dataclass(frozen=True)
class LinkPeerLeft:
    name: str
    room_code: str
    peer_id: str


@dataclass(frozen=True)
class LinkError:
    kind: str
    detail: str


LinkEvent = Union[LinkConnected, LinkMessage, LinkPeerJoined, LinkPeerLeft, LinkError]


def _frame_str(frame: dict, key: str) -> str:
    v = frame.get(key)
    if not isinstance(v, str) or not v:
        raise MalformedFrameError(f"direct frame field {key!r} must be a string")
    return v


class DirectLinkTransport:
    """
    Peer-to-peer transport with no central arbiter.

    Responsibilities:
    - Bring up the primary path, falling back to the secondary one
    - Exchange JSON message and presence frames with nearby peers
    - Seal and open frames with the room cipher when one is installed

    Room membership here is advisory: a peer that announces itself in a room
    is a member for display purposes. Peers already in the room answer a
    join with one presence frame so a newcomer learns the roster.
    """

    def __init__(
        self,
        peer_id: str,
        *,
        primary: SubLink,
        fallback: SubLink | None = None,
        cipher: RoomCipher | None = None,
    ) -> None:
        self.log = logging.getLogger("roomlink.directlink")
        self.peer_id = peer_id
        self.primary = primary
        self.fallback = fallback

        self._lock = threading.RLock()
        self._cipher = cipher
        self._active: SubLink | None = None
        self._room: tuple[str, str] | None = None
        self._callback: Callable[[LinkEvent], None] | None = None

    @property
    def active_path(self) -> str | None:
        active = self._active
        return active.name if active is not None else None

    def subscribe(self, callback: Callable[[LinkEvent], None] | None) -> None:
        self._callback = callback

    def set_cipher(self, cipher: RoomCipher | None) -> None:
        with self._lock:
            self._cipher = cipher

    def initialize(self) -> None:
        """Open the primary path, or the fallback when the primary fails.

        A fallback start still raises ``TransportInitError`` with
        ``fallback_active=True`` so the caller can log why the primary failed.
        """
        try:
            self.primary.open(self._on_bytes)
        except (TransportInitError, OSError) as e:
            primary_error = e
        else:
            with self._lock:
                self._active = self.primary
            self.log.info("Direct link up path=%s", self.primary.name)
            self._emit(LinkConnected(self.primary.name))
            return

        self.log.info(
            "Primary path %s unavailable (%s); trying fallback",
            self.primary.name,
            primary_error,
        )
        if self.fallback is None:
            self._emit(LinkError("transport_init", str(primary_error)))
            raise TransportInitError(str(primary_error)) from primary_error

        try:
            self.fallback.open(self._on_bytes)
        except (TransportInitError, OSError) as e:
            detail = f"{self.primary.name}: {primary_error}; {self.fallback.name}: {e}"
            self._emit(LinkError("transport_init", detail))
            raise TransportInitError(detail) from e

        with self._lock:
            self._active = self.fallback
        self.log.info("Direct link up path=%s (fallback)", self.fallback.name)
        self._emit(LinkConnected(self.fallback.name))
        raise TransportInitError(
            f"{self.primary.name} unavailable, using {self.fallback.name}: {primary_error}",
            fallback_active=True,
        ) from primary_error

    def send_message(self, message: Message) -> None:
        self._send({"type": F_MESSAGE, "message": message.to_wire()})

    def join_room(self, name: str, room_code: str) -> None:
        with self._lock:
            self._room = (name, room_code)
        self._send(
            {
                "type": F_USER_JOINED,
                "name": name,
                "roomCode": room_code,
                "timestamp": iso_now(),
            }
        )

    def leave_room(self) -> None:
        with self._lock:
            room, self._room = self._room, None
        if room is None:
            return
        name, room_code = room
        try:
            self._send({"type": F_USER_LEFT, "name": name, "roomCode": room_code})
        except NoActiveLinkError:
            self.log.debug("No open path; skipping user-left room=%s", room_code)

    def disconnect(self) -> None:
        self.leave_room()
        with self._lock:
            self._active = None
        for sub in (self.primary, self.fallback):
            if sub is None:
                continue
            try:
                sub.close()
            except Exception:
                self.log.debug("Closing %s failed", sub.name, exc_info=True)

    def _send(self, frame: dict[str, Any]) -> None:
        with self._lock:
            active = self._active
            cipher = self._cipher
        if active is None or not active.is_open:
            raise NoActiveLinkError("no direct-link path is open")

        frame = {"v": DIRECT_VERSION, "origin": self.peer_id, **frame}
        data = json.dumps(frame, separators=(",", ":")).encode("utf-8")
        if cipher is not None:
            data = cipher.seal(data)
        try:
            active.send(data)
        except (OSError, ValueError) as e:
            raise NoActiveLinkError(f"{active.name} send failed: {e}") from e

    def _decode(self, data: bytes) -> dict[str, Any]:
        try:
            frame = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedFrameError(f"not a JSON frame: {e}") from e
        if not isinstance(frame, dict):
            raise MalformedFrameError("direct frame must be an object")
        if frame.get("v") != DIRECT_VERSION:
            raise MalformedFrameError(f"unsupported direct frame version {frame.get('v')!r}")
        _frame_str(frame, "type")
        _frame_str(frame, "origin")
        return frame

    def _on_bytes(self, data: bytes) -> None:
        with self._lock:
            cipher = self._cipher
        if cipher is not None:
            try:
                data = cipher.open(data)
            except MalformedFrameError:
                # Another room's traffic on a shared channel.
                self.log.debug("Dropping frame sealed with another key bytes=%s", len(data))
                return

        try:
            frame = self._decode(data)
            if frame["origin"] == self.peer_id:
                return
            event = self._to_event(frame)
        except MalformedFrameError as e:
            self.log.warning("Dropping malformed direct frame bytes=%s err=%s", len(data), e)
            return

        self._emit(event)
        if frame["type"] == F_USER_JOINED:
            self._answer_presence(event)

    def _to_event(self, frame: dict[str, Any]) -> LinkEvent:
        ftype = frame["type"]
        if ftype == F_MESSAGE:
            return LinkMessage(Message.from_wire(frame.get("message")))
        if ftype in (F_USER_JOINED, F_USER_PRESENT):
            ts = frame.get("timestamp")
            return LinkPeerJoined(
                _frame_str(frame, "name"),
                _frame_str(frame, "roomCode"),
                frame["origin"],
                ts if isinstance(ts, str) else iso_now(),
            )
        if ftype == F_USER_LEFT:
            return LinkPeerLeft(
                _frame_str(frame, "name"), _frame_str(frame, "roomCode"), frame["origin"]
            )
        raise MalformedFrameError(f"unknown direct frame type {ftype!r}")

    def _answer_presence(self, joined: LinkPeerJoined) -> None:
        with self._lock:
            room = self._room
        if room is None or room[1] != joined.room_code:
            return
        name, room_code = room
        try:
            self._send(
                {
                    "type": F_USER_PRESENT,
                    "name": name,
                    "roomCode": room_code,
                    "timestamp": iso_now(),
                }
            )
        except NoActiveLinkError as e:
            self.log.debug("Presence reply not sent: %s", e)

    def _emit(self, event: LinkEvent) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            self.log.exception("Direct-link event handler failed")
