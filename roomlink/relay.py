from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from .codec import decode, encode
from .constants import (
    FRAME_NAMES,
    K_BODY,
    K_T,
    T_ERROR,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_NEW_MESSAGE,
    T_ROOM_HISTORY,
    T_ROOM_USERS,
    T_SEND_MESSAGE,
    T_TYPING_START,
    T_TYPING_STOP,
    T_USER_JOINED,
    T_USER_LEFT,
    T_USER_STOPPED_TYPING,
    T_USER_TYPING,
)
from .envelope import make_envelope, validate_envelope
from .errors import MalformedFrameError, TransportInitError
from .models import Membership, Message


class RelayState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class RelayConnected:
    connection_id: str


@dataclass(frozen=True)
class RelayDisconnected:
    reason: str


@dataclass(frozen=True)
class RelayHistory:
    messages: list[Message]


@dataclass(frozen=True)
class RelayNewMessage:
    message: Message


@dataclass(frozen=True)
class RelayRoomUsers:
    members: list[Membership]


@dataclass(frozen=True)
class RelayUserJoined:
    user_name: str
    user_id: str
    timestamp: str


@dataclass(frozen=True)
class RelayUserLeft:
    user_name: str
    user_id: str
    timestamp: str


@dataclass(frozen=True)
class RelayUserTyping:
    user_name: str
    user_id: str


@dataclass(frozen=True)
class RelayUserStoppedTyping:
    user_name: str
    user_id: str


@dataclass(frozen=True)
class RelayError:
    detail: str
    kind: str


RelayEvent = Union[
    RelayConnected,
    RelayDisconnected,
    RelayHistory,
    RelayNewMessage,
    RelayRoomUsers,
    RelayUserJoined,
    RelayUserLeft,
    RelayUserTyping,
    RelayUserStoppedTyping,
    RelayError,
]


class RelayChannel(Protocol):
    def send(self, payload: bytes) -> None: ...

    def close(self) -> None: ...


# An opener is called with the transport and must report back through
# on_link_established / on_packet / on_link_closed.
RelayOpener = Callable[["RelayTransport"], RelayChannel]


def _body_str(body: dict, key: str) -> str:
    v = body.get(key)
    if not isinstance(v, str):
        raise MalformedFrameError(f"field {key!r} must be a string")
    return v


class RelayTransport:
    """
    Client side of the relay wire protocol.

    Responsibilities:
    - Open one link to the hub through the opener
    - Buffer a join requested before the link is up and issue it on connect
    - Encode outbound frames and decode hub frames into RelayEvent values

    Error frames from the hub are advisory; they never tear the link down.
    """

    def __init__(
        self,
        destination: str | bytes | None = None,
        *,
        opener: RelayOpener | None = None,
        configdir: str | None = None,
        dest_name: str = "roomlink.relay",
        path_timeout_s: float = 15.0,
    ) -> None:
        self.log = logging.getLogger("roomlink.relay")
        if opener is None:
            from .reticulum import RelayLinkOpener

            opener = RelayLinkOpener(
                destination,
                configdir=configdir,
                dest_name=dest_name,
                path_timeout_s=path_timeout_s,
            )
        self._opener = opener

        self._lock = threading.RLock()
        self._state = RelayState.IDLE
        self._channel: RelayChannel | None = None
        self._connection_id: str | None = None
        self._pending_join: tuple[str, str] | None = None
        self._join_sent = False
        self._callback: Callable[[RelayEvent], None] | None = None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    def subscribe(self, callback: Callable[[RelayEvent], None] | None) -> None:
        self._callback = callback

    def connect(self) -> None:
        with self._lock:
            if self._state in (
                RelayState.CONNECTING,
                RelayState.CONNECTED,
                RelayState.JOINED,
            ):
                return
            self._state = RelayState.CONNECTING

        try:
            channel = self._opener(self)
        except TransportInitError:
            with self._lock:
                self._state = RelayState.DISCONNECTED
            raise
        except Exception as e:
            with self._lock:
                self._state = RelayState.DISCONNECTED
            raise TransportInitError(f"relay connect failed: {e}") from e

        with self._lock:
            if self._state == RelayState.DISCONNECTED:
                # disconnect() won the race while the link was opening.
                stale = channel
            else:
                stale = None
                self._channel = channel
        if stale is not None:
            stale.close()
            return
        # The link may have come up before the opener returned.
        self._send_join()

    def join_room(self, name: str, room_code: str) -> None:
        with self._lock:
            self._pending_join = (name, room_code)
            self._join_sent = False
            if self._state not in (RelayState.CONNECTED, RelayState.JOINED):
                self.log.debug("Join buffered until connected room=%s", room_code)
                return
        self._send_join()

    def send_message(self, text: str, room_code: str) -> None:
        self._send(T_SEND_MESSAGE, {"message": text, "roomCode": room_code})

    def typing_start(self, room_code: str) -> None:
        self._send(T_TYPING_START, {"roomCode": room_code})

    def typing_stop(self, room_code: str) -> None:
        self._send(T_TYPING_STOP, {"roomCode": room_code})

    def leave_room(self) -> None:
        with self._lock:
            self._pending_join = None
            if self._state == RelayState.JOINED:
                self._state = RelayState.CONNECTED
        self._send(T_LEAVE_ROOM)

    def disconnect(self) -> None:
        with self._lock:
            if self._state == RelayState.DISCONNECTED and self._channel is None:
                return
            channel, self._channel = self._channel, None
            self._state = RelayState.DISCONNECTED
            self._pending_join = None
        if channel is not None:
            channel.close()
        self.log.info("Relay disconnected")

    def on_link_established(self, connection_id: str) -> None:
        with self._lock:
            if self._state == RelayState.DISCONNECTED:
                return
            self._state = RelayState.CONNECTED
            self._connection_id = connection_id
            # A fresh link has no membership on the hub; rejoin if one is wanted.
            self._join_sent = False

        self.log.info("Relay connected connection=%s", connection_id)
        self._emit(RelayConnected(connection_id))
        self._send_join()

    def on_link_closed(self, reason: str) -> None:
        with self._lock:
            if self._state == RelayState.DISCONNECTED:
                return
            self._state = RelayState.DISCONNECTED
            self._channel = None
        self.log.info("Relay link closed reason=%s", reason)
        self._emit(RelayDisconnected(reason))

    def on_packet(self, data: bytes) -> None:
        try:
            env = decode(data)
            validate_envelope(env)
            event = self._to_event(env.get(K_T), env.get(K_BODY))
        except Exception as e:
            self.log.warning("Dropping malformed relay frame bytes=%s err=%s", len(data), e)
            return

        if event is None:
            return
        if isinstance(event, RelayHistory):
            with self._lock:
                if self._state == RelayState.CONNECTED:
                    self._state = RelayState.JOINED
        self._emit(event)

    def _to_event(self, t: int, body: Any) -> RelayEvent | None:
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("RX t=%s", FRAME_NAMES.get(t, t))

        if t == T_ROOM_HISTORY:
            if not isinstance(body, list):
                raise MalformedFrameError("room-history body must be a list")
            return RelayHistory([Message.from_wire(m) for m in body])
        if t == T_NEW_MESSAGE:
            return RelayNewMessage(Message.from_wire(body))
        if t == T_ROOM_USERS:
            if not isinstance(body, list):
                raise MalformedFrameError("room-users body must be a list")
            return RelayRoomUsers([Membership.from_wire(m) for m in body])

        if not isinstance(body, dict):
            raise MalformedFrameError(f"frame {FRAME_NAMES.get(t, t)} needs a map body")
        if t == T_USER_JOINED:
            return RelayUserJoined(
                _body_str(body, "userName"),
                _body_str(body, "userId"),
                _body_str(body, "timestamp"),
            )
        if t == T_USER_LEFT:
            return RelayUserLeft(
                _body_str(body, "userName"),
                _body_str(body, "userId"),
                _body_str(body, "timestamp"),
            )
        if t == T_USER_TYPING:
            return RelayUserTyping(_body_str(body, "userName"), _body_str(body, "userId"))
        if t == T_USER_STOPPED_TYPING:
            return RelayUserStoppedTyping(
                _body_str(body, "userName"), _body_str(body, "userId")
            )
        if t == T_ERROR:
            kind = body.get("kind")
            return RelayError(
                _body_str(body, "message"), kind if isinstance(kind, str) else "server"
            )

        self.log.debug("Ignoring unknown relay frame t=%s", t)
        return None

    def _send_join(self) -> None:
        with self._lock:
            pending = self._pending_join
            ready = self._channel is not None and self._state in (
                RelayState.CONNECTED,
                RelayState.JOINED,
            )
            if pending is None or not ready or self._join_sent:
                return
            self._join_sent = True
        name, room_code = pending
        self._send(T_JOIN_ROOM, {"userName": name, "roomCode": room_code})

    def _send(self, frame_type: int, body: Any = None) -> None:
        with self._lock:
            channel = self._channel
            connected = self._state in (RelayState.CONNECTED, RelayState.JOINED)
        if channel is None or not connected:
            self.log.debug(
                "Not connected; dropping %s", FRAME_NAMES.get(frame_type, frame_type)
            )
            return
        try:
            channel.send(encode(make_envelope(frame_type, body=body)))
        except OSError as e:
            self.log.warning(
                "Relay send failed t=%s err=%s", FRAME_NAMES.get(frame_type, frame_type), e
            )

    def _emit(self, event: RelayEvent) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            self.log.exception("Relay event handler failed")
