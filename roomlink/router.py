from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .codec import decode, encode
from .constants import (
    ERR_INVALID,
    ERR_MALFORMED,
    ERR_RATE_LIMITED,
    ERR_UNAUTHORIZED,
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
from .errors import Unauthorized
from .rooms import LeaveResult
from .util import iso_now

if TYPE_CHECKING:
    from .hub import RelayHub

Outgoing = list[tuple[RNS.Link, bytes]]


class FrameRouter:
    """
    Handles frame routing and dispatching for the relay hub.

    This class is responsible for:
    - Decoding and validating incoming packets
    - Dispatching frames by type (join, leave, send, typing)
    - Fanning results out to room members
    - Rate limiting
    - Converting rejected actions into error frames

    Every method runs with the hub state lock held and only queues payloads;
    the hub sends them once the lock is released.
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomlink.router")

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        """Main entry point for routing an incoming packet."""
        sessions = self.hub.session_manager
        cid = sessions.connection_id(link)
        if cid is None:
            return

        if not sessions.refill_and_take(link, 1.0):
            self.log.debug("Rate limited connection=%s", cid)
            self._emit_error(outgoing, link, "rate limited", ERR_RATE_LIMITED)
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.log.debug(
                "Bad packet connection=%s bytes=%s err=%s", cid, len(data), e
            )
            self._emit_error(outgoing, link, f"bad frame: {e}", ERR_MALFORMED)
            return

        t = env.get(K_T)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX connection=%s t=%s bytes=%s",
                cid,
                FRAME_NAMES.get(t, t),
                len(data),
            )

        # Dispatch by frame type
        try:
            if t == T_JOIN_ROOM:
                self._handle_join(link, cid, body, outgoing)
            elif t == T_LEAVE_ROOM:
                self._handle_leave(cid, outgoing)
            elif t == T_SEND_MESSAGE:
                self._handle_send(cid, body, outgoing)
            elif t in (T_TYPING_START, T_TYPING_STOP):
                self._handle_typing(cid, body, outgoing, started=t == T_TYPING_START)
            else:
                self._emit_error(
                    outgoing, link, f"unsupported frame type {t}", ERR_INVALID
                )
        except Unauthorized:
            self.log.info(
                "Rejected %s from connection=%s: not joined",
                FRAME_NAMES.get(t, t),
                cid,
            )
            self._emit_error(outgoing, link, "Unauthorized", ERR_UNAUTHORIZED)
        except ValueError as e:
            self._emit_error(outgoing, link, str(e), ERR_INVALID)

    def _handle_join(
        self, link: RNS.Link, cid: str, body: Any, outgoing: Outgoing
    ) -> None:
        """Handle join-room: history to the joiner, presence to the room."""
        if not isinstance(body, dict):
            raise ValueError("join-room requires userName and roomCode")
        name = body.get("userName")
        room_code = body.get("roomCode")
        if not isinstance(name, str) or not isinstance(room_code, str):
            raise ValueError("join-room requires userName and roomCode")

        result = self.hub.registry.join(cid, name, room_code)
        if result.previous is not None:
            self._broadcast_left(result.previous, outgoing)

        self.log.info(
            "JOIN connection=%s name=%r room=%s created=%s",
            cid,
            result.membership.name,
            result.room_code,
            result.created,
        )

        self._queue(
            outgoing, link, T_ROOM_HISTORY, [m.to_wire() for m in result.history]
        )

        joined_body = {
            "userName": result.membership.name,
            "userId": cid,
            "timestamp": iso_now(),
        }
        for member in result.members:
            if member.connection_id != cid:
                self._queue_to(outgoing, member.connection_id, T_USER_JOINED, joined_body)

        users_body = [m.to_wire() for m in result.members]
        for member in result.members:
            self._queue_to(outgoing, member.connection_id, T_ROOM_USERS, users_body)

    def _handle_send(self, cid: str, body: Any, outgoing: Outgoing) -> None:
        """Handle send-message: stamp, record, fan out to every member."""
        if not isinstance(body, dict):
            raise ValueError("send-message requires message and roomCode")
        text = body.get("message")
        room_code = body.get("roomCode")
        if not isinstance(room_code, str):
            raise Unauthorized("Unauthorized")
        if not isinstance(text, str):
            raise ValueError("send-message requires message text")

        registry = self.hub.registry
        message = registry.record_message(cid, room_code, text)
        wire = message.to_wire()
        for member_id in registry.member_ids(message.room_code):
            self._queue_to(outgoing, member_id, T_NEW_MESSAGE, wire)

        self.log.debug(
            "MSG connection=%s room=%s id=%s chars=%s",
            cid,
            message.room_code,
            message.id,
            len(text),
        )

    def _handle_typing(
        self, cid: str, body: Any, outgoing: Outgoing, *, started: bool
    ) -> None:
        """Forward typing signals to the other members; nothing is recorded."""
        room_code = body.get("roomCode") if isinstance(body, dict) else None
        if not isinstance(room_code, str):
            raise Unauthorized("Unauthorized")

        membership, recipients = self.hub.registry.typing(cid, room_code)
        frame_type = T_USER_TYPING if started else T_USER_STOPPED_TYPING
        typing_body = {"userName": membership.name, "userId": cid}
        for member_id in recipients:
            self._queue_to(outgoing, member_id, frame_type, typing_body)

    def _handle_leave(self, cid: str, outgoing: Outgoing) -> None:
        result = self.hub.registry.leave(cid)
        if result is None:
            return
        self.log.info(
            "LEAVE connection=%s room=%s", cid, result.membership.room_code
        )
        self._broadcast_left(result, outgoing)

    def handle_link_closed(self, cid: str, outgoing: Outgoing) -> None:
        """Remove a closed connection from its room and tell the others."""
        result = self.hub.registry.leave(cid)
        if result is None:
            return
        self.log.info(
            "Connection closed connection=%s name=%r room=%s room_deleted=%s",
            cid,
            result.membership.name,
            result.membership.room_code,
            result.room_deleted,
        )
        self._broadcast_left(result, outgoing)

    def _broadcast_left(self, result: LeaveResult, outgoing: Outgoing) -> None:
        if not result.remaining:
            return
        left_body = {
            "userName": result.membership.name,
            "userId": result.membership.connection_id,
            "timestamp": iso_now(),
        }
        users_body = [m.to_wire() for m in result.remaining]
        for member in result.remaining:
            self._queue_to(outgoing, member.connection_id, T_USER_LEFT, left_body)
            self._queue_to(outgoing, member.connection_id, T_ROOM_USERS, users_body)

    def _queue(
        self, outgoing: Outgoing, link: RNS.Link, frame_type: int, body: Any
    ) -> None:
        outgoing.append((link, encode(make_envelope(frame_type, body=body))))

    def _queue_to(
        self, outgoing: Outgoing, connection_id: str, frame_type: int, body: Any
    ) -> None:
        link = self.hub.session_manager.link_for(connection_id)
        if link is None:
            self.log.debug("No link for connection=%s; dropping frame", connection_id)
            return
        self._queue(outgoing, link, frame_type, body)

    def _emit_error(
        self, outgoing: Outgoing, link: RNS.Link, text: str, kind: str
    ) -> None:
        self._queue(outgoing, link, T_ERROR, {"message": text, "kind": kind})
