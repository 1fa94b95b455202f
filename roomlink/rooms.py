"""Room registry for the relay hub.

This module holds all room-related state on the server side:
- Room membership tracking, one room per connection
- Per-room message history, created and destroyed with the member set
- Authorization of sends and typing signals against the last join

The registry is an owned object: the hub constructs one at start and hands it
to the router. It performs no I/O, so it can be exercised without a network.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .constants import MAX_MESSAGE_CHARS, MAX_ROOM_HISTORY, NICK_MAX_CHARS, ROOM_CODE_MAX_CHARS
from .errors import Unauthorized
from .models import Membership, Message, Room
from .util import iso_now, new_id, normalize_nick, normalize_room_code


@dataclass(frozen=True)
class LeaveResult:
    membership: Membership
    remaining: list[Membership]
    room_deleted: bool


@dataclass(frozen=True)
class JoinResult:
    room_code: str
    membership: Membership
    history: list[Message]
    members: list[Membership]
    created: bool
    previous: LeaveResult | None = None


class RoomRegistry:
    """Rooms, members and history keyed by normalized room code."""

    def __init__(
        self,
        *,
        max_history: int = MAX_ROOM_HISTORY,
        max_message_chars: int = MAX_MESSAGE_CHARS,
        nick_max_chars: int = NICK_MAX_CHARS,
        max_room_code_len: int = ROOM_CODE_MAX_CHARS,
        clock: Callable[[], str] = iso_now,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.log = logging.getLogger("roomlink.rooms")
        self.max_history = int(max_history)
        self.max_message_chars = int(max_message_chars)
        self.nick_max_chars = int(nick_max_chars)
        self.max_room_code_len = int(max_room_code_len)
        self._clock = clock
        self._id_factory = id_factory

        self.lock = threading.RLock()
        self._rooms: dict[str, Room] = {}
        self._members: dict[str, Membership] = {}

    def clear(self) -> None:
        """Drop all rooms and memberships. Called during hub shutdown."""
        with self.lock:
            self._rooms.clear()
            self._members.clear()

    def join(self, connection_id: str, name: str, room_code: str) -> JoinResult:
        """Add a connection to a room, creating the room if needed.

        A connection belongs to at most one room; joining another room leaves
        the previous one first.
        """
        nick = normalize_nick(name, max_chars=self.nick_max_chars)
        if nick is None:
            raise ValueError("invalid display name")
        code = normalize_room_code(room_code, max_chars=self.max_room_code_len)

        with self.lock:
            previous = None
            current = self._members.get(connection_id)
            if current is not None and current.room_code != code:
                previous = self.leave(connection_id)

            room = self._rooms.get(code)
            created = room is None
            if room is None:
                room = Room(code=code, created_at=self._clock())
                self._rooms[code] = room
                self.log.debug("Room created room=%s", code)

            membership = self._members.get(connection_id)
            if membership is None or membership.room_code != code:
                membership = Membership(
                    connection_id=connection_id,
                    name=nick,
                    room_code=code,
                    joined_at=self._clock(),
                )
            elif membership.name != nick:
                membership = Membership(
                    connection_id=connection_id,
                    name=nick,
                    room_code=code,
                    joined_at=membership.joined_at,
                )
            self._members[connection_id] = membership
            room.members.add(connection_id)

            return JoinResult(
                room_code=code,
                membership=membership,
                history=list(room.history),
                members=self._members_locked(room),
                created=created,
                previous=previous,
            )

    def record_message(self, connection_id: str, room_code: str, text: str) -> Message:
        """Stamp and append a message sent by a member of ``room_code``."""
        with self.lock:
            membership = self._authorize(connection_id, room_code)

            if not isinstance(text, str) or not text.strip():
                raise ValueError("message text must not be empty")
            if self.max_message_chars and len(text) > self.max_message_chars:
                raise ValueError(
                    f"message too long (max {self.max_message_chars} chars)"
                )

            room = self._rooms[membership.room_code]
            message = Message(
                id=self._id_factory(),
                text=text,
                sender=membership.name,
                sender_id=connection_id,
                timestamp=self._clock(),
                room_code=membership.room_code,
            )
            room.history.append(message)
            if self.max_history > 0 and len(room.history) > self.max_history:
                del room.history[: len(room.history) - self.max_history]
            return message

    def typing(self, connection_id: str, room_code: str) -> tuple[Membership, list[str]]:
        """Authorize a typing signal; returns the sender and the other members."""
        with self.lock:
            membership = self._authorize(connection_id, room_code)
            room = self._rooms[membership.room_code]
            recipients = sorted(cid for cid in room.members if cid != connection_id)
            return membership, recipients

    def leave(self, connection_id: str) -> LeaveResult | None:
        """Remove a connection; an emptied room is deleted with its history."""
        with self.lock:
            membership = self._members.pop(connection_id, None)
            if membership is None:
                return None

            room = self._rooms.get(membership.room_code)
            if room is None:
                return LeaveResult(membership, [], True)

            room.members.discard(connection_id)
            deleted = not room.members
            if deleted:
                self._rooms.pop(room.code, None)
                self.log.debug(
                    "Room deleted room=%s history=%s", room.code, len(room.history)
                )
                return LeaveResult(membership, [], True)

            return LeaveResult(membership, self._members_locked(room), False)

    def membership(self, connection_id: str) -> Membership | None:
        with self.lock:
            return self._members.get(connection_id)

    def members(self, room_code: str) -> list[Membership]:
        with self.lock:
            room = self._rooms.get(self._norm(room_code))
            return self._members_locked(room) if room is not None else []

    def member_ids(self, room_code: str) -> list[str]:
        with self.lock:
            room = self._rooms.get(self._norm(room_code))
            return sorted(room.members) if room is not None else []

    def history(self, room_code: str) -> list[Message]:
        with self.lock:
            room = self._rooms.get(self._norm(room_code))
            return list(room.history) if room is not None else []

    def room_codes(self) -> list[str]:
        with self.lock:
            return sorted(self._rooms)

    def stats(self) -> dict[str, Any]:
        with self.lock:
            top_rooms = sorted(
                ((code, len(room.members)) for code, room in self._rooms.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            return {
                "rooms_total": len(self._rooms),
                "memberships": len(self._members),
                "messages_held": sum(len(r.history) for r in self._rooms.values()),
                "top_rooms": top_rooms,
            }

    def _norm(self, room_code: str) -> str:
        try:
            return normalize_room_code(room_code, max_chars=self.max_room_code_len)
        except ValueError:
            return ""

    def _authorize(self, connection_id: str, room_code: str) -> Membership:
        membership = self._members.get(connection_id)
        code = self._norm(room_code)
        if membership is None or not code or membership.room_code != code:
            raise Unauthorized("Unauthorized")
        return membership

    def _members_locked(self, room: Room) -> list[Membership]:
        return sorted(
            (self._members[cid] for cid in room.members if cid in self._members),
            key=lambda m: (m.joined_at, m.connection_id),
        )
