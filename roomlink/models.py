"""Value types exchanged between the store, the transports and the hub."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import MalformedFrameError


def _require_str(data: dict, key: str) -> str:
    v = data.get(key)
    if not isinstance(v, str):
        raise MalformedFrameError(f"field {key!r} must be a string")
    return v


@dataclass(frozen=True)
class User:
    name: str
    room_code: str


@dataclass(frozen=True)
class Message:
    id: str
    text: str
    sender: str
    sender_id: str
    timestamp: str
    room_code: str

    def to_wire(self) -> dict[str, str]:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
            "roomCode": self.room_code,
        }

    @classmethod
    def from_wire(cls, data: Any) -> Message:
        if not isinstance(data, dict):
            raise MalformedFrameError("message must be a map")
        return cls(
            id=_require_str(data, "id"),
            text=_require_str(data, "text"),
            sender=_require_str(data, "sender"),
            sender_id=_require_str(data, "senderId"),
            timestamp=_require_str(data, "timestamp"),
            room_code=_require_str(data, "roomCode"),
        )


@dataclass(frozen=True)
class Membership:
    connection_id: str
    name: str
    room_code: str
    joined_at: str = ""

    def to_wire(self) -> dict[str, str]:
        return {
            "id": self.connection_id,
            "name": self.name,
            "roomCode": self.room_code,
            "joinedAt": self.joined_at,
        }

    @classmethod
    def from_wire(cls, data: Any) -> Membership:
        if not isinstance(data, dict):
            raise MalformedFrameError("membership must be a map")
        joined_at = data.get("joinedAt")
        return cls(
            connection_id=_require_str(data, "id"),
            name=_require_str(data, "name"),
            room_code=_require_str(data, "roomCode"),
            joined_at=joined_at if isinstance(joined_at, str) else "",
        )


@dataclass
class Room:
    """Server-side room: members and history live and die together."""

    code: str
    created_at: str
    members: set[str] = field(default_factory=set)
    history: list[Message] = field(default_factory=list)
