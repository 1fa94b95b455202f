"""Events the coordinator publishes to its subscribers."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from .models import Membership, Message


class ConnectionMode(str, enum.Enum):
    RELAY = "relay"
    DIRECT = "direct"


@dataclass(frozen=True)
class Connected:
    mode: ConnectionMode
    path: str


@dataclass(frozen=True)
class Disconnected:
    reason: str


@dataclass(frozen=True)
class MessageReceived:
    message: Message
    is_mine: bool
    # False when a direct-link send found no open path; the message is
    # still stored locally.
    delivered: bool = True


@dataclass(frozen=True)
class RoomHistory:
    messages: list[MessageReceived]


@dataclass(frozen=True)
class RoomMembers:
    members: list[Membership]


@dataclass(frozen=True)
class MemberJoined:
    name: str


@dataclass(frozen=True)
class MemberLeft:
    name: str


@dataclass(frozen=True)
class UserTyping:
    name: str


@dataclass(frozen=True)
class UserStoppedTyping:
    name: str


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    detail: str


ChatEvent = Union[
    Connected,
    Disconnected,
    MessageReceived,
    RoomHistory,
    RoomMembers,
    MemberJoined,
    MemberLeft,
    UserTyping,
    UserStoppedTyping,
    ErrorEvent,
]
