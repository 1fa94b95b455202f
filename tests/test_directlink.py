import json

import pytest

from roomlink.crypto import AesGcmCipher, derive_room_key
from roomlink.directlink import (
    DirectLinkTransport,
    LinkConnected,
    LinkError,
    LinkMessage,
    LinkPeerJoined,
    LinkPeerLeft,
)
from roomlink.errors import NoActiveLinkError, TransportInitError
from roomlink.models import Message


class Bus:
    """Shared medium; every attached path hears every frame, its own included."""

    def __init__(self) -> None:
        self.listeners: list = []

    def broadcast(self, data: bytes) -> None:
        for cb in list(self.listeners):
            cb(data)


class FakeSubLink:
    def __init__(self, name: str, *, fail: bool = False, bus: Bus | None = None) -> None:
        self.name = name
        self.fail = fail
        self.bus = bus
        self.sent: list[bytes] = []
        self.on_bytes = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, on_bytes) -> None:
        if self.fail:
            raise TransportInitError(f"{self.name} unavailable")
        self.on_bytes = on_bytes
        self._open = True
        if self.bus is not None:
            self.bus.listeners.append(on_bytes)

    def send(self, data: bytes) -> None:
        self.sent.append(data)
        if self.bus is not None:
            self.bus.broadcast(data)

    def close(self) -> None:
        self._open = False
        if self.bus is not None and self.on_bytes in self.bus.listeners:
            self.bus.listeners.remove(self.on_bytes)


def _msg(text: str = "hi", sender_id: str = "peer-a") -> Message:
    return Message("m1", text, "alice", sender_id, "2024-01-01T00:00:00.000Z", "ABCD")


def _peer(peer_id: str, bus: Bus, cipher=None):
    transport = DirectLinkTransport(
        peer_id,
        primary=FakeSubLink("radio", fail=True),
        fallback=FakeSubLink("lan", bus=bus),
        cipher=cipher,
    )
    events: list = []
    transport.subscribe(events.append)
    with pytest.raises(TransportInitError):
        transport.initialize()
    events.clear()
    return transport, events


def test_primary_failure_falls_back_and_send_succeeds() -> None:
    primary = FakeSubLink("radio", fail=True)
    fallback = FakeSubLink("lan")
    transport = DirectLinkTransport("peer-a", primary=primary, fallback=fallback)
    events: list = []
    transport.subscribe(events.append)

    with pytest.raises(TransportInitError) as excinfo:
        transport.initialize()

    assert excinfo.value.fallback_active is True
    assert events == [LinkConnected("lan")]
    assert transport.active_path == "lan"

    transport.send_message(_msg())
    assert len(fallback.sent) == 1
    assert primary.sent == []


def test_primary_success_uses_primary() -> None:
    primary = FakeSubLink("radio")
    fallback = FakeSubLink("lan")
    transport = DirectLinkTransport("peer-a", primary=primary, fallback=fallback)
    events: list = []
    transport.subscribe(events.append)

    transport.initialize()

    assert events == [LinkConnected("radio")]
    assert fallback.is_open is False
    transport.send_message(_msg())
    assert len(primary.sent) == 1


def test_both_paths_failing_reports_error() -> None:
    transport = DirectLinkTransport(
        "peer-a",
        primary=FakeSubLink("radio", fail=True),
        fallback=FakeSubLink("lan", fail=True),
    )
    events: list = []
    transport.subscribe(events.append)

    with pytest.raises(TransportInitError) as excinfo:
        transport.initialize()

    assert excinfo.value.fallback_active is False
    assert len(events) == 1
    assert isinstance(events[0], LinkError)
    assert events[0].kind == "transport_init"

    with pytest.raises(NoActiveLinkError):
        transport.send_message(_msg())


def test_frames_are_versioned_json_with_origin() -> None:
    fallback = FakeSubLink("lan")
    transport = DirectLinkTransport(
        "peer-a", primary=FakeSubLink("radio", fail=True), fallback=fallback
    )
    with pytest.raises(TransportInitError):
        transport.initialize()

    transport.send_message(_msg())

    frame = json.loads(fallback.sent[0].decode("utf-8"))
    assert frame["v"] == 1
    assert frame["type"] == "message"
    assert frame["origin"] == "peer-a"
    assert frame["message"]["senderId"] == "peer-a"


def test_message_reaches_peer_and_own_echo_is_ignored() -> None:
    bus = Bus()
    a, a_events = _peer("peer-a", bus)
    b, b_events = _peer("peer-b", bus)

    a.send_message(_msg())

    assert a_events == []
    assert b_events == [LinkMessage(_msg())]


def test_join_is_answered_with_presence() -> None:
    bus = Bus()
    a, a_events = _peer("peer-a", bus)
    a.join_room("alice", "ABCD")

    # b arrives after a's announcement, so it only learns of a by the reply.
    b, b_events = _peer("peer-b", bus)
    b.join_room("bob", "ABCD")

    assert [(e.name, e.peer_id) for e in a_events if isinstance(e, LinkPeerJoined)] == [
        ("bob", "peer-b")
    ]
    assert [(e.name, e.peer_id) for e in b_events if isinstance(e, LinkPeerJoined)] == [
        ("alice", "peer-a")
    ]


def test_no_presence_reply_from_other_rooms() -> None:
    bus = Bus()
    a, _a_events = _peer("peer-a", bus)
    b, b_events = _peer("peer-b", bus)

    a.join_room("alice", "WXYZ")
    b.join_room("bob", "ABCD")

    # b still hears a's own join announcement, but a does not answer b's.
    assert [e.room_code for e in b_events if isinstance(e, LinkPeerJoined)] == ["WXYZ"]


def test_leave_broadcasts_user_left() -> None:
    bus = Bus()
    a, _a_events = _peer("peer-a", bus)
    b, b_events = _peer("peer-b", bus)
    a.join_room("alice", "ABCD")

    a.leave_room()

    assert b_events[-1] == LinkPeerLeft("alice", "ABCD", "peer-a")


def test_sealed_frames_only_open_for_same_room_key() -> None:
    bus = Bus()
    key = derive_room_key("ABCD")
    a, _a_events = _peer("peer-a", bus, AesGcmCipher(key))
    b, b_events = _peer("peer-b", bus, AesGcmCipher(key))
    c, c_events = _peer("peer-c", bus, AesGcmCipher(derive_room_key("WXYZ")))

    a.send_message(_msg())

    assert b_events == [LinkMessage(_msg())]
    assert c_events == []


def test_malformed_frames_are_dropped() -> None:
    fallback = FakeSubLink("lan")
    transport = DirectLinkTransport(
        "peer-a", primary=FakeSubLink("radio", fail=True), fallback=fallback
    )
    events: list = []
    transport.subscribe(events.append)
    with pytest.raises(TransportInitError):
        transport.initialize()
    events.clear()

    fallback.on_bytes(b"not json at all")
    fallback.on_bytes(b"\xff\xfe")
    fallback.on_bytes(json.dumps({"v": 1, "type": "bogus", "origin": "x"}).encode())
    fallback.on_bytes(json.dumps({"v": 2, "type": "message", "origin": "x"}).encode())
    fallback.on_bytes(json.dumps({"v": 1, "type": "message", "origin": "x"}).encode())

    assert events == []

    # Still usable afterwards.
    transport.send_message(_msg())
    assert len(fallback.sent) == 1


def test_disconnect_closes_paths() -> None:
    primary = FakeSubLink("radio")
    transport = DirectLinkTransport("peer-a", primary=primary, fallback=FakeSubLink("lan"))
    transport.initialize()
    transport.disconnect()

    assert primary.is_open is False
    assert transport.active_path is None
    with pytest.raises(NoActiveLinkError):
        transport.send_message(_msg())
