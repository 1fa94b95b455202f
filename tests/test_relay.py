import pytest

from roomlink.codec import decode, encode
from roomlink.constants import (
    K_BODY,
    K_T,
    T_ERROR,
    T_JOIN_ROOM,
    T_NEW_MESSAGE,
    T_ROOM_HISTORY,
    T_SEND_MESSAGE,
    T_TYPING_START,
    T_USER_TYPING,
)
from roomlink.envelope import make_envelope
from roomlink.errors import TransportInitError
from roomlink.models import Message
from roomlink.relay import (
    RelayConnected,
    RelayDisconnected,
    RelayError,
    RelayHistory,
    RelayNewMessage,
    RelayState,
    RelayTransport,
    RelayUserTyping,
)


class FakeChannel:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False

    def send(self, payload: bytes) -> None:
        self.sent.append(decode(payload))

    def close(self) -> None:
        self.closed = True


def _frame(frame_type: int, body=None) -> bytes:
    return encode(make_envelope(frame_type, body=body))


def _transport(opener=None):
    channel = FakeChannel()
    transport = RelayTransport(opener=opener or (lambda t: channel))
    events: list = []
    transport.subscribe(events.append)
    return transport, channel, events


def _msg(i: int) -> dict:
    return Message(f"m{i}", f"text {i}", "alice", "c1", "t", "ABCD").to_wire()


def test_join_is_buffered_until_link_established() -> None:
    transport, channel, events = _transport()
    transport.join_room("alice", "ABCD")
    transport.connect()

    assert transport.state == RelayState.CONNECTING
    assert channel.sent == []

    transport.on_link_established("cid-1")

    assert transport.state == RelayState.CONNECTED
    assert transport.connection_id == "cid-1"
    assert events == [RelayConnected("cid-1")]
    assert [env[K_T] for env in channel.sent] == [T_JOIN_ROOM]
    assert channel.sent[0][K_BODY] == {"userName": "alice", "roomCode": "ABCD"}


def test_join_sent_once_when_link_is_up_before_opener_returns() -> None:
    channel = FakeChannel()

    def opener(t: RelayTransport) -> FakeChannel:
        t.on_link_established("cid-1")
        return channel

    transport, _unused, _events = _transport(opener)
    transport.join_room("alice", "ABCD")
    transport.connect()

    assert [env[K_T] for env in channel.sent] == [T_JOIN_ROOM]


def test_room_history_moves_to_joined() -> None:
    transport, _channel, events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")
    transport.join_room("alice", "ABCD")

    transport.on_packet(_frame(T_ROOM_HISTORY, [_msg(1), _msg(2)]))

    assert transport.state == RelayState.JOINED
    history = events[-1]
    assert isinstance(history, RelayHistory)
    assert [m.id for m in history.messages] == ["m1", "m2"]


def test_commands_encode_relay_frames() -> None:
    transport, channel, _events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")

    transport.send_message("hi", "ABCD")
    transport.typing_start("ABCD")

    assert [(env[K_T], env[K_BODY]) for env in channel.sent] == [
        (T_SEND_MESSAGE, {"message": "hi", "roomCode": "ABCD"}),
        (T_TYPING_START, {"roomCode": "ABCD"}),
    ]


def test_commands_before_connect_are_dropped() -> None:
    transport, channel, _events = _transport()
    transport.send_message("hi", "ABCD")
    assert channel.sent == []


def test_error_frame_is_advisory() -> None:
    transport, channel, events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")

    transport.on_packet(_frame(T_ERROR, {"message": "Unauthorized", "kind": "unauthorized"}))

    assert events[-1] == RelayError("Unauthorized", "unauthorized")
    assert transport.state == RelayState.CONNECTED
    assert channel.closed is False


def test_hub_frames_become_typed_events() -> None:
    transport, _channel, events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")

    transport.on_packet(_frame(T_NEW_MESSAGE, _msg(3)))
    transport.on_packet(_frame(T_USER_TYPING, {"userName": "bob", "userId": "c2"}))

    assert isinstance(events[-2], RelayNewMessage)
    assert events[-2].message.id == "m3"
    assert events[-1] == RelayUserTyping("bob", "c2")


def test_malformed_frames_are_dropped() -> None:
    transport, _channel, events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")
    events.clear()

    transport.on_packet(b"garbage")
    transport.on_packet(_frame(T_NEW_MESSAGE, {"id": "m1"}))
    transport.on_packet(_frame(T_ROOM_HISTORY, "not a list"))

    assert events == []
    assert transport.state == RelayState.CONNECTED


def test_link_closed_emits_disconnected_once() -> None:
    transport, _channel, events = _transport()
    transport.connect()
    transport.on_link_established("cid-1")

    transport.on_link_closed("link closed")
    transport.on_link_closed("link closed")

    assert events[-1] == RelayDisconnected("link closed")
    assert sum(isinstance(e, RelayDisconnected) for e in events) == 1
    assert transport.state == RelayState.DISCONNECTED


def test_reconnect_rejoins_the_same_room() -> None:
    channels: list[FakeChannel] = []

    def opener(t: RelayTransport) -> FakeChannel:
        channels.append(FakeChannel())
        return channels[-1]

    transport, _unused, _events = _transport(opener)
    transport.join_room("alice", "ABCD")
    transport.connect()
    transport.on_link_established("cid-1")
    transport.on_link_closed("link closed")

    transport.connect()
    transport.on_link_established("cid-2")

    assert [env[K_T] for env in channels[1].sent] == [T_JOIN_ROOM]


def test_disconnect_is_idempotent_and_silences_late_callbacks() -> None:
    transport, channel, events = _transport()
    transport.connect()
    transport.disconnect()
    transport.disconnect()

    assert channel.closed is True
    transport.on_link_established("late")
    assert events == []
    assert transport.state == RelayState.DISCONNECTED


def test_connect_failure_raises_transport_init_error() -> None:
    def opener(t: RelayTransport):
        raise TransportInitError("no path to relay")

    transport, _channel, _events = _transport(opener)
    with pytest.raises(TransportInitError):
        transport.connect()
    assert transport.state == RelayState.DISCONNECTED


def test_default_opener_requires_destination() -> None:
    with pytest.raises(TransportInitError):
        RelayTransport(None).connect()
