import socket
import threading

import pytest

from roomlink.directlink import DirectLinkTransport
from roomlink.errors import NoActiveLinkError, TransportInitError
from roomlink.lan import LanLink
from roomlink.models import Message


def _free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def test_loopback_datagram_is_delivered() -> None:
    received: list[bytes] = []
    got = threading.Event()

    def on_bytes(data: bytes) -> None:
        received.append(data)
        got.set()

    link = LanLink(port=_free_port(), bind_ip="127.0.0.1", broadcast_ip="127.0.0.1")
    link.open(on_bytes)
    try:
        assert link.is_open
        link.send(b'{"v":1}')
        assert got.wait(2.0)
        assert received == [b'{"v":1}']
    finally:
        link.close()
    assert not link.is_open


def test_send_after_close_raises() -> None:
    link = LanLink(port=_free_port(), bind_ip="127.0.0.1", broadcast_ip="127.0.0.1")
    with pytest.raises(NoActiveLinkError):
        link.send(b"x")


def test_open_on_unbindable_address_fails() -> None:
    link = LanLink(port=_free_port(), bind_ip="203.0.113.1")
    with pytest.raises(TransportInitError):
        link.open(lambda data: None)


class _NoRadio:
    name = "radio"
    is_open = False

    def open(self, on_bytes) -> None:
        raise TransportInitError("no radio interface")

    def send(self, data: bytes) -> None:
        raise NoActiveLinkError("radio is closed")

    def close(self) -> None:
        pass


def test_oversized_frame_on_fallback_is_no_active_link() -> None:
    lan = LanLink(port=_free_port(), bind_ip="127.0.0.1", broadcast_ip="127.0.0.1")
    transport = DirectLinkTransport("peer-a", primary=_NoRadio(), fallback=lan)
    with pytest.raises(TransportInitError):
        transport.initialize()
    try:
        assert transport.active_path == "lan"
        big = Message("m1", "x" * 70000, "alice", "peer-a", "2024-01-01T00:00:00.000Z", "ABCD")
        with pytest.raises(NoActiveLinkError, match="lan send failed"):
            transport.send_message(big)
    finally:
        transport.disconnect()
