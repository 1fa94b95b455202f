"""Fallback direct-link path: UDP broadcast on the local network."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable

from .constants import LAN_MAX_DATAGRAM, LAN_PORT
from .errors import NoActiveLinkError, TransportInitError


class LanLink:
    """
    Broadcast datagram channel for peers on the same network segment.

    Responsibilities:
    - Bind a UDP socket on the shared port with broadcast enabled
    - Send each frame as one datagram to the broadcast address
    - Hand received datagrams to the owner from a listener thread

    Frames carry their origin; filtering our own broadcasts is the owner's job.
    """

    name = "lan"

    def __init__(
        self,
        *,
        port: int = LAN_PORT,
        bind_ip: str = "0.0.0.0",
        broadcast_ip: str = "255.255.255.255",
    ) -> None:
        self.log = logging.getLogger("roomlink.lan")
        self.port = int(port)
        self.bind_ip = bind_ip
        self.broadcast_ip = broadcast_ip

        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def is_open(self) -> bool:
        return self._running and self._sock is not None

    def open(self, on_bytes: Callable[[bytes], None]) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # Allow several clients on one host to share the port.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.bind_ip, self.port))
            # Wake periodically so close() can stop the listener.
            sock.settimeout(0.5)
        except OSError as e:
            sock.close()
            raise TransportInitError(
                f"local network unavailable on {self.bind_ip}:{self.port}: {e}"
            ) from e

        self._sock = sock
        self._running = True
        self._thread = threading.Thread(
            target=self._listen_loop,
            args=(sock, on_bytes),
            name="roomlink-lan",
            daemon=True,
        )
        self._thread.start()
        self.log.info(
            "LAN channel open bind=%s:%s broadcast=%s",
            self.bind_ip,
            self.port,
            self.broadcast_ip,
        )

    def send(self, data: bytes) -> None:
        sock = self._sock
        if not self._running or sock is None:
            raise NoActiveLinkError("local network channel is closed")
        if len(data) > LAN_MAX_DATAGRAM:
            raise ValueError(f"frame too large for a datagram ({len(data)} bytes)")
        try:
            sock.sendto(data, (self.broadcast_ip, self.port))
        except OSError as e:
            raise NoActiveLinkError(f"local network send failed: {e}") from e

    def close(self) -> None:
        self._running = False
        sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        self._thread = None

    def _listen_loop(self, sock: socket.socket, on_bytes: Callable[[bytes], None]) -> None:
        while self._running:
            try:
                data, _addr = sock.recvfrom(LAN_MAX_DATAGRAM)
            except OSError:
                if not self._running:
                    break
                continue
            try:
                on_bytes(data)
            except Exception:
                self.log.exception("LAN frame handler failed")
