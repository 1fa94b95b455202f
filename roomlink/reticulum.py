"""Reticulum plumbing shared by the hub, the relay client and the radio path."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import RNS

from .errors import NoActiveLinkError, TransportInitError
from .session import link_connection_id
from .util import fmt_hash, parse_hex_hash

if TYPE_CHECKING:
    from .relay import RelayTransport

log = logging.getLogger("roomlink.reticulum")

_reticulum_lock = threading.Lock()
_reticulum: RNS.Reticulum | None = None


def start_reticulum(configdir: str | None = None) -> RNS.Reticulum:
    """Start (once per process) and return the Reticulum instance."""
    global _reticulum
    with _reticulum_lock:
        if _reticulum is None:
            try:
                _reticulum = RNS.Reticulum(configdir=configdir)
            except Exception as e:
                raise TransportInitError(f"Reticulum unavailable: {e}") from e
        return _reticulum


def split_dest_name(dest_name: str) -> tuple[str, list[str]]:
    parts = [p for p in str(dest_name).split(".") if p]
    if not parts:
        raise ValueError("dest_name must not be empty")
    return parts[0], parts[1:]


def read_resource_payload(resource: RNS.Resource) -> bytes | None:
    if resource.status != RNS.Resource.COMPLETE:
        log.warning(
            "Resource transfer failed connection=%s status=%s",
            link_connection_id(resource.link),
            resource.status,
        )
        return None
    try:
        payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
    except Exception as e:
        log.error(
            "Failed to read resource data connection=%s: %s",
            link_connection_id(resource.link),
            e,
        )
        return None
    return bytes(payload)


def accept_frame_resources(
    link: RNS.Link, on_frame: Callable[[bytes], None], *, max_bytes: int
) -> None:
    """Accept frames too large for one packet, delivered as Resources."""

    def _advertised(resource) -> bool:
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > max_bytes:
            log.warning(
                "Rejecting resource (too large: %s > %s) connection=%s",
                size,
                max_bytes,
                link_connection_id(link),
            )
            return False
        return True

    def _concluded(resource) -> None:
        payload = read_resource_payload(resource)
        if payload is not None:
            on_frame(payload)

    try:
        link.set_resource_strategy(RNS.Link.ACCEPT_APP)
        link.set_resource_callback(_advertised)
        link.set_resource_concluded_callback(_concluded)
    except Exception as e:
        log.warning(
            "Failed to set resource callbacks connection=%s: %s",
            link_connection_id(link),
            e,
        )


def send_frame(link: RNS.Link, payload: bytes) -> None:
    """Send one frame as a packet, or as a Resource if it exceeds the MDU."""
    mdu = getattr(link, "MDU", None)
    if mdu is not None and len(payload) > mdu:
        RNS.Resource(payload, link, advertise=True, auto_compress=False)
    else:
        RNS.Packet(link, payload).send()


class RnsChannel:
    """An open relay link as seen by the relay transport."""

    def __init__(self, link: RNS.Link) -> None:
        self.link = link

    def send(self, payload: bytes) -> None:
        if self.link.status == RNS.Link.CLOSED:
            raise OSError("relay link is closed")
        send_frame(self.link, payload)

    def close(self) -> None:
        try:
            self.link.teardown()
        except Exception:
            log.debug("Link teardown failed", exc_info=True)


class RelayLinkOpener:
    """Opens a Reticulum link to the relay hub destination."""

    def __init__(
        self,
        destination: str | bytes | None,
        *,
        configdir: str | None = None,
        dest_name: str = "roomlink.relay",
        path_timeout_s: float = 15.0,
        max_frame_bytes: int = 256 * 1024,
    ) -> None:
        self.destination = destination
        self.configdir = configdir
        self.dest_name = dest_name
        self.path_timeout_s = float(path_timeout_s)
        self.max_frame_bytes = int(max_frame_bytes)

    def __call__(self, transport: RelayTransport) -> RnsChannel:
        if not self.destination:
            raise TransportInitError("no relay destination configured")
        try:
            dest_hash = (
                bytes(self.destination)
                if isinstance(self.destination, (bytes, bytearray))
                else parse_hex_hash(self.destination)
            )
        except ValueError as e:
            raise TransportInitError(str(e)) from e

        start_reticulum(self.configdir)

        if not RNS.Transport.has_path(dest_hash):
            log.info("Requesting path to relay dest=%s", fmt_hash(dest_hash))
            RNS.Transport.request_path(dest_hash)
            deadline = time.monotonic() + self.path_timeout_s
            while not RNS.Transport.has_path(dest_hash):
                if time.monotonic() > deadline:
                    raise TransportInitError(
                        f"no path to relay {fmt_hash(dest_hash)} "
                        f"within {self.path_timeout_s:g}s"
                    )
                time.sleep(0.1)

        identity = RNS.Identity.recall(dest_hash)
        if identity is None:
            raise TransportInitError(
                f"relay identity unknown for {fmt_hash(dest_hash)}"
            )

        app_name, aspects = split_dest_name(self.dest_name)
        destination = RNS.Destination(
            identity, RNS.Destination.OUT, RNS.Destination.SINGLE, app_name, *aspects
        )
        link = RNS.Link(
            destination,
            established_callback=lambda l: transport.on_link_established(
                link_connection_id(l)
            ),
            closed_callback=lambda l: transport.on_link_closed("link closed"),
        )
        link.set_packet_callback(lambda data, pkt: transport.on_packet(data))
        accept_frame_resources(link, transport.on_packet, max_bytes=self.max_frame_bytes)
        return RnsChannel(link)


class _PeerAnnounceHandler:
    """Reticulum announce handler filtered to the direct-link aspect."""

    def __init__(self, aspect_filter: str, callback) -> None:
        self.aspect_filter = aspect_filter
        self._callback = callback

    def received_announce(self, destination_hash, announced_identity, app_data):
        self._callback(destination_hash, announced_identity)


class RadioLink:
    """Primary direct-link path: peers discovered through Reticulum announces.

    Whatever radio interfaces Reticulum has configured (RNode/LoRa, packet
    radio, BLE) carry the traffic. Opening fails when Reticulum cannot start,
    no interface is online, or no peer shows up within the discovery window.
    """

    name = "radio"

    def __init__(
        self,
        *,
        configdir: str | None = None,
        dest_name: str = "roomlink.direct",
        discovery_timeout_s: float = 5.0,
        max_frame_bytes: int = 64 * 1024,
    ) -> None:
        self.log = logging.getLogger("roomlink.radio")
        self.configdir = configdir
        self.dest_name = dest_name
        self.discovery_timeout_s = float(discovery_timeout_s)
        self.max_frame_bytes = int(max_frame_bytes)

        self._lock = threading.Lock()
        self._links: set[RNS.Link] = set()
        self._pending: set[bytes] = set()
        self._dialed: dict[RNS.Link, bytes] = {}
        self._peer_found = threading.Event()
        self._on_bytes: Callable[[bytes], None] | None = None
        self._handler: _PeerAnnounceHandler | None = None
        self._destination: RNS.Destination | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        with self._lock:
            return not self._closed and bool(self._links)

    def open(self, on_bytes: Callable[[bytes], None]) -> None:
        start_reticulum(self.configdir)

        online = [i for i in RNS.Transport.interfaces if getattr(i, "online", False)]
        if not online:
            raise TransportInitError("no Reticulum interface online")

        self._on_bytes = on_bytes
        self._closed = False
        app_name, aspects = split_dest_name(self.dest_name)
        identity = RNS.Identity()
        self._destination = RNS.Destination(
            identity, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )
        self._destination.set_link_established_callback(self._on_link_up)

        self._handler = _PeerAnnounceHandler(self.dest_name, self._on_peer_announce)
        RNS.Transport.register_announce_handler(self._handler)
        self._destination.announce()

        self.log.info(
            "Radio discovery started dest=%s interfaces=%s",
            fmt_hash(self._destination.hash),
            len(online),
        )
        if not self._peer_found.wait(self.discovery_timeout_s):
            self.close()
            raise TransportInitError(
                f"no peers discovered within {self.discovery_timeout_s:g}s"
            )

    def send(self, data: bytes) -> None:
        with self._lock:
            links = list(self._links)
        if not links:
            raise NoActiveLinkError("no radio peers connected")
        for link in links:
            try:
                send_frame(link, data)
            except Exception as e:
                self.log.warning(
                    "Radio send failed connection=%s err=%s",
                    link_connection_id(link),
                    e,
                )

    def close(self) -> None:
        with self._lock:
            self._closed = True
            links = list(self._links)
            self._links.clear()
            self._pending.clear()
            self._dialed.clear()
        self._peer_found.clear()

        if self._handler is not None:
            try:
                RNS.Transport.deregister_announce_handler(self._handler)
            except Exception:
                self.log.debug("Announce handler deregistration failed", exc_info=True)
            self._handler = None

        for link in links:
            try:
                link.teardown()
            except Exception:
                pass

    def _on_peer_announce(self, destination_hash: bytes, announced_identity) -> None:
        own = self._destination
        if own is None or self._closed or destination_hash == own.hash:
            return
        # Both sides announce; only the lower hash dials, so a pair of peers
        # ends up with one link instead of two.
        if own.hash > destination_hash:
            return
        with self._lock:
            if destination_hash in self._pending:
                return
            self._pending.add(destination_hash)

        app_name, aspects = split_dest_name(self.dest_name)
        destination = RNS.Destination(
            announced_identity,
            RNS.Destination.OUT,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        link = RNS.Link(
            destination,
            established_callback=self._on_link_up,
            closed_callback=self._on_link_down,
        )
        with self._lock:
            self._dialed[link] = destination_hash
        self.log.debug("Dialing peer dest=%s", fmt_hash(destination_hash))

    def _on_link_up(self, link: RNS.Link) -> None:
        with self._lock:
            if self._closed:
                closed = True
            else:
                closed = False
                self._links.add(link)
        if closed:
            link.teardown()
            return

        link.set_packet_callback(lambda data, pkt: self._deliver(data))
        link.set_link_closed_callback(self._on_link_down)
        accept_frame_resources(link, self._deliver, max_bytes=self.max_frame_bytes)
        self._peer_found.set()
        self.log.info("Radio peer connected connection=%s", link_connection_id(link))

    def _on_link_down(self, link: RNS.Link) -> None:
        with self._lock:
            self._links.discard(link)
            destination_hash = self._dialed.pop(link, None)
            if destination_hash is not None:
                self._pending.discard(destination_hash)
        self.log.info("Radio peer disconnected connection=%s", link_connection_id(link))

    def _deliver(self, data: bytes) -> None:
        if self._on_bytes is not None and not self._closed:
            self._on_bytes(bytes(data))
