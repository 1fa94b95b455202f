from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from . import __version__
from .codec import encode
from .config import HubRuntimeConfig
from .health import HealthServer, create_health_app
from .reticulum import accept_frame_resources
from .rooms import RoomRegistry
from .router import FrameRouter, Outgoing
from .session import SessionManager, link_connection_id
from .util import expand_path


class RelayHub:
    """Relay server: accepts Reticulum links and fans room traffic out."""

    def __init__(
        self, config: HubRuntimeConfig, *, registry: RoomRegistry | None = None
    ) -> None:
        self.config = config
        self.log = logging.getLogger("roomlink.hub")

        # Registry and sessions are touched from Reticulum callbacks and worker
        # threads. Guard them with a single re-entrant lock; every membership
        # change and the frames it triggers are computed under it.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.registry = registry or RoomRegistry(
            max_history=config.max_history_per_room,
            max_message_chars=config.max_message_chars,
            nick_max_chars=config.nick_max_chars,
            max_room_code_len=config.max_room_code_len,
        )
        self.session_manager = SessionManager(self)
        self.router = FrameRouter(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._health: HealthServer | None = None
        self._started_wall_time: float | None = None

    def _fmt_link_id(self, link: RNS.Link) -> str:
        return link_connection_id(link)

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        if self._started_wall_time is None:
            self._started_wall_time = time.time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="roomlink-announce",
                daemon=True,
            )
            self._announce_thread.start()

        if self.config.health_port and int(self.config.health_port) > 0:
            self._start_health()

        self.log.info(
            "Relay running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy nick_max_chars=%s max_room_code_len=%s max_history=%s rate_limit_msgs_per_minute=%s",
            self.config.nick_max_chars,
            self.config.max_room_code_len,
            self.config.max_history_per_room,
            self.config.rate_limit_msgs_per_minute,
        )

    def _start_health(self) -> None:
        app = create_health_app(cors_origin=self.config.cors_origin, stats=self.stats)
        try:
            self._health = HealthServer(
                app, self.config.health_host, int(self.config.health_port)
            )
        except OSError as e:
            self.log.error(
                "Health endpoint unavailable host=%s port=%s err=%s",
                self.config.health_host,
                self.config.health_port,
                e,
            )
            return
        self._health.start()

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode(
                    {"proto": "roomlink", "v": __version__, "hub": self.config.hub_name}
                )
            )
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        self._shutdown.set()

        with self._state_lock:
            links = self.session_manager.clear_all()
            self.registry.clear()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug(
                    "Link teardown failed connection=%s",
                    self._fmt_link_id(link),
                    exc_info=True,
                )

        if self._health is not None:
            self._health.stop()
            self._health = None

    def stats(self) -> dict:
        with self._state_lock:
            out = {
                "version": __version__,
                "hub": self.config.hub_name,
                "sessions": self.session_manager.get_stats(),
                "rooms": self.registry.stats(),
            }
        if self._started_wall_time is not None:
            out["uptime_s"] = round(time.time() - self._started_wall_time, 1)
        return out

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            cid = self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        accept_frame_resources(
            link,
            lambda payload: self._on_packet(link, payload),
            max_bytes=self.config.max_frame_bytes,
        )

        self.log.info("Link established connection=%s", cid)

    def _on_close(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            cid = self.session_manager.on_link_closed(link)
            if cid is not None:
                self.router.handle_link_closed(cid, outgoing)

        self._flush(outgoing)

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Packet callbacks can occur concurrently with other link callbacks.
        # Keep state mutations under the shared lock, but avoid holding the
        # lock while sending packets via RNS.
        outgoing: Outgoing = []
        with self._state_lock:
            self.router.route_packet(link, data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d response(s) connection=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )

        self._flush(outgoing)

    def _flush(self, outgoing: Outgoing) -> None:
        for out_link, payload in outgoing:
            self._send_payload(out_link, payload)

    def _packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def _send_payload(self, link: RNS.Link, payload: bytes) -> None:
        # Room history and long messages outgrow a single packet; those go
        # out as a Resource, which the client reassembles into one frame.
        try:
            if self._packet_would_fit(link, payload):
                RNS.Packet(link, payload).send()
            else:
                RNS.Resource(payload, link, advertise=True, auto_compress=False)
                self.log.debug(
                    "Sent frame as resource connection=%s bytes=%s",
                    self._fmt_link_id(link),
                    len(payload),
                )
        except OSError as e:
            self.log.warning(
                "Send failed connection=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed connection=%s bytes=%s",
                self._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
