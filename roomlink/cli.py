from __future__ import annotations

import argparse
import os
import sys
import threading
from dataclasses import replace
from pathlib import Path

import RNS

from .config import (
    ClientRuntimeConfig,
    HubRuntimeConfig,
    apply_config_data,
    apply_env,
    load_toml,
)
from .coordinator import Coordinator
from .events import (
    ChatEvent,
    Connected,
    Disconnected,
    ErrorEvent,
    MemberJoined,
    MemberLeft,
    MessageReceived,
    RoomHistory,
    RoomMembers,
    UserStoppedTyping,
    UserTyping,
)
from .hub import RelayHub
from .logging_config import configure_client_logging, configure_hub_logging
from .models import User
from .paths import (
    default_client_config_path,
    default_config_path,
    default_identity_path,
    default_store_path,
    ensure_private_dir,
)
from .store import LocalStore
from .util import generate_room_code


def _write_default_config(config_path: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# roomlinkd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start roomlinkd again.
#
# Environment overrides: ROOMLINK_CORS_ORIGIN, ROOMLINK_HEALTH_PORT,
# ROOMLINK_LOG_LEVEL.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where roomlinkd stores its persistent identity (Reticulum Identity file).
# Clients connect to the destination hash derived from it.
identity_path = {identity_path!r}

# Destination name to host the relay on.
dest_name = "roomlink.relay"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "roomlink"

# Display name and room code policy.
nick_max_chars = 32
max_room_code_len = 32

# Limits.
# Room history is kept in memory only and dropped when a room empties.
max_history_per_room = 1000
max_message_chars = 2000
max_frame_bytes = {64 * 1024}
rate_limit_msgs_per_minute = 240

# Liveness endpoint (GET /health, GET /stats). Set health_port = 0 to disable.
health_host = "127.0.0.1"
health_port = 5001
cors_origin = "http://localhost:3000"

[logging]

# Log level for roomlinkd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roomlinkd", description="Run a roomlink relay hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: roomlink.relay)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Liveness endpoint port (0 disables)",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link frame rate limit",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default roomlinkd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run roomlinkd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        config_path=config_path, configdir=args.configdir, identity_path=identity_path
    )
    cfg = apply_config_data(cfg, load_toml(config_path), section="hub")
    try:
        cfg = apply_env(cfg)
    except ValueError as e:
        raise SystemExit(str(e)) from e

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir or None)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.health_port is not None:
        cfg = replace(cfg, health_port=int(args.health_port))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    configure_hub_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    hub = RelayHub(cfg)
    hub.start()
    hub.run_forever()


class TerminalView:
    """Renders coordinator events as lines on a text stream."""

    def __init__(self, out=None) -> None:
        self.out = out or sys.stdout
        self._lock = threading.Lock()

    def _line(self, text: str) -> None:
        with self._lock:
            print(text, file=self.out, flush=True)

    def _message(self, item: MessageReceived) -> str:
        m = item.message
        who = "me" if item.is_mine else m.sender
        mark = "" if item.delivered else " (not delivered)"
        return f"[{m.timestamp[11:19]}] <{who}> {m.text}{mark}"

    def __call__(self, event: ChatEvent) -> None:
        if isinstance(event, MessageReceived):
            self._line(self._message(event))
        elif isinstance(event, RoomHistory):
            for item in event.messages:
                self._line(self._message(item))
        elif isinstance(event, RoomMembers):
            names = ", ".join(m.name for m in event.members)
            self._line(f"* in room: {names}")
        elif isinstance(event, Connected):
            self._line(f"* connected ({event.mode.value} via {event.path})")
        elif isinstance(event, Disconnected):
            self._line(f"* disconnected ({event.reason})")
        elif isinstance(event, MemberJoined):
            self._line(f"* {event.name} joined")
        elif isinstance(event, MemberLeft):
            self._line(f"* {event.name} left")
        elif isinstance(event, UserTyping):
            self._line(f"* {event.name} is typing")
        elif isinstance(event, UserStoppedTyping):
            pass
        elif isinstance(event, ErrorEvent):
            self._line(f"! {event.kind}: {event.detail}")


def _build_client_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roomlink", description="Chat in a roomlink room")

    p.add_argument(
        "--config",
        default=str(default_client_config_path()),
        help="Path to a TOML client config file (optional)",
    )
    p.add_argument("--name", default=None, help="Display name")
    p.add_argument(
        "--room", default=None, help="Room code (a new one is generated if omitted)"
    )
    p.add_argument(
        "--mode",
        choices=("relay", "direct"),
        default="relay",
        help="Connect through a relay hub or directly to nearby peers",
    )
    p.add_argument("--relay", default=None, help="Relay destination hash (hex)")
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--store",
        default=None,
        help="Local store path (default: ~/.roomlink/store.toml)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR).",
    )
    return p


def client_main(argv: list[str] | None = None) -> None:
    args = _build_client_arg_parser().parse_args(
        sys.argv[1:] if argv is None else argv
    )

    cfg = ClientRuntimeConfig(config_path=str(args.config))
    if os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(args.config), section="client")
    try:
        cfg = apply_env(cfg)
    except ValueError as e:
        raise SystemExit(str(e)) from e

    if args.relay is not None:
        cfg = replace(cfg, relay_destination=args.relay)
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir or None)
    if args.store is not None:
        cfg = replace(cfg, store_path=args.store)
    if cfg.store_path is None:
        cfg = replace(cfg, store_path=str(default_store_path()))

    configure_client_logging(cfg, override_level=args.log_level)

    store = LocalStore(cfg.store_path, max_messages=cfg.max_stored_messages)
    coordinator = Coordinator(store, config=cfg)
    coordinator.subscribe(TerminalView())

    saved = store.get_user()
    name = args.name or (saved.name if saved else None)
    if not name:
        raise SystemExit("roomlink: --name is required on first use")
    room = args.room or (saved.room_code if saved else None) or generate_room_code()

    print(f"Joining room {room.upper()} as {name}. /quit to exit.", file=sys.stderr)
    coordinator.connect(args.mode)
    coordinator.join_room(User(name, room))

    try:
        for line in sys.stdin:
            text = line.rstrip("\n")
            if text in ("/quit", "/exit"):
                break
            if text == "/leave":
                coordinator.leave_room()
                break
            coordinator.send(text)
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.disconnect()


if __name__ == "__main__":
    main()
