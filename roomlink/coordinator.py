from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Union

from .config import ClientRuntimeConfig
from .crypto import AesGcmCipher, derive_room_key
from .directlink import (
    DirectLinkTransport,
    LinkConnected,
    LinkError,
    LinkEvent,
    LinkMessage,
    LinkPeerJoined,
    LinkPeerLeft,
)
from .errors import NoActiveLinkError, TransportInitError
from .events import (
    ChatEvent,
    Connected,
    ConnectionMode,
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
from .models import Membership, Message, User
from .relay import (
    RelayConnected,
    RelayDisconnected,
    RelayError,
    RelayEvent,
    RelayHistory,
    RelayNewMessage,
    RelayRoomUsers,
    RelayTransport,
    RelayUserJoined,
    RelayUserLeft,
    RelayUserStoppedTyping,
    RelayUserTyping,
)
from .store import LocalStore
from .util import iso_now, new_id, normalize_nick, normalize_room_code

Transport = Union[RelayTransport, DirectLinkTransport]
Subscriber = Callable[[ChatEvent], None]


def _spawn_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="roomlink-connect", daemon=True).start()


class TypingTimer:
    """Single-slot inactivity countdown.

    Each ``touch`` replaces the pending timer, so at most one is outstanding.
    A timer that was replaced or cancelled never fires.
    """

    def __init__(
        self,
        timeout_s: float,
        on_expire: Callable[[], None],
        timer_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s)
        self._on_expire = on_expire
        self._factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._timer: Any = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def touch(self) -> bool:
        """Restart the countdown; True when none was running before."""
        with self._lock:
            previous = self._timer
            self._generation += 1
            generation = self._generation
            timer = self._factory(self.timeout_s, lambda: self._fire(generation))
            timer.daemon = True
            self._timer = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        return previous is None

    def cancel(self) -> bool:
        """Stop the countdown; True when one was running."""
        with self._lock:
            timer, self._timer = self._timer, None
            self._generation += 1
        if timer is None:
            return False
        timer.cancel()
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
            self._timer = None
        self._on_expire()


class Coordinator:
    """
    One command and event surface over the relay and direct-link transports.

    Responsibilities:
    - Own the active transport and swap it when the mode changes
    - Buffer a join until the transport is ready
    - Write messages to the local store (direct: on send; relay: on echo)
    - Decide message ownership (``is_mine``) for every transport
    - Drive the relay typing indicator from keypresses

    Every transport callback carries the session epoch it was created under;
    ``disconnect`` bumps the epoch, so callbacks arriving afterwards are
    dropped before they reach a subscriber. Public methods never raise
    transport errors; those are published as ``ErrorEvent``.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        config: ClientRuntimeConfig | None = None,
        relay_factory: Callable[[], RelayTransport] | None = None,
        direct_factory: Callable[[], DirectLinkTransport] | None = None,
        spawn: Callable[[Callable[[], None]], None] | None = None,
        timer_factory: Callable[..., Any] | None = None,
        peer_id: str | None = None,
    ) -> None:
        self.log = logging.getLogger("roomlink.coordinator")
        self.store = store
        self.config = config or ClientRuntimeConfig()
        self.peer_id = peer_id or new_id()

        self._relay_factory = relay_factory or self._default_relay
        self._direct_factory = direct_factory or self._default_direct
        self._spawn = spawn or _spawn_thread
        self._typing = TypingTimer(
            self.config.typing_timeout_s, self._on_typing_expired, timer_factory
        )

        # _emit_lock serializes delivery against epoch changes; it is always
        # taken before _lock and never while _lock is held.
        self._emit_lock = threading.RLock()
        self._lock = threading.RLock()

        self._subscribers: list[Subscriber] = []
        self._epoch = 0
        self._mode: ConnectionMode | None = None
        self._transport: Transport | None = None
        self._ready = False
        self._live = False
        self._connection_id: str | None = None
        self._user: User | None = None
        self._typing_users: dict[str, str] = {}
        self._roster: dict[str, Membership] = {}

    @property
    def mode(self) -> ConnectionMode | None:
        return self._mode

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    @property
    def user(self) -> User | None:
        return self._user

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._emit_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._emit_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # Commands

    def connect(self, mode: ConnectionMode | str) -> None:
        try:
            mode = ConnectionMode(mode)
        except ValueError:
            self._publish(None, ErrorEvent("invalid_mode", f"unknown mode {mode!r}"))
            return

        with self._emit_lock:
            with self._lock:
                if self._mode == mode and self._transport is not None and self._live:
                    return
                old = self._transport
                self._epoch += 1
                epoch = self._epoch
                self._reset_session_locked()
                self._mode = mode
                user = self._user

        self._typing.cancel()
        if old is not None:
            self._close_transport(old)

        try:
            transport = self._build_transport(epoch, mode)
        except Exception as e:
            self.log.exception("Failed to create %s transport", mode.value)
            with self._lock:
                if self._epoch == epoch:
                    self._mode = None
            self._publish(epoch, ErrorEvent("transport_init", str(e)))
            return

        with self._lock:
            if self._epoch != epoch:
                stale = True
            else:
                stale = False
                self._transport = transport
                self._live = True
        if stale:
            self._close_transport(transport)
            return

        if mode is ConnectionMode.RELAY and user is not None:
            # Buffered by the relay transport until the link is up.
            transport.join_room(user.name, user.room_code)

        self.log.info("Connecting mode=%s", mode.value)
        self._spawn(lambda: self._start_transport(epoch, mode, transport))

    def join_room(self, user: User) -> User | None:
        name = normalize_nick(user.name)
        if name is None:
            self._publish(None, ErrorEvent("invalid_user", "invalid display name"))
            return None
        try:
            room_code = normalize_room_code(user.room_code)
        except ValueError as e:
            self._publish(None, ErrorEvent("invalid_user", str(e)))
            return None

        user = User(name, room_code)
        self.store.save_user(user)

        with self._lock:
            if self._user is not None and self._user.room_code != room_code:
                self._typing_users.clear()
                self._roster.clear()
            self._user = user
            transport = self._transport
            mode = self._mode
            ready = self._ready
            epoch = self._epoch

        self._typing.cancel()
        if transport is None:
            self.log.debug("Join buffered until connect room=%s", room_code)
            return user

        if mode is ConnectionMode.RELAY:
            transport.join_room(name, room_code)
        elif ready:
            self._join_direct(epoch, transport, user)
        return user

    def resume(self) -> User | None:
        """Rejoin the room saved in the local store, if any."""
        user = self.store.get_user()
        if user is None:
            return None
        return self.join_room(user)

    def send(self, text: str) -> Message | None:
        """Send ``text`` to the current room.

        On the direct link the stamped message is returned. On the relay the
        hub stamps it, so ``None`` is returned and the message arrives as an
        echo.
        """
        if not isinstance(text, str) or not text.strip():
            return None

        with self._lock:
            user = self._user
            transport = self._transport
            mode = self._mode
            ready = self._ready
            epoch = self._epoch

        if user is None or transport is None:
            self._publish(epoch, ErrorEvent("not_joined", "join a room before sending"))
            return None

        self.stop_typing()

        if mode is ConnectionMode.RELAY:
            if not ready:
                self._publish(epoch, ErrorEvent("not_connected", "relay is not connected"))
                return None
            transport.send_message(text, user.room_code)
            return None

        limit = self.config.max_message_chars
        if limit and len(text) > limit:
            self._publish(epoch, ErrorEvent("invalid", f"message too long (max {limit} chars)"))
            return None

        message = Message(
            id=new_id(),
            text=text,
            sender=user.name,
            sender_id=self.peer_id,
            timestamp=iso_now(),
            room_code=user.room_code,
        )
        self.store.add_message(message)

        error: ErrorEvent | None = None
        try:
            transport.send_message(message)
        except NoActiveLinkError as e:
            error = ErrorEvent("no_active_link", str(e))
        self._publish(epoch, MessageReceived(message, is_mine=True, delivered=error is None))
        if error is not None:
            self._publish(epoch, error)
        return message

    def start_typing(self) -> None:
        """Keypress in the composer. Relay only."""
        with self._lock:
            transport = self._transport
            user = self._user
            active = self._mode is ConnectionMode.RELAY and self._ready
        if not active or user is None or transport is None:
            return
        if self._typing.touch():
            transport.typing_start(user.room_code)

    def stop_typing(self) -> None:
        if self._typing.cancel():
            self._send_typing_stop()

    def typing_users(self) -> list[str]:
        with self._lock:
            return sorted(self._typing_users.values())

    def leave_room(self) -> None:
        self._typing.cancel()
        with self._lock:
            user, self._user = self._user, None
            transport = self._transport
            self._typing_users.clear()
            self._roster.clear()
        self.store.clear_user()
        if user is None or transport is None:
            return
        try:
            transport.leave_room()
        except Exception:
            self.log.exception("Leave failed room=%s", user.room_code)

    def disconnect(self) -> None:
        self._typing.cancel()
        with self._emit_lock:
            with self._lock:
                self._epoch += 1
                transport, self._transport = self._transport, None
                self._reset_session_locked()
                self._mode = None
            subscribers, self._subscribers = self._subscribers, []

        if transport is None:
            return
        self._close_transport(transport)
        self.log.info("Disconnected")
        for callback in subscribers:
            self._call(callback, Disconnected("client"))

    # Transport plumbing

    def _default_relay(self) -> RelayTransport:
        cfg = self.config
        return RelayTransport(
            cfg.relay_destination,
            configdir=cfg.configdir,
            dest_name=cfg.relay_dest_name,
            path_timeout_s=cfg.path_timeout_s,
        )

    def _default_direct(self) -> DirectLinkTransport:
        from .lan import LanLink
        from .reticulum import RadioLink

        cfg = self.config
        return DirectLinkTransport(
            self.peer_id,
            primary=RadioLink(
                configdir=cfg.configdir,
                dest_name=cfg.direct_dest_name,
                discovery_timeout_s=cfg.discovery_timeout_s,
            ),
            fallback=LanLink(
                port=cfg.lan_port,
                bind_ip=cfg.lan_bind_ip,
                broadcast_ip=cfg.lan_broadcast_ip,
            ),
        )

    def _build_transport(self, epoch: int, mode: ConnectionMode) -> Transport:
        if mode is ConnectionMode.RELAY:
            relay = self._relay_factory()
            relay.subscribe(lambda event: self._on_relay_event(epoch, event))
            return relay
        direct = self._direct_factory()
        direct.subscribe(lambda event: self._on_link_event(epoch, event))
        return direct

    def _start_transport(self, epoch: int, mode: ConnectionMode, transport: Transport) -> None:
        try:
            if mode is ConnectionMode.RELAY:
                transport.connect()
                return
            try:
                transport.initialize()
            except TransportInitError as e:
                if not e.fallback_active:
                    # The transport already reported it as a LinkError.
                    self.log.warning("Direct link unavailable: %s", e)
                    self._mark_dead(epoch)
                    return
                self.log.info("Direct link running on fallback: %s", e)
            self._on_direct_ready(epoch, transport)
        except TransportInitError as e:
            self.log.warning("%s transport failed to start: %s", mode.value, e)
            self._mark_dead(epoch)
            self._publish(epoch, ErrorEvent("transport_init", str(e)))
        except Exception as e:
            self.log.exception("%s transport failed to start", mode.value)
            self._mark_dead(epoch)
            self._publish(epoch, ErrorEvent("transport_init", str(e)))

    def _mark_dead(self, epoch: int) -> None:
        # The transport stays installed so leave/disconnect still reach it;
        # the next connect() replaces it.
        with self._lock:
            if epoch == self._epoch:
                self._live = False

    def _close_transport(self, transport: Transport) -> None:
        try:
            transport.subscribe(None)
            transport.disconnect()
        except Exception:
            self.log.exception("Transport teardown failed")

    def _reset_session_locked(self) -> None:
        self._ready = False
        self._live = False
        self._connection_id = None
        self._typing_users.clear()
        self._roster.clear()

    def _on_direct_ready(self, epoch: int, transport: Transport) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
            user = self._user
        if user is not None:
            self._join_direct(epoch, transport, user)

    def _join_direct(self, epoch: int, transport: Transport, user: User) -> None:
        if self.config.encrypt_direct:
            key = derive_room_key(user.room_code)
            self.store.save_encryption_key(key)
            transport.set_cipher(AesGcmCipher(key))
        else:
            transport.set_cipher(None)

        me = Membership(self.peer_id, user.name, user.room_code, iso_now())
        with self._lock:
            if epoch != self._epoch:
                return
            self._roster = {self.peer_id: me}
            roster = self._roster_locked()

        history = [
            MessageReceived(m, is_mine=m.sender_id == self.peer_id)
            for m in self.store.get_messages(user.room_code)
        ]
        self._publish(epoch, RoomHistory(history))
        self._publish(epoch, RoomMembers(roster))

        try:
            transport.join_room(user.name, user.room_code)
        except NoActiveLinkError as e:
            self._publish(epoch, ErrorEvent("no_active_link", str(e)))

    def _roster_locked(self) -> list[Membership]:
        return sorted(self._roster.values(), key=lambda m: (m.joined_at, m.connection_id))

    def _send_typing_stop(self) -> None:
        with self._lock:
            transport = self._transport
            user = self._user
            relay = self._mode is ConnectionMode.RELAY
        if relay and user is not None and transport is not None:
            transport.typing_stop(user.room_code)

    def _on_typing_expired(self) -> None:
        self._send_typing_stop()

    def _on_relay_event(self, epoch: int, event: RelayEvent) -> None:
        with self._lock:
            if epoch != self._epoch:
                return

        if isinstance(event, RelayConnected):
            with self._lock:
                self._ready = True
                self._connection_id = event.connection_id
            self._publish(epoch, Connected(ConnectionMode.RELAY, "relay"))
        elif isinstance(event, RelayDisconnected):
            self._typing.cancel()
            with self._lock:
                self._reset_session_locked()
            self._publish(epoch, Disconnected(event.reason))
        elif isinstance(event, RelayHistory):
            received = []
            for message in event.messages:
                self.store.add_message(message)
                received.append(self._received(message))
            self._publish(epoch, RoomHistory(received))
        elif isinstance(event, RelayNewMessage):
            self.store.add_message(event.message)
            self._publish(epoch, self._received(event.message))
        elif isinstance(event, RelayRoomUsers):
            self._publish(epoch, RoomMembers(list(event.members)))
        elif isinstance(event, RelayUserJoined):
            self._publish(epoch, MemberJoined(event.user_name))
        elif isinstance(event, RelayUserLeft):
            with self._lock:
                was_typing = self._typing_users.pop(event.user_id, None) is not None
            if was_typing:
                self._publish(epoch, UserStoppedTyping(event.user_name))
            self._publish(epoch, MemberLeft(event.user_name))
        elif isinstance(event, RelayUserTyping):
            with self._lock:
                self._typing_users[event.user_id] = event.user_name
            self._publish(epoch, UserTyping(event.user_name))
        elif isinstance(event, RelayUserStoppedTyping):
            with self._lock:
                self._typing_users.pop(event.user_id, None)
            self._publish(epoch, UserStoppedTyping(event.user_name))
        elif isinstance(event, RelayError):
            self._publish(epoch, ErrorEvent(event.kind, event.detail))

    def _on_link_event(self, epoch: int, event: LinkEvent) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
            user = self._user
        room_code = user.room_code if user is not None else None

        if isinstance(event, LinkConnected):
            with self._lock:
                self._ready = True
                self._connection_id = self.peer_id
            self._publish(epoch, Connected(ConnectionMode.DIRECT, event.path))
        elif isinstance(event, LinkMessage):
            message = event.message
            if message.room_code != room_code:
                return
            # Several paths can carry the same frame; only new ids are shown.
            if self.store.add_message(message):
                self._publish(epoch, self._received(message))
        elif isinstance(event, LinkPeerJoined):
            if event.room_code != room_code:
                return
            with self._lock:
                known = event.peer_id in self._roster
                self._roster[event.peer_id] = Membership(
                    event.peer_id, event.name, event.room_code, event.timestamp
                )
                roster = self._roster_locked()
            if not known:
                self._publish(epoch, MemberJoined(event.name))
            self._publish(epoch, RoomMembers(roster))
        elif isinstance(event, LinkPeerLeft):
            if event.room_code != room_code:
                return
            with self._lock:
                gone = self._roster.pop(event.peer_id, None)
                roster = self._roster_locked()
            if gone is not None:
                self._publish(epoch, MemberLeft(gone.name))
                self._publish(epoch, RoomMembers(roster))
        elif isinstance(event, LinkError):
            self._publish(epoch, ErrorEvent(event.kind, event.detail))

    def _received(self, message: Message) -> MessageReceived:
        with self._lock:
            mine = self._connection_id
        return MessageReceived(message, is_mine=mine is not None and message.sender_id == mine)

    def _publish(self, epoch: int | None, event: ChatEvent) -> None:
        with self._emit_lock:
            if epoch is not None and epoch != self._epoch:
                self.log.debug("Dropping stale %s", type(event).__name__)
                return
            for callback in list(self._subscribers):
                self._call(callback, event)

    def _call(self, callback: Subscriber, event: ChatEvent) -> None:
        try:
            callback(event)
        except Exception:
            self.log.exception("Subscriber failed on %s", type(event).__name__)
