from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

if TYPE_CHECKING:
    from .hub import RelayHub


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


def link_connection_id(link: RNS.Link) -> str:
    """Connection id for a link: the link id as hex, shared by both ends."""
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return f"link-{id(link):x}"


class SessionManager:
    """
    Manages connection lifecycle for relay hub links.

    This class is responsible for:
    - Assigning each link its connection id
    - Mapping connection ids back to links for fan-out
    - Rate limiting with token bucket algorithm
    - Session cleanup and teardown
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomlink.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}
        self._index_by_id: dict[str, RNS.Link] = {}

    def on_link_established(self, link: RNS.Link) -> str:
        """
        Create session state for a new link and return its connection id.

        Must be called with state lock held.
        """
        cid = link_connection_id(link)
        self.sessions[link] = {
            "connection_id": cid,
            "opened": time.time(),
        }
        self._index_by_id[cid] = link

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.info("Session created connection=%s", cid)
        return cid

    def on_link_closed(self, link: RNS.Link) -> str | None:
        """
        Drop session state for a closed link; returns its connection id.

        Must be called with state lock held.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if not sess:
            return None

        cid = sess["connection_id"]
        if self._index_by_id.get(cid) is link:
            self._index_by_id.pop(cid, None)
        return cid

    def connection_id(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        return sess["connection_id"] if sess else None

    def link_for(self, connection_id: str) -> RNS.Link | None:
        return self._index_by_id.get(connection_id)

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.

        Must be called with state lock held.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self) -> list[RNS.Link]:
        """
        Clear all sessions and return list of links for teardown.

        Must be called with state lock held.
        """
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self._index_by_id.clear()
        return links

    def get_stats(self) -> dict[str, Any]:
        return {
            "total": len(self.sessions),
            "indexed_by_id": len(self._index_by_id),
        }
