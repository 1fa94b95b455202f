"""Error taxonomy shared by the transports, the coordinator and the hub."""

from __future__ import annotations


class RoomlinkError(Exception):
    """Base class for roomlink errors."""


class TransportInitError(RoomlinkError):
    """A transport could not start (no hardware, permission, or reachability).

    ``fallback_active`` is set when the direct-link transport fell back to its
    secondary path; the error is then informational only.
    """

    def __init__(self, message: str, *, fallback_active: bool = False) -> None:
        super().__init__(message)
        self.fallback_active = fallback_active


class Unauthorized(RoomlinkError):
    """A connection acted on a room it has not joined."""


class NoActiveLinkError(RoomlinkError):
    """A direct-link send was attempted with no open channel."""


class MalformedFrameError(RoomlinkError):
    """Inbound data could not be decoded into a known frame."""
