"""Error taxonomy for the live notification core.

Only ``AuthRejected`` and ``NotConnected`` are meant to reach UI code.
Everything else is recovered inside the transport, router or counters.
"""

from __future__ import annotations


class AutocareError(Exception):
    """Base class for all autocare client errors."""


class RealtimeConnectionError(AutocareError):
    """The real-time socket could not be established or was lost."""


class StompProtocolError(RealtimeConnectionError):
    """The peer sent bytes that are not a valid STOMP frame."""


class AuthRejected(AutocareError):
    """The server refused the credential (HTTP 401/403 or STOMP ERROR on CONNECT)."""

    def __init__(self, message: str = "Credential rejected", status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FrameParseError(AutocareError):
    """An inbound frame body could not be turned into an event."""

    def __init__(self, destination: str, reason: str) -> None:
        super().__init__(f"Unparseable frame on {destination}: {reason}")
        self.destination = destination
        self.reason = reason


class NotConnected(AutocareError):
    """A publish or subscribe was attempted while the connection is not open."""


class CountFetchError(AutocareError):
    """An unread-count fetch or read-marker update failed transiently."""
