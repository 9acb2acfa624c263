"""Exception types raised inside the tracker."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for tracker errors."""


class ProtocolError(TrackerError):
    """An EventSub control message was malformed (e.g. welcome without a session id)."""


class TwitchAPIError(TrackerError):
    """A Helix call returned a non-success status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
