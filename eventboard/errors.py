"""Exceptions shared across EventBoard."""

from __future__ import annotations


class EventBoardError(Exception):
    """Base class for EventBoard failures."""


class AuthenticationFailure(EventBoardError):
    """Raised when no viewer identity could be established."""


class WriteFailure(EventBoardError):
    """Raised when a create or delete against the document store fails."""


class MalformedEventTime(EventBoardError, ValueError):
    """Raised when an event's stored start time cannot be parsed."""

    def __init__(self, raw: object):
        super().__init__(f"Unparseable event time: {raw!r}")
        self.raw = raw


class InvalidPath(EventBoardError, ValueError):
    """Raised for document paths outside the known collection layout."""
