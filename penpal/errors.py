"""Exception hierarchy shared by the sync layer."""

from __future__ import annotations


class PenpalError(RuntimeError):
    """Base class for errors raised by the sync layer."""


class LocalStoreError(PenpalError):
    """Raised when the embedded cache cannot be read or written."""


class SessionRequiredError(PenpalError):
    """Raised when a user-bound operation runs without an authenticated user."""


class MeetingStateError(PenpalError):
    """Raised when a meeting is not in a state that allows the requested change."""


class RemoteError(PenpalError):
    """Base class for remote document store failures."""

    transient: bool = False


class RemoteUnavailable(RemoteError):
    """Network unreachable, timeout or exhausted transaction retries."""

    transient = True


class RemoteUnknown(RemoteError):
    """Unclassified remote failure."""

    transient = True


class RemotePermissionDenied(RemoteError):
    """The authenticated user may not access the requested documents."""


class RemoteNotFound(RemoteError):
    """A required document (usually a parent) does not exist."""


def is_transient(exc: BaseException) -> bool:
    """Return True when retrying later or serving from cache makes sense."""

    return isinstance(exc, RemoteError) and exc.transient


__all__ = [
    "PenpalError",
    "LocalStoreError",
    "SessionRequiredError",
    "MeetingStateError",
    "RemoteError",
    "RemoteUnavailable",
    "RemoteUnknown",
    "RemotePermissionDenied",
    "RemoteNotFound",
    "is_transient",
]
