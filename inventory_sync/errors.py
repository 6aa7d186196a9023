"""Exception types raised by the sync core."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by :mod:`inventory_sync`."""


class SessionStoreError(SyncError):
    """The remote session store rejected or failed an operation."""


class NetworkUnavailable(SessionStoreError):
    """The remote store could not be reached."""


class PermissionDenied(SessionStoreError):
    """The remote store refused the operation."""


class DocumentNotFound(SessionStoreError):
    """An update targeted a session document that does not exist."""


class CorruptSnapshot(SyncError):
    """A remote snapshot carried a ``json`` payload that could not be parsed."""


class SyncFailed(SyncError):
    """A push to the remote store did not confirm."""


class ReadOnlyError(SyncError):
    """A mutation was attempted while connected to a session as read-only."""

    def __init__(self, message: str = "Read Only Mode") -> None:
        super().__init__(message)


__all__ = [
    "SyncError",
    "SessionStoreError",
    "NetworkUnavailable",
    "PermissionDenied",
    "DocumentNotFound",
    "CorruptSnapshot",
    "SyncFailed",
    "ReadOnlyError",
]
