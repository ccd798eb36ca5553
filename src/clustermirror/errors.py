"""
Exception hierarchy for the mirror node.

Every failure the node raises on purpose derives from MirrorError so the
CLI and the node bootstrap can catch one type and report it.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all mirror node errors."""


class ConfigError(MirrorError):
    """Configuration is missing or invalid."""


class AuthError(MirrorError):
    """Challenge or token exchange with the authority failed."""


class TransportError(MirrorError):
    """Network failure or non-success HTTP status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class DecodeError(MirrorError):
    """The manifest payload could not be decompressed or decoded."""


class StorageError(MirrorError):
    """A content store backend operation failed."""


class ObjectNotFoundError(StorageError):
    """The requested hash is not present in the store."""


class StorageLockedError(StorageError):
    """The remote resource is locked (WebDAV 423)."""


class ValidationError(MirrorError):
    """An inbound request failed validation at the server boundary.

    ``status`` is the HTTP status the server answers with.
    """

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class SyncError(MirrorError):
    """A reconciliation pass failed after exhausting its retries."""
