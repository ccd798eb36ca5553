"""
Content-addressable storage for mirrored objects.

Backends: local filesystem, WebDAV share, AList file API.
All share the ``<hash[:2]>/<hash>`` layout and the ContentStore contract.
"""

from __future__ import annotations

from ..models import StorageConfig, StorageType
from .alist import AListStore
from .base import ContentStore, object_key, shard, validate_hash
from .local import LocalStore
from .webdav import WebDAVStore


def create_store(config: StorageConfig, timeout: float = 30.0) -> ContentStore:
    """Factory function to create the configured backend.

    Args:
        config: Storage configuration.
        timeout: Request timeout for remote backends.

    Returns:
        Instantiated ContentStore.

    Raises:
        ValueError: If the storage type is not supported.
    """
    if config.type == StorageType.FILE:
        return LocalStore(config.path)
    if config.type == StorageType.WEBDAV:
        return WebDAVStore(config.webdav, timeout=timeout)
    if config.type == StorageType.ALIST:
        return AListStore(config.alist, timeout=timeout)
    raise ValueError(f"Unsupported storage type: {config.type}")


__all__ = [
    "AListStore",
    "ContentStore",
    "LocalStore",
    "WebDAVStore",
    "create_store",
    "object_key",
    "shard",
    "validate_hash",
]
