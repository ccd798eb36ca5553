"""
Content store interface.

Objects are addressed by hash and laid out as ``<root>/<hash[:2]>/<hash>``.
There is no index: membership, listing and last-modified time all come
from enumerating the store. compute_missing() and garbage_collect() are
built on list_files() here, so a backend can replace enumeration with an
index later without changing either contract.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterable

from ..errors import StorageError, ValidationError
from ..models import ContentEntry, Retrieval, StoredObject

logger = logging.getLogger("clustermirror.storage")

SHARD_WIDTH = 2
_HASH_RE = re.compile(r"^[0-9A-Fa-f]{2,}$")


def validate_hash(content_hash: str) -> str:
    """Reject hashes that cannot be mapped onto the shard layout.

    Raises:
        ValidationError: If the hash is empty, too short or contains
            anything other than hex digits.
    """
    if not content_hash or not _HASH_RE.match(content_hash):
        raise ValidationError(f"Malformed hash: {content_hash!r}")
    return content_hash


def shard(content_hash: str) -> str:
    """Shard directory name for a hash."""
    return content_hash[:SHARD_WIDTH]


def object_key(content_hash: str) -> str:
    """Relative location of an object, ``xx/<hash>``."""
    validate_hash(content_hash)
    return f"{shard(content_hash)}/{content_hash}"


def is_object_key(shard_name: str, name: str) -> bool:
    """True if ``shard_name/name`` follows the object layout."""
    return (
        len(shard_name) == SHARD_WIDTH
        and name.startswith(shard_name)
        and not name.startswith(".")
    )


class ContentStore(ABC):
    """Abstract content-addressable store."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def init(self) -> None:
        """Prepare the backend (create root, connect, log in)."""

    @abstractmethod
    def check(self) -> bool:
        """Return True if the backend is currently usable."""

    @abstractmethod
    def get(self, content_hash: str) -> Retrieval:
        """Locate an object for serving.

        Returns:
            InlineStream for backends that serve bytes, RedirectTo for
            backends whose objects are fetched from another URL.

        Raises:
            ObjectNotFoundError: If the backend knows the object is absent.
        """

    @abstractmethod
    def put(self, content_hash: str, data: BinaryIO) -> None:
        """Store an object, overwriting any existing copy."""

    @abstractmethod
    def delete(self, content_hash: str) -> None:
        """Remove an object."""

    @abstractmethod
    def exists(self, content_hash: str) -> bool:
        """Return True if the object is stored."""

    @abstractmethod
    def write_file(self, path: str, content: bytes) -> None:
        """Write an auxiliary file at a path relative to the store root."""

    @abstractmethod
    def list_files(self) -> list[StoredObject]:
        """Enumerate every stored object."""

    def compute_missing(
        self, candidates: Iterable[ContentEntry]
    ) -> list[ContentEntry]:
        """Return the candidates whose hash is not stored.

        Candidate order is preserved and each hash is reported once.
        """
        present = {obj.hash for obj in self.list_files()}
        missing: list[ContentEntry] = []
        seen: set[str] = set()
        for entry in candidates:
            if entry.hash in present or entry.hash in seen:
                continue
            seen.add(entry.hash)
            missing.append(entry)
        return missing

    def garbage_collect(self, retain: Iterable[str]) -> int:
        """Delete every stored object whose hash is not in ``retain``.

        Best effort: a failed delete is logged and the sweep continues.

        Returns:
            Number of objects deleted.
        """
        keep = set(retain)
        deleted = 0
        for obj in self.list_files():
            if obj.hash in keep:
                continue
            try:
                self.delete(obj.hash)
            except (StorageError, OSError) as exc:
                logger.warning("GC could not delete %s: %s", obj.hash, exc)
                continue
            deleted += 1
        logger.info("%s GC finished, %d object(s) deleted", self.name, deleted)
        return deleted

    def last_modified(self) -> int:
        """Newest modification time across stored objects, 0 if empty."""
        return max((obj.mtime for obj in self.list_files()), default=0)
