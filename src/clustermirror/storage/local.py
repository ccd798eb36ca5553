"""Local filesystem content store."""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from ..errors import ObjectNotFoundError, StorageError
from ..models import InlineStream, StoredObject
from .base import ContentStore, is_object_key, object_key, validate_hash

logger = logging.getLogger("clustermirror.storage.local")

PROBE_FILE = ".check"


class LocalStore(ContentStore):
    """Objects stored as plain files under ``root``.

    Writes land in a hidden temporary file in the shard directory and
    are renamed into place, so an interrupted download never looks like
    a stored object.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def _path(self, content_hash: str) -> Path:
        return self.root / object_key(content_hash)

    def init(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create store root {self.root}: {exc}") from exc

    def check(self) -> bool:
        if not self.root.is_dir():
            return False
        probe = self.root / PROBE_FILE
        try:
            probe.write_bytes(b"test")
            probe.unlink()
        except OSError as exc:
            logger.warning("Store root %s is not writable: %s", self.root, exc)
            return False
        return True

    def get(self, content_hash: str) -> InlineStream:
        path = self._path(content_hash)
        try:
            stream = path.open("rb")
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(content_hash) from exc
        except OSError as exc:
            raise StorageError(f"Cannot open {path}: {exc}") from exc
        return InlineStream(stream=stream, size=os.fstat(stream.fileno()).st_size)

    def put(self, content_hash: str, data: BinaryIO) -> None:
        path = self._path(content_hash)
        tmp = path.parent / f".{content_hash}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as fh:
                shutil.copyfileobj(data, fh)
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(f"Cannot write {path}: {exc}") from exc
        finally:
            tmp.unlink(missing_ok=True)

    def delete(self, content_hash: str) -> None:
        path = self._path(content_hash)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(content_hash) from exc
        except OSError as exc:
            raise StorageError(f"Cannot delete {path}: {exc}") from exc

    def exists(self, content_hash: str) -> bool:
        validate_hash(content_hash)
        return self._path(content_hash).is_file()

    def write_file(self, path: str, content: bytes) -> None:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Refusing to write outside the store: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Cannot write {target}: {exc}") from exc

    def list_files(self) -> list[StoredObject]:
        if not self.root.is_dir():
            return []

        objects = []
        for shard_dir in self.root.iterdir():
            if not shard_dir.is_dir():
                continue
            for entry in shard_dir.iterdir():
                if not is_object_key(shard_dir.name, entry.name):
                    continue
                try:
                    st = entry.stat()
                except OSError:
                    continue
                if not entry.is_file():
                    continue
                objects.append(StoredObject(
                    hash=entry.name,
                    size=st.st_size,
                    mtime=int(st.st_mtime),
                    path=str(entry),
                ))
        return objects
