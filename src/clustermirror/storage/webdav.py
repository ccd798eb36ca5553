"""
WebDAV content store.

Objects are written with PUT under ``<endpoint><path>/<xx>/<hash>`` and
served by redirecting clients to that URL. Listing uses PROPFIND with
Depth: 1 and walks the tree recursively.

Any request answered with 423 Locked is retried after a fixed cooldown,
five attempts in total, before the failure propagates.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Callable, Iterator, Optional
from urllib.parse import quote, unquote, urlparse

import requests

from ..errors import StorageError, StorageLockedError
from ..models import RedirectTo, StoredObject, WebDAVConfig
from .base import ContentStore, is_object_key, object_key, shard, validate_hash

logger = logging.getLogger("clustermirror.storage.webdav")

LOCKED = 423
MAX_LOCK_ATTEMPTS = 5
SPOOL_MAX_BYTES = 8 * 1024 * 1024
DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    "</d:prop></d:propfind>"
)


def _parse_http_date(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        return int(parsedate_to_datetime(value).timestamp())
    except (TypeError, ValueError):
        return 0


class WebDAVStore(ContentStore):
    """Content store on a WebDAV share.

    Args:
        config: Endpoint, credentials, root path and lock cooldown.
        session: HTTP session, injectable for tests.
        sleep: Pause used for the lock cooldown, injectable for tests.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: WebDAVConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 30.0,
    ):
        if not config.endpoint:
            raise StorageError("storage.webdav.endpoint is not set")
        self.endpoint = config.endpoint.rstrip("/")
        self.root = "/" + config.path.strip("/") if config.path.strip("/") else ""
        self.cooldown = config.lock_cooldown_seconds
        self.timeout = timeout
        self._sleep = sleep

        self.session = session or requests.Session()
        if config.username:
            self.session.auth = (config.username, config.password)

    @property
    def name(self) -> str:
        return "webdav"

    # -- request plumbing ---------------------------------------------------

    def _remote(self, rel: str = "") -> str:
        rel = rel.strip("/")
        return f"{self.root}/{rel}" if rel else (self.root or "/")

    def _url(self, remote: str) -> str:
        return self.endpoint + quote(remote)

    def _send(self, method: str, remote: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(
                method, self._url(remote), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise StorageError(f"WebDAV {method} {remote} failed: {exc}") from exc
        if resp.status_code == LOCKED:
            raise StorageLockedError(f"WebDAV {method} {remote}: 423 Locked")
        return resp

    def _request(self, method: str, remote: str, **kwargs) -> requests.Response:
        """Send a request, waiting out 423 Locked responses."""
        body = kwargs.get("data")
        start = body.tell() if hasattr(body, "seek") else None
        for attempt in range(1, MAX_LOCK_ATTEMPTS + 1):
            if start is not None:
                body.seek(start)
            try:
                return self._send(method, remote, **kwargs)
            except StorageLockedError:
                if attempt == MAX_LOCK_ATTEMPTS:
                    raise
                logger.info(
                    "%s locked, retrying in %ss (%d/%d)",
                    remote, self.cooldown, attempt, MAX_LOCK_ATTEMPTS - 1,
                )
                self._sleep(self.cooldown)
        raise StorageLockedError(remote)

    def _mkcol(self, remote: str) -> None:
        resp = self._request("MKCOL", remote)
        # 405: collection already exists
        if resp.status_code not in (200, 201, 204, 405):
            raise StorageError(f"MKCOL {remote} returned {resp.status_code}")

    def _makedirs(self, remote: str) -> None:
        current = ""
        for part in [p for p in remote.split("/") if p]:
            current += "/" + part
            self._mkcol(current)

    def _upload(self, remote: str, data) -> None:
        resp = self._request("PUT", remote, data=data)
        if resp.status_code not in (200, 201, 204):
            raise StorageError(f"PUT {remote} returned {resp.status_code}")

    def _propfind(self, remote: str, depth: str = "1") -> list[dict]:
        resp = self._request(
            "PROPFIND",
            remote,
            data=PROPFIND_BODY,
            headers={"Depth": depth, "Content-Type": "application/xml"},
        )
        if resp.status_code != 207:
            raise StorageError(f"PROPFIND {remote} returned {resp.status_code}")
        try:
            tree = ET.fromstring(resp.content)
        except ET.ParseError as exc:
            raise StorageError(f"PROPFIND {remote} returned invalid XML: {exc}") from exc

        own_path = unquote(urlparse(self._url(remote)).path).rstrip("/")
        entries = []
        for response in tree.iter(f"{DAV_NS}response"):
            href = response.findtext(f"{DAV_NS}href") or ""
            path = unquote(urlparse(href).path).rstrip("/")
            if path == own_path:
                continue
            size = response.findtext(f".//{DAV_NS}getcontentlength")
            entries.append({
                "name": path.rsplit("/", 1)[-1],
                "is_dir": response.find(
                    f".//{DAV_NS}resourcetype/{DAV_NS}collection"
                ) is not None,
                "size": int(size) if size and size.isdigit() else 0,
                "mtime": _parse_http_date(
                    response.findtext(f".//{DAV_NS}getlastmodified")
                ),
            })
        return entries

    def _walk(self, rel: str = "") -> Iterator[tuple[str, dict]]:
        try:
            entries = self._propfind(self._remote(rel))
        except StorageError as exc:
            if not rel:
                raise
            logger.warning("Skipping unreadable directory %s: %s", rel, exc)
            return
        for entry in entries:
            child = f"{rel}/{entry['name']}" if rel else entry["name"]
            if entry["is_dir"]:
                yield from self._walk(child)
            else:
                yield child, entry

    # -- ContentStore -------------------------------------------------------

    def init(self) -> None:
        if self.root:
            self._makedirs(self.root)
        if not self.check():
            raise StorageError(f"WebDAV root {self._url(self._remote())} is not reachable")

    def check(self) -> bool:
        try:
            self._propfind(self._remote(), depth="0")
        except StorageError as exc:
            logger.warning("WebDAV check failed: %s", exc)
            return False
        return True

    def get(self, content_hash: str) -> RedirectTo:
        return RedirectTo(url=self._url(self._remote(object_key(content_hash))))

    def put(self, content_hash: str, data: BinaryIO) -> None:
        self._mkcol(self._remote(shard(validate_hash(content_hash))))
        seekable = getattr(data, "seekable", None)
        if seekable is not None and seekable():
            self._upload(self._remote(object_key(content_hash)), data)
            return
        # lock retries resend the body, so it must be rewindable
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as spool:
            shutil.copyfileobj(data, spool)
            spool.seek(0)
            self._upload(self._remote(object_key(content_hash)), spool)

    def delete(self, content_hash: str) -> None:
        remote = self._remote(object_key(content_hash))
        resp = self._request("DELETE", remote)
        if resp.status_code not in (200, 204, 404):
            raise StorageError(f"DELETE {remote} returned {resp.status_code}")

    def exists(self, content_hash: str) -> bool:
        remote = self._remote(object_key(content_hash))
        resp = self._request("HEAD", remote)
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            raise StorageError(f"HEAD {remote} returned {resp.status_code}")
        return True

    def write_file(self, path: str, content: bytes) -> None:
        remote = self._remote(path)
        parent = remote.rsplit("/", 1)[0]
        if parent:
            self._makedirs(parent)
        self._upload(remote, content)

    def list_files(self) -> list[StoredObject]:
        objects = []
        for rel, entry in self._walk():
            parts = rel.split("/")
            if len(parts) != 2 or not is_object_key(parts[0], parts[1]):
                continue
            objects.append(StoredObject(
                hash=parts[1],
                size=entry["size"],
                mtime=entry["mtime"],
                path=self._remote(rel),
            ))
        return objects
