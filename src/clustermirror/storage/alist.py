"""
AList content store.

Talks to an AList server through its file API. Every call carries the
token from ``POST /api/auth/login`` (or a preconfigured one) in the
Authorization header. AList answers HTTP 200 for most failures and puts
the real status in the ``code`` field of the JSON envelope.

Objects are served by redirecting clients to ``<endpoint>/d<path>``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, BinaryIO, Iterator, Optional
from urllib.parse import quote

import requests

from ..errors import ObjectNotFoundError, StorageError
from ..models import AListConfig, RedirectTo, StoredObject
from .base import ContentStore, is_object_key, object_key, shard, validate_hash

logger = logging.getLogger("clustermirror.storage.alist")

_NOT_FOUND_MARKERS = ("not found", "not exist")


def _looks_missing(message: str) -> bool:
    message = message.lower()
    return any(marker in message for marker in _NOT_FOUND_MARKERS)


def parse_modified(value: Any) -> int:
    """Convert AList's ``modified`` field to unix seconds.

    AList reports ISO 8601 strings; older builds and some drivers send
    numbers or numeric strings.
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(float(text))
        except ValueError:
            pass
        try:
            return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp())
        except ValueError:
            return 0
    return 0


class AListStore(ContentStore):
    """Content store backed by an AList server.

    Args:
        config: Endpoint, credentials, root path and optional token.
        session: HTTP session, injectable for tests.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: AListConfig,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.endpoint = config.endpoint.rstrip("/")
        root = "/" + config.path.strip("/")
        self.root = root.rstrip("/") or "/"
        self.username = config.username
        self._password = config.password
        self.token = config.token
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def name(self) -> str:
        return "alist"

    # -- API plumbing -------------------------------------------------------

    def _remote(self, rel: str = "") -> str:
        rel = rel.strip("/")
        if not rel:
            return self.root
        return f"{self.root.rstrip('/')}/{rel}"

    def _api(self, method: str, endpoint: str, **kwargs) -> Any:
        """Call the AList API and unwrap its JSON envelope.

        Raises:
            ObjectNotFoundError: If AList reports the path is missing.
            StorageError: On transport failure or any other error code.
        """
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = self.token
        try:
            resp = self.session.request(
                method,
                f"{self.endpoint}{endpoint}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise StorageError(f"AList {endpoint} failed: {exc}") from exc

        if resp.status_code != 200:
            raise StorageError(f"AList {endpoint} returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise StorageError(f"AList {endpoint} returned invalid JSON") from exc

        code = body.get("code")
        if code != 200:
            message = str(body.get("message", ""))
            if _looks_missing(message):
                raise ObjectNotFoundError(f"AList {endpoint}: {message}")
            raise StorageError(f"AList {endpoint} error {code}: {message}")
        return body.get("data")

    def login(self) -> str:
        """Exchange username and password for an API token.

        Raises:
            StorageError: If the login is rejected.
        """
        self.token = ""
        data = self._api(
            "POST",
            "/api/auth/login",
            json={"username": self.username, "password": self._password},
        )
        token = (data or {}).get("token")
        if not token:
            raise StorageError("AList login returned no token")
        self.token = token
        logger.info("Logged in to AList at %s as %s", self.endpoint, self.username)
        return token

    def _mkdir(self, remote: str) -> None:
        try:
            self._api("POST", "/api/fs/mkdir", json={"path": remote})
        except StorageError as exc:
            if "exist" in str(exc).lower() and not isinstance(exc, ObjectNotFoundError):
                return
            raise

    def _list(self, remote: str) -> list[dict]:
        data = self._api(
            "POST",
            "/api/fs/list",
            json={"path": remote, "page": 1, "per_page": 0, "refresh": False},
        )
        return (data or {}).get("content") or []

    def _upload(self, remote: str, data) -> None:
        self._api(
            "PUT",
            "/api/fs/put",
            headers={
                "File-Path": quote(remote),
                "Content-Type": "application/octet-stream",
            },
            data=data,
        )

    def _walk(self, rel: str = "") -> Iterator[tuple[str, dict]]:
        try:
            entries = self._list(self._remote(rel))
        except StorageError as exc:
            if not rel:
                raise
            logger.warning("Skipping unreadable directory %s: %s", rel, exc)
            return
        for entry in entries:
            child = f"{rel}/{entry.get('name', '')}" if rel else entry.get("name", "")
            if entry.get("is_dir"):
                yield from self._walk(child)
            else:
                yield child, entry

    # -- ContentStore -------------------------------------------------------

    def init(self) -> None:
        if not self.token:
            try:
                self.login()
            except StorageError as exc:
                raise StorageError(f"AList login failed: {exc}") from exc
        self._mkdir(self.root)

    def check(self) -> bool:
        try:
            self._list(self.root)
        except StorageError as exc:
            logger.warning("AList check failed: %s", exc)
            return False
        return True

    def get(self, content_hash: str) -> RedirectTo:
        remote = self._remote(object_key(content_hash))
        return RedirectTo(url=f"{self.endpoint}/d{quote(remote)}")

    def put(self, content_hash: str, data: BinaryIO) -> None:
        self._mkdir(self._remote(shard(validate_hash(content_hash))))
        # AList needs a Content-Length, so the body is buffered
        self._upload(self._remote(object_key(content_hash)), data.read())

    def delete(self, content_hash: str) -> None:
        validate_hash(content_hash)
        try:
            self._api(
                "POST",
                "/api/fs/remove",
                json={"dir": self._remote(shard(content_hash)), "names": [content_hash]},
            )
        except ObjectNotFoundError:
            return

    def exists(self, content_hash: str) -> bool:
        validate_hash(content_hash)
        try:
            entries = self._list(self._remote(shard(content_hash)))
        except ObjectNotFoundError:
            return False
        return any(
            e.get("name") == content_hash and not e.get("is_dir") for e in entries
        )

    def write_file(self, path: str, content: bytes) -> None:
        remote = self._remote(path)
        parent = remote.rsplit("/", 1)[0]
        if parent:
            self._mkdir(parent)
        self._upload(remote, content)

    def list_files(self) -> list[StoredObject]:
        objects = []
        for rel, entry in self._walk():
            parts = rel.split("/")
            if len(parts) != 2 or not is_object_key(parts[0], parts[1]):
                continue
            objects.append(StoredObject(
                hash=parts[1],
                size=int(entry.get("size") or 0),
                mtime=parse_modified(entry.get("modified")),
                path=self._remote(rel),
            ))
        return objects
