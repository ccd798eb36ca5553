"""
Download server — answers signed requests from the content store.

    GET /download/<hash>?sign=<hex hmac>   -> 200 bytes | 302 | 400 | 403 | 404
    GET /health                            -> 200 OK
    GET /status                            -> node state snapshot (JSON)

The signature is hex(HMAC-SHA256(secret, hash)) and is checked before the
store is touched. Validation failures are answered and forgotten; they
never reach the fault governor.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

from . import __version__
from .errors import ObjectNotFoundError, StorageError, ValidationError
from .models import RedirectTo
from .signing import verify_signature
from .storage import ContentStore, validate_hash

logger = logging.getLogger("clustermirror.server")
access_logger = logging.getLogger("clustermirror.access")

DOWNLOAD_PREFIX = "/download/"


class MirrorServer:
    """HTTP front end for the content store.

    Args:
        store: Store objects are served from.
        secret: Cluster secret used to verify download signatures.
        host: Bind address.
        port: Bind port (0 picks a free one).
        access_log: Emit one access log line per request.
        status_provider: Returns the payload for ``/status``.
    """

    def __init__(
        self,
        store: ContentStore,
        secret: str,
        host: str = "0.0.0.0",
        port: int = 4000,
        access_log: bool = True,
        status_provider: Optional[Callable[[], dict]] = None,
    ):
        self.store = store
        self._secret = secret
        self.host = host
        self.port = port
        self.access_log = access_log
        self.status_provider = status_provider or (lambda: {"version": __version__})

        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._inflight = 0
        self._idle = threading.Condition()

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            return self.host, self.port
        return self._server.server_address[:2]

    def start(self) -> None:
        """Bind and serve on a background thread."""
        self._server = ThreadingHTTPServer((self.host, self.port), self._handler_class())
        self._server.daemon_threads = True
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="mirror-http", daemon=True
        )
        self._thread.start()
        host, port = self.address
        logger.info("Download server listening on http://%s:%d", host, port)

    def stop(self, grace: float = 5.0) -> None:
        """Stop accepting requests and wait up to ``grace`` seconds for
        in-flight ones before closing the socket."""
        if self._server is None:
            return
        self._server.shutdown()
        deadline = time.monotonic() + grace
        with self._idle:
            while self._inflight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        "Closing with %d request(s) still in flight", self._inflight
                    )
                    break
                self._idle.wait(remaining)
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=grace)
        self._server = None
        logger.info("Download server stopped")

    # -- request handling ---------------------------------------------------

    def _enter(self) -> None:
        with self._idle:
            self._inflight += 1

    def _leave(self) -> None:
        with self._idle:
            self._inflight -= 1
            if not self._inflight:
                self._idle.notify_all()

    def authorize(self, content_hash: str, signature: Optional[str]) -> None:
        """Validate a download request.

        Raises:
            ValidationError: With ``status`` 400 for a missing or malformed
                hash, 403 for a missing or wrong signature.
        """
        if not content_hash:
            raise ValidationError("Missing hash", status=400)
        try:
            validate_hash(content_hash)
        except ValidationError:
            raise ValidationError("Malformed hash", status=400) from None
        if not verify_signature(self._secret, content_hash, signature):
            raise ValidationError("Forbidden", status=403)

    def _handler_class(self):
        server = self

        class DownloadHandler(BaseHTTPRequestHandler):
            """Routes download, health and status requests."""

            server_version = f"clustermirror/{__version__}"

            def do_GET(self):
                server._enter()
                started = time.monotonic()
                self._status = 500
                try:
                    self._route()
                finally:
                    if server.access_log:
                        access_logger.info(
                            "%s %s %d %.1fms",
                            self.command,
                            urlparse(self.path).path,
                            self._status,
                            (time.monotonic() - started) * 1000,
                        )
                    server._leave()

            def _route(self):
                url = urlparse(self.path)
                if url.path.startswith(DOWNLOAD_PREFIX):
                    self._download(url)
                elif url.path == "/health":
                    self._text(200, "OK")
                elif url.path == "/status":
                    self._json(200, server.status_provider())
                else:
                    self._text(404, "Not Found")

            def _download(self, url):
                content_hash = url.path[len(DOWNLOAD_PREFIX):]
                signature = parse_qs(url.query).get("sign", [None])[0]
                try:
                    server.authorize(content_hash, signature)
                except ValidationError as exc:
                    self._text(exc.status, str(exc))
                    return

                try:
                    found = server.store.get(content_hash)
                except ObjectNotFoundError:
                    self._text(404, "Not Found")
                    return
                except StorageError as exc:
                    logger.error("Store lookup for %s failed: %s", content_hash, exc)
                    self._text(500, "Internal Server Error")
                    return

                if isinstance(found, RedirectTo):
                    self._status = 302
                    self.send_response(302)
                    self.send_header("Location", found.url)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    return

                with found.stream as stream:
                    self._status = 200
                    self.send_response(200)
                    self.send_header("Content-Type", "application/octet-stream")
                    if found.size is not None:
                        self.send_header("Content-Length", str(found.size))
                    self.end_headers()
                    try:
                        shutil.copyfileobj(stream, self.wfile)
                    except (BrokenPipeError, ConnectionResetError):
                        logger.debug("Client went away while reading %s", content_hash)

            def _text(self, status: int, body: str):
                self._send(status, body.encode("utf-8"), "text/plain; charset=utf-8")

            def _json(self, status: int, data: dict):
                payload = json.dumps(data, indent=2, default=str).encode("utf-8")
                self._send(status, payload, "application/json")

            def _send(self, status: int, payload: bytes, content_type: str):
                self._status = status
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                logger.debug("HTTP: %s", format % args)

        return DownloadHandler

