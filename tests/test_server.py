"""Tests for the signed download server."""

from __future__ import annotations

import io
import logging
from unittest.mock import MagicMock

import pytest
import requests

from clustermirror.errors import StorageError, ValidationError
from clustermirror.models import RedirectTo
from clustermirror.server import MirrorServer
from clustermirror.signing import sign
from clustermirror.storage import ContentStore

SECRET = "s3cret"


def _serve(store) -> MirrorServer:
    server = MirrorServer(store, SECRET, host="127.0.0.1", port=0)
    server.start()
    return server


def _url(server: MirrorServer, path: str) -> str:
    host, port = server.address
    return f"http://{host}:{port}{path}"


def _download(server, content_hash: str, signature=None):
    sig = sign(SECRET, content_hash) if signature is None else signature
    return requests.get(
        _url(server, f"/download/{content_hash}?sign={sig}"),
        allow_redirects=False,
        timeout=5,
    )


@pytest.fixture
def local_server(local_store):
    server = _serve(local_store)
    yield server
    server.stop(grace=1)


@pytest.fixture
def mock_store():
    return MagicMock(spec=ContentStore)


@pytest.fixture
def mock_server(mock_store):
    server = _serve(mock_store)
    yield server
    server.stop(grace=1)


class TestAuthorize:
    def test_valid(self, local_store):
        server = MirrorServer(local_store, SECRET)
        server.authorize("abcd", sign(SECRET, "abcd"))

    @pytest.mark.parametrize(
        "content_hash, signature, status",
        [
            ("", "x", 400),
            ("a", sign(SECRET, "a"), 400),
            ("ab..", sign(SECRET, "ab.."), 400),
            ("abcd/extra", sign(SECRET, "abcd/extra"), 400),
            ("abcd", None, 403),
            ("abcd", "", 403),
            ("abcd", sign("wrong", "abcd"), 403),
        ],
    )
    def test_rejections(self, local_store, content_hash, signature, status):
        server = MirrorServer(local_store, SECRET)
        with pytest.raises(ValidationError) as exc_info:
            server.authorize(content_hash, signature)
        assert exc_info.value.status == status


class TestDownload:
    """GET /download/<hash>?sign=<sig>."""

    def test_serves_local_bytes(self, local_server, local_store):
        local_store.put("abcd1234", io.BytesIO(b"mirror bytes"))

        resp = _download(local_server, "abcd1234")

        assert resp.status_code == 200
        assert resp.content == b"mirror bytes"
        assert resp.headers["Content-Type"] == "application/octet-stream"
        assert resp.headers["Content-Length"] == "12"

    def test_missing_object(self, local_server):
        assert _download(local_server, "abcd1234").status_code == 404

    def test_bad_signature_never_reaches_store(self, mock_server, mock_store):
        resp = _download(mock_server, "abcd1234", signature="0" * 64)
        assert resp.status_code == 403
        mock_store.get.assert_not_called()

    def test_missing_signature(self, mock_server, mock_store):
        resp = requests.get(_url(mock_server, "/download/abcd1234"), timeout=5)
        assert resp.status_code == 403
        mock_store.get.assert_not_called()

    def test_malformed_hash(self, mock_server, mock_store):
        assert _download(mock_server, "a").status_code == 400
        assert requests.get(_url(mock_server, "/download/"), timeout=5).status_code == 400
        mock_store.get.assert_not_called()

    def test_trailing_path_segments_rejected(self, local_server, local_store):
        local_store.put("abcd", io.BytesIO(b"x"))

        resp = requests.get(
            _url(local_server, f"/download/abcd/extra/junk?sign={sign(SECRET, 'abcd')}"),
            timeout=5,
        )

        assert resp.status_code == 400

    def test_redirect(self, mock_server, mock_store):
        mock_store.get.return_value = RedirectTo(url="https://dav.example/ab/abcd")

        resp = _download(mock_server, "abcd")

        assert resp.status_code == 302
        assert resp.headers["Location"] == "https://dav.example/ab/abcd"
        mock_store.get.assert_called_once_with("abcd")

    def test_store_failure_is_opaque(self, mock_server, mock_store):
        mock_store.get.side_effect = StorageError("db password is hunter2")

        resp = _download(mock_server, "abcd")

        assert resp.status_code == 500
        assert "hunter2" not in resp.text


class TestRoutes:
    def test_health(self, local_server):
        resp = requests.get(_url(local_server, "/health"), timeout=5)
        assert resp.status_code == 200
        assert resp.text == "OK"

    def test_status(self, local_store):
        server = MirrorServer(
            local_store, SECRET, host="127.0.0.1", port=0,
            status_provider=lambda: {"running": True, "syncs_completed": 3},
        )
        server.start()
        try:
            resp = requests.get(_url(server, "/status"), timeout=5)
        finally:
            server.stop(grace=1)
        assert resp.json() == {"running": True, "syncs_completed": 3}

    def test_unknown_path(self, local_server):
        assert requests.get(_url(local_server, "/nope"), timeout=5).status_code == 404

    def test_access_log(self, local_server, caplog):
        with caplog.at_level(logging.INFO, logger="clustermirror.access"):
            requests.get(_url(local_server, "/health"), timeout=5)
            local_server.stop(grace=1)
        lines = [r.getMessage() for r in caplog.records if r.name == "clustermirror.access"]
        assert any(line.startswith("GET /health 200") for line in lines)


class TestLifecycle:
    def test_stop_is_idempotent(self, local_store):
        server = _serve(local_store)
        server.stop(grace=1)
        server.stop(grace=1)

    def test_port_zero_binds_free_port(self, local_server):
        assert local_server.address[1] != 0
