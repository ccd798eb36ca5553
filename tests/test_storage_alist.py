"""Tests for the AList content store."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest

from clustermirror.errors import ObjectNotFoundError, StorageError
from clustermirror.models import AListConfig, RedirectTo
from clustermirror.storage import AListStore
from clustermirror.storage.alist import parse_modified

from conftest import make_response

ENDPOINT = "http://alist.local:5244"


def ok(data=None):
    return make_response(200, {"code": 200, "message": "success", "data": data})


def err(code: int, message: str):
    return make_response(200, {"code": code, "message": message, "data": None})


@pytest.fixture
def session():
    return MagicMock()


def _store(session, token: str = "") -> AListStore:
    config = AListConfig(
        endpoint=ENDPOINT, username="admin", password="pw", path="/data/", token=token
    )
    return AListStore(config, session=session)


class TestLogin:
    def test_init_logs_in_then_creates_root(self, session):
        session.request.side_effect = [ok({"token": "tk-1"}), ok()]
        store = _store(session)
        store.init()

        login, mkdir = session.request.call_args_list
        assert login.args == ("POST", f"{ENDPOINT}/api/auth/login")
        assert login.kwargs["json"] == {"username": "admin", "password": "pw"}
        assert "Authorization" not in login.kwargs["headers"]

        assert mkdir.args == ("POST", f"{ENDPOINT}/api/fs/mkdir")
        assert mkdir.kwargs["json"] == {"path": "/data"}
        assert mkdir.kwargs["headers"]["Authorization"] == "tk-1"
        assert store.token == "tk-1"

    def test_preconfigured_token_skips_login(self, session):
        session.request.return_value = ok()
        store = _store(session, token="static")
        store.init()
        assert session.request.call_count == 1
        assert session.request.call_args.args[1].endswith("/api/fs/mkdir")

    def test_rejected_login(self, session):
        session.request.return_value = err(400, "password is incorrect")
        with pytest.raises(StorageError, match="AList login failed"):
            _store(session).init()

    def test_existing_root_is_fine(self, session):
        session.request.return_value = err(500, "file exists")
        _store(session, token="static").init()

    def test_http_error(self, session):
        session.request.return_value = make_response(502)
        with pytest.raises(StorageError, match="502"):
            _store(session, token="static").init()


class TestObjects:
    def test_get_redirects_to_download_route(self, session):
        store = _store(session, token="t")
        assert store.get("abcd") == RedirectTo(url=f"{ENDPOINT}/d/data/ab/abcd")
        session.request.assert_not_called()

    def test_put_uploads_with_file_path(self, session):
        session.request.return_value = ok()
        store = _store(session, token="t")
        store.put("abcd", io.BytesIO(b"payload"))

        upload = session.request.call_args
        assert upload.args == ("PUT", f"{ENDPOINT}/api/fs/put")
        assert upload.kwargs["headers"]["File-Path"] == "/data/ab/abcd"
        assert upload.kwargs["data"] == b"payload"

    def test_delete(self, session):
        session.request.return_value = ok()
        _store(session, token="t").delete("abcd")
        assert session.request.call_args.kwargs["json"] == {
            "dir": "/data/ab",
            "names": ["abcd"],
        }

    def test_delete_missing_is_ignored(self, session):
        session.request.return_value = err(500, "object not found")
        _store(session, token="t").delete("abcd")

    def test_exists(self, session):
        session.request.return_value = ok({"content": [{"name": "abcd", "is_dir": False}]})
        store = _store(session, token="t")
        assert store.exists("abcd") is True
        assert store.exists("abff") is False

    def test_exists_missing_shard(self, session):
        session.request.return_value = err(500, "failed get dir: object not found")
        assert _store(session, token="t").exists("abcd") is False

    def test_list_files(self, session):
        listings = {
            "/data": [
                {"name": "ab", "is_dir": True},
                {"name": "measure", "is_dir": True},
                {"name": "notes.txt", "is_dir": False, "size": 3},
            ],
            "/data/ab": [
                {"name": "abcd", "is_dir": False, "size": 4,
                 "modified": "2024-01-01T00:00:00Z"},
            ],
            "/data/measure": [
                {"name": "1", "is_dir": False, "size": 1048576},
            ],
        }

        def respond(method, url, **kwargs):
            return ok({"content": listings[kwargs["json"]["path"]]})

        session.request.side_effect = respond
        objects = _store(session, token="t").list_files()

        assert len(objects) == 1
        assert objects[0].hash == "abcd"
        assert objects[0].size == 4
        assert objects[0].mtime == 1704067200

    def test_not_found_maps_to_object_not_found(self, session):
        session.request.return_value = err(500, "object not found")
        with pytest.raises(ObjectNotFoundError):
            _store(session, token="t")._list("/data/zz")

    def test_check(self, session):
        session.request.return_value = ok({"content": None})
        store = _store(session, token="t")
        assert store.check() is True
        session.request.return_value = err(401, "token is invalidated")
        assert store.check() is False


class TestParseModified:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-01-01T00:00:00Z", 1704067200),
            ("2024-01-01T08:00:00+08:00", 1704067200),
            (1704067200, 1704067200),
            ("1704067200", 1704067200),
            ("", 0),
            (None, 0),
            ("garbage", 0),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_modified(value) == expected
