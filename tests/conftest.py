"""Shared test fixtures for clustermirror."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import fastavro
import pytest
import yaml
import zstandard

from clustermirror.manifest import MANIFEST_SCHEMA
from clustermirror.storage import LocalStore


def make_response(
    status: int = 200,
    json_data=None,
    content: bytes = b"",
    text: str = "",
    chunks: Optional[list[bytes]] = None,
) -> MagicMock:
    """Build a stand-in for a requests.Response."""
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("no JSON")
    else:
        resp.json.return_value = json_data
    body = chunks if chunks is not None else [content]
    resp.iter_content.side_effect = lambda *a, **kw: iter(body)
    return resp


def make_manifest(records: list[dict]) -> bytes:
    """Encode records the way the authority ships them (Avro + zstd)."""
    buf = io.BytesIO()
    fastavro.schemaless_writer(buf, fastavro.parse_schema(MANIFEST_SCHEMA), records)
    return zstandard.ZstdCompressor().compress(buf.getvalue())


class FakeTimer:
    """Records scheduled callbacks instead of running them."""

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def tmp_node_home(tmp_path: Path) -> Path:
    """Provide a temporary node home directory for testing."""
    home = tmp_path / ".clustermirror"
    home.mkdir()
    return home


@pytest.fixture
def configured_home(tmp_node_home: Path) -> Path:
    """Node home with a config.yaml holding test credentials."""
    config = {
        "cluster": {"id": "cluster-1", "secret": "s3cret", "port": 0},
        "storage": {"type": "file", "path": str(tmp_node_home / "cache")},
        "sync": {"start_interval_ms": 0},
    }
    (tmp_node_home / "config.yaml").write_text(
        yaml.dump(config, default_flow_style=False)
    )
    return tmp_node_home


@pytest.fixture
def local_store(tmp_path: Path) -> LocalStore:
    """An initialized local store under tmp_path."""
    store = LocalStore(tmp_path / "cache")
    store.init()
    return store


@pytest.fixture
def fake_broker() -> MagicMock:
    """Broker that always hands out the same token."""
    broker = MagicMock()
    broker.acquire_token.return_value = "tok"
    broker.server_url = "https://authority.test"
    return broker


@pytest.fixture
def timers() -> list[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers):
    def factory(delay, fn):
        timer = FakeTimer(delay, fn)
        timers.append(timer)
        return timer

    return factory
