"""Tests for configuration models and loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from clustermirror import DEFAULT_SERVER_URL
from clustermirror.config import (
    default_config_path,
    load_config,
    require_credentials,
    write_default_config,
)
from clustermirror.errors import ConfigError
from clustermirror.models import (
    ClusterConfig,
    NodeConfig,
    StorageType,
    SyncTuning,
)


def _write(path: Path, data) -> Path:
    path.write_text(yaml.dump(data, default_flow_style=False))
    return path


class TestModels:
    def test_defaults(self):
        config = NodeConfig()
        assert config.cluster.port == 4000
        assert config.cluster.public_port == 4000
        assert config.cluster.server_url == DEFAULT_SERVER_URL
        assert config.storage.type == StorageType.FILE
        assert config.storage.path == Path("./cache")
        assert config.sync.max_concurrency == 64
        assert config.sync.start_interval_ms == 100
        assert config.fault_threshold == 5

    def test_public_port_follows_port(self):
        assert ClusterConfig(port=8080).public_port == 8080
        assert ClusterConfig(port=8080, public_port=443).public_port == 443

    def test_server_url_normalized(self):
        assert ClusterConfig(server_url="https://a.test/").server_url == "https://a.test"
        assert ClusterConfig(server_url="").server_url == DEFAULT_SERVER_URL

    @pytest.mark.parametrize("value", [0, -5])
    def test_non_positive_concurrency_uses_default(self, value):
        assert SyncTuning(max_concurrency=value).max_concurrency == 64

    def test_negative_interval_uses_default(self):
        assert SyncTuning(start_interval_ms=-1).start_interval_ms == 100
        assert SyncTuning(start_interval_ms=0).start_interval_ms == 0


class TestLoadConfig:
    def test_missing_file_writes_default(self, tmp_node_home):
        path = default_config_path(tmp_node_home)
        with pytest.raises(ConfigError, match="default was written"):
            load_config(path)
        assert path.exists()
        data = yaml.safe_load(path.read_text())
        assert data["cluster"]["port"] == 4000
        assert data["storage"]["type"] == "file"

    def test_missing_file_without_create(self, tmp_node_home):
        path = default_config_path(tmp_node_home)
        with pytest.raises(ConfigError, match="not found"):
            load_config(path, create=False)
        assert not path.exists()

    def test_default_file_round_trips(self, tmp_node_home):
        path = write_default_config(default_config_path(tmp_node_home))
        assert load_config(path) == NodeConfig()

    def test_loads_sections(self, tmp_node_home):
        path = _write(tmp_node_home / "config.yaml", {
            "cluster": {"id": "c1", "secret": "s", "port": 9000},
            "storage": {
                "type": "webdav",
                "webdav": {"endpoint": "http://dav", "path": "/m"},
            },
            "sync": {"max_concurrency": 0},
        })
        config = load_config(path)
        assert config.cluster.public_port == 9000
        assert config.storage.type == StorageType.WEBDAV
        assert config.storage.webdav.endpoint == "http://dav"
        assert config.sync.max_concurrency == 64

    def test_empty_file_is_defaults(self, tmp_node_home):
        path = tmp_node_home / "config.yaml"
        path.write_text("")
        assert load_config(path) == NodeConfig()

    def test_invalid_yaml(self, tmp_node_home):
        path = tmp_node_home / "config.yaml"
        path.write_text("cluster: [unclosed")
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(path)

    def test_not_a_mapping(self, tmp_node_home):
        path = _write(tmp_node_home / "config.yaml", ["a", "b"])
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_invalid_values(self, tmp_node_home):
        path = _write(tmp_node_home / "config.yaml", {
            "cluster": {"port": "not-a-port"},
        })
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path)

    def test_unknown_storage_type(self, tmp_node_home):
        path = _write(tmp_node_home / "config.yaml", {"storage": {"type": "s3"}})
        with pytest.raises(ConfigError):
            load_config(path)


class TestRequireCredentials:
    def test_complete(self):
        require_credentials(NodeConfig(cluster={"id": "c", "secret": "s"}))

    def test_both_missing(self):
        with pytest.raises(ConfigError, match="cluster.id and cluster.secret must be set"):
            require_credentials(NodeConfig())

    def test_secret_missing(self):
        with pytest.raises(ConfigError, match="^cluster.secret must be set"):
            require_credentials(NodeConfig(cluster={"id": "c"}))
