"""Tests for the clustermirror command line."""

from __future__ import annotations

from unittest.mock import patch

import yaml
from click.testing import CliRunner

from clustermirror import __version__
from clustermirror.cli import main
from clustermirror.errors import SyncError
from clustermirror.models import SyncResult
from clustermirror.signing import sign


class TestInit:
    def test_writes_default_config(self, tmp_node_home):
        runner = CliRunner()
        result = runner.invoke(main, ["init", "--home", str(tmp_node_home)])
        assert result.exit_code == 0
        data = yaml.safe_load((tmp_node_home / "config.yaml").read_text())
        assert data["cluster"]["id"] == ""

    def test_does_not_overwrite(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["init", "--home", str(configured_home)])
        assert result.exit_code == 0
        assert "already exists" in result.output
        data = yaml.safe_load((configured_home / "config.yaml").read_text())
        assert data["cluster"]["id"] == "cluster-1"

    def test_force(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["init", "--home", str(configured_home), "--force"])
        assert result.exit_code == 0
        data = yaml.safe_load((configured_home / "config.yaml").read_text())
        assert data["cluster"]["id"] == ""


class TestSign:
    def test_prints_signed_path(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["sign", "--home", str(configured_home), "abcd1234"])
        assert result.exit_code == 0
        assert result.output.strip() == f"/download/abcd1234?sign={sign('s3cret', 'abcd1234')}"

    def test_rejects_malformed_hash(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["sign", "--home", str(configured_home), "a/b"])
        assert result.exit_code == 1
        assert "Malformed hash" in result.output

    def test_missing_config(self, tmp_node_home):
        runner = CliRunner()
        result = runner.invoke(main, ["sign", "--home", str(tmp_node_home), "abcd"])
        assert result.exit_code == 1
        assert (tmp_node_home / "config.yaml").exists()


class TestSync:
    def test_requires_credentials(self, tmp_node_home):
        (tmp_node_home / "config.yaml").write_text("cluster:\n  id: ''\n")
        runner = CliRunner()
        result = runner.invoke(main, ["sync", "--home", str(tmp_node_home)])
        assert result.exit_code == 1
        assert "must be set" in result.output

    def test_renders_result(self, configured_home):
        runner = CliRunner()
        with patch("clustermirror.reconcile.Reconciler.sync",
                   return_value=SyncResult(total=5, missing=2, succeeded=2)):
            result = runner.invoke(main, ["sync", "--home", str(configured_home)])
        assert result.exit_code == 0
        assert "Manifest entries" in result.output
        assert "5" in result.output

    def test_failure_exits_nonzero(self, configured_home):
        runner = CliRunner()
        with patch("clustermirror.reconcile.Reconciler.sync",
                   side_effect=SyncError("Sync failed after 5 attempts")):
            result = runner.invoke(main, ["sync", "--home", str(configured_home)])
        assert result.exit_code == 1
        assert "Sync failed after 5 attempts" in result.output


class TestGc:
    def test_dry_run(self, configured_home):
        runner = CliRunner()
        with patch("clustermirror.reconcile.Reconciler.collect_garbage",
                   return_value=3) as gc:
            result = runner.invoke(main, ["gc", "--home", str(configured_home), "--dry-run"])
        assert result.exit_code == 0
        assert "3 object(s) would be deleted" in result.output
        gc.assert_called_once_with(dry_run=True)


class TestStatus:
    def test_not_running(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["status", "--home", str(configured_home)])
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_json_not_running(self, configured_home):
        runner = CliRunner()
        result = runner.invoke(main, ["status", "--home", str(configured_home), "--json-out"])
        assert result.output.strip() == '{"running": false}'


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert __version__ in result.output
