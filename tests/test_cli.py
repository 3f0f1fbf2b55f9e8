"""Tests for the CLI.

Commands run against a temporary workspace with the digest builder and a
temporary cache database. JSON output is checked for stable keys.
"""

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from monodeploy import __version__
from monodeploy.cli import app

runner = CliRunner()

# Keep log records out of the captured output
QUIET = ["--log-level", "CRITICAL"]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path) -> None:
    """Point the cache at tmp_path and select the digest builder."""
    monkeypatch.setenv("MONODEPLOY_DB_URL", f"sqlite:///{tmp_path / 'db' / 'cache.db'}")
    monkeypatch.setenv("MONODEPLOY_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("MONODEPLOY_BUILDER", "digest")
    monkeypatch.delenv("MONODEPLOY_WORKSPACE_ROOT", raising=False)


def _invoke(workspace: Path, *args: str):
    return runner.invoke(app, [*QUIET, "--workspace", str(workspace), *args])


def _json(result) -> object:
    return json.loads(result.stdout)


@pytest.fixture
def cyclic_workspace(tmp_path: Path) -> Path:
    """Create a workspace whose two groups depend on each other."""
    root = tmp_path / "cyclic"
    root.mkdir()
    (root / "BUILD.yaml").write_text(
        yaml.safe_dump(
            {
                "targets": [
                    {"name": "a", "kind": "group", "deps": [":b"]},
                    {"name": "b", "kind": "group", "deps": [":a"]},
                ]
            }
        )
    )
    return root


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Monorepo build-and-deploy orchestrator" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    def test_invalid_log_level(self) -> None:
        """An unknown log level is a configuration error."""
        result = runner.invoke(app, ["--log-level", "LOUD", "config"])
        assert result.exit_code == 1
        assert "Invalid log level" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Workspace:", "Paths:", "Backends:", "Concurrency:"):
            assert section in result.stdout

    def test_config_json(self, scenario_workspace) -> None:
        """config --json reflects env vars and global options."""
        result = _invoke(scenario_workspace, "config", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert data["builder"] == "digest"
        assert data["workspace_root"] == str(scenario_workspace)
        assert data["log_level"] == "CRITICAL"


class TestCLITargets:
    """Test CLI targets command."""

    def test_targets_json(self, scenario_workspace) -> None:
        """targets --json lists every target with stable keys."""
        result = _invoke(scenario_workspace, "targets", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert [t["id"] for t in data] == [
            "//app:app",
            "//app:deploy",
            "//app:ingress",
        ]
        assert set(data[0]) == {"id", "kind", "deps", "cluster", "fingerprint"}
        assert data[1]["deps"] == ["//app:app"]

    def test_targets_kind_filter(self, scenario_workspace) -> None:
        """--kind narrows the listing."""
        result = _invoke(scenario_workspace, "targets", "--kind", "image", "--json")
        assert [t["id"] for t in _json(result)] == ["//app:app"]

    def test_invalid_kind(self, scenario_workspace) -> None:
        """An unknown kind exits with a configuration error."""
        result = _invoke(scenario_workspace, "targets", "--kind", "chart")
        assert result.exit_code == 1

    def test_invalid_declaration(self, tmp_path) -> None:
        """Invalid BUILD files exit with a configuration error."""
        root = tmp_path / "broken"
        root.mkdir()
        (root / "BUILD.yaml").write_text(
            yaml.safe_dump({"targets": [{"name": "x", "kind": "chart"}]})
        )
        result = _invoke(root, "targets")
        assert result.exit_code == 1
        assert "Error" in result.stdout


class TestCLIResolve:
    """Test CLI resolve command."""

    def test_resolve_json(self, scenario_workspace) -> None:
        """resolve --json prints order and staleness."""
        result = _invoke(scenario_workspace, "resolve", "--json")
        assert result.exit_code == 0
        assert _json(result) == {
            "order": ["//app:app", "//app:deploy", "//app:ingress"],
            "stale": ["//app:app", "//app:deploy", "//app:ingress"],
        }

    def test_resolve_subset(self, scenario_workspace) -> None:
        """Named targets restrict the output to their closure."""
        result = _invoke(scenario_workspace, "resolve", "//app:deploy", "--json")
        assert _json(result)["order"] == ["//app:app", "//app:deploy"]

    def test_resolve_text(self, scenario_workspace) -> None:
        """Text output marks stale targets."""
        result = _invoke(scenario_workspace, "resolve")
        assert result.exit_code == 0
        assert "3 stale" in result.stdout
        assert "//app:ingress" in result.stdout

    def test_resolve_creates_no_database(self, scenario_workspace, tmp_path) -> None:
        """resolve without a cache database leaves the filesystem untouched."""
        result = _invoke(scenario_workspace, "resolve", "--json")
        assert result.exit_code == 0
        assert len(_json(result)["stale"]) == 3
        assert not (tmp_path / "db").exists()

    def test_resolve_reads_existing_cache(self, scenario_workspace) -> None:
        """Targets built earlier are reported up to date."""
        _invoke(scenario_workspace, "build", "//app:app")
        result = _invoke(scenario_workspace, "resolve", "--json")
        assert _json(result)["stale"] == ["//app:deploy", "//app:ingress"]

    def test_unknown_target(self, scenario_workspace) -> None:
        """Unknown targets exit with a configuration error."""
        result = _invoke(scenario_workspace, "resolve", "//app:nope")
        assert result.exit_code == 1
        assert "Unknown target" in result.stdout

    def test_cycle(self, cyclic_workspace) -> None:
        """Cycles exit with code 3 and name the cycle."""
        result = _invoke(cyclic_workspace, "resolve")
        assert result.exit_code == 3
        assert "//:a" in result.stdout
        assert "//:b" in result.stdout


class TestCLIBuildApply:
    """Test CLI build, apply and cache commands."""

    def test_build_json(self, scenario_workspace) -> None:
        """build builds only the images in the closure."""
        result = _invoke(scenario_workspace, "build", "//app:ingress", "--json")
        assert result.exit_code == 0
        data = _json(result)
        assert data["order"] == ["//app:app"]
        assert data["outcomes"][0]["status"] == "succeeded"
        assert data["outcomes"][0]["reference"].startswith(
            "registry.example.com/app@sha256:"
        )
        assert data["exit_code"] == 0

    def test_build_twice_is_up_to_date(self, scenario_workspace) -> None:
        """A second build reports the image as up to date."""
        _invoke(scenario_workspace, "build", "//app:app")
        result = _invoke(scenario_workspace, "build", "//app:app", "--json")
        assert _json(result)["outcomes"][0]["status"] == "up_to_date"

    def test_build_failure_exit_code(self, scenario_workspace, monkeypatch) -> None:
        """A failed docker build exits with code 4."""
        monkeypatch.setenv("MONODEPLOY_BUILDER", "docker")
        with patch(
            "monodeploy.builds.builder.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        ):
            result = _invoke(scenario_workspace, "apply", "//app:ingress", "--json")
        assert result.exit_code == 4
        data = _json(result)
        assert data["failed"] == 1
        assert data["skipped"] == 2

    def test_dry_run(self, scenario_workspace) -> None:
        """--dry-run prints bound manifests and applies nothing."""
        with patch("monodeploy.apply.kubectl.subprocess.run") as mock_run:
            result = _invoke(scenario_workspace, "apply", "//app:deploy", "--dry-run")
        mock_run.assert_not_called()
        assert result.exit_code == 0
        assert "DRY RUN" in result.stdout
        assert "registry.example.com/app@sha256:" in result.stdout

    def test_apply_with_kubectl(self, scenario_workspace) -> None:
        """apply pipes bound manifests to kubectl in order."""
        with patch(
            "monodeploy.apply.kubectl.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""),
        ) as mock_run:
            result = _invoke(scenario_workspace, "apply", "//app:ingress", "--json")

        assert result.exit_code == 0
        assert mock_run.call_count == 2
        first = list(yaml.safe_load_all(mock_run.call_args_list[0].kwargs["input"]))
        second = list(yaml.safe_load_all(mock_run.call_args_list[1].kwargs["input"]))
        assert [d["kind"] for d in first] == ["Deployment", "Service"]
        assert [d["kind"] for d in second] == ["Ingress"]
        assert _json(result)["succeeded"] == 3

    def test_apply_failure_exit_code(self, scenario_workspace) -> None:
        """A rejected apply exits with code 5."""
        with patch(
            "monodeploy.apply.kubectl.subprocess.run",
            return_value=subprocess.CompletedProcess(
                [], 1, stdout="", stderr="forbidden"
            ),
        ):
            result = _invoke(scenario_workspace, "apply", "//app:ingress", "--json")
        assert result.exit_code == 5
        data = _json(result)
        assert data["partial"] is True
        assert data["outcomes"][1]["code"] == "apply_failed"

    def test_apply_cycle(self, cyclic_workspace) -> None:
        """apply refuses cyclic graphs with code 3."""
        result = _invoke(cyclic_workspace, "apply", "//:a")
        assert result.exit_code == 3

    def test_cache_list_and_clear(self, scenario_workspace) -> None:
        """cache list shows built targets; cache clear drops them."""
        _invoke(scenario_workspace, "build", "//app:app")

        listed = _invoke(scenario_workspace, "cache", "list", "--json")
        entries = _json(listed)
        assert [e["target_id"] for e in entries] == ["//app:app"]
        assert set(entries[0]) == {
            "target_id",
            "fingerprint",
            "reference",
            "built_at",
            "success",
        }

        cleared = _invoke(scenario_workspace, "cache", "clear", "//app:app")
        assert "Invalidated //app:app" in cleared.stdout
        assert _json(_invoke(scenario_workspace, "cache", "list", "--json")) == []

    def test_cache_clear_all(self, scenario_workspace) -> None:
        """cache clear without a target drops everything."""
        _invoke(scenario_workspace, "build", "//app:app")
        result = _invoke(scenario_workspace, "cache", "clear")
        assert "Cleared 1 cache entry" in result.stdout
