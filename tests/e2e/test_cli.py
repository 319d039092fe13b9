"""End-to-end tests for the LoadFleet CLI."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from loadfleet import __version__
from loadfleet.cli.app import app

if TYPE_CHECKING:
    from pathlib import Path

runner = CliRunner()

pytestmark = pytest.mark.timeout(60)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fast_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Short timings and no ambient hub or store configuration."""
    monkeypatch.setenv("LOADFLEET_HEARTBEAT_INTERVAL", "0.1")
    monkeypatch.setenv("LOADFLEET_READY_TIMEOUT", "10")
    monkeypatch.setenv("LOADFLEET_CANCEL_TIMEOUT", "2")
    monkeypatch.setenv("LOADFLEET_KILL_GRACE", "0.5")
    monkeypatch.setenv("LOADFLEET_RETRY_BASE_DELAY", "0.01")
    monkeypatch.delenv("LOADFLEET_HUB_URL", raising=False)
    monkeypatch.delenv("LOADFLEET_STORE_DIR", raising=False)
    monkeypatch.setattr("loadfleet.cli.run.install_uvloop", lambda: None)


@pytest.fixture
def write_scenario(tmp_path: Path, make_scenario):
    """Write a fake-engine scenario to a JSON file and return its path."""

    def _write(mode: str = "ok", **kwargs) -> Path:
        path = tmp_path / f"{mode}.json"
        path.write_text(json.dumps(make_scenario(mode, **kwargs).to_dict()))
        return path

    return _write


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestVersion:
    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestRunCommand:
    def test_run_completes(self, write_scenario, tmp_path: Path):
        store_dir = tmp_path / "runs"
        result = runner.invoke(
            app,
            [
                "run",
                str(write_scenario("ok", samples=2)),
                "--workers",
                "2",
                "--run-id",
                "cli-ok",
                "--store-dir",
                str(store_dir),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "completed successfully" in result.output
        assert (store_dir / "cli-ok.json").exists()

    def test_failed_run_exits_non_zero(self, write_scenario):
        result = runner.invoke(app, ["run", str(write_scenario("crash"))])
        assert result.exit_code == 1
        assert "FAILED" in result.output

    def test_missing_scenario_file(self, tmp_path: Path):
        result = runner.invoke(app, ["run", str(tmp_path / "missing.json")])
        assert result.exit_code != 0

    def test_invalid_scenario_file(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text('{"name": "bad"}')
        result = runner.invoke(app, ["run", str(path)])
        assert result.exit_code == 1
        assert "missing field" in result.output


class TestStatusCommand:
    @pytest.fixture
    def store_dir(self, write_scenario, tmp_path: Path) -> Path:
        store_dir = tmp_path / "runs"
        result = runner.invoke(
            app,
            [
                "run",
                str(write_scenario("ok", samples=1)),
                "--run-id",
                "stored-run",
                "--store-dir",
                str(store_dir),
            ],
        )
        assert result.exit_code == 0, result.output
        return store_dir

    def test_lists_runs(self, store_dir: Path):
        result = runner.invoke(app, ["status", "--store-dir", str(store_dir)])
        assert result.exit_code == 0
        assert "stored-run" in result.output

    def test_single_run_json(self, store_dir: Path):
        result = runner.invoke(
            app, ["status", "stored-run", "--store-dir", str(store_dir), "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "COMPLETE"
        assert data["aggregate"]["total_requests"] == 10

    def test_store_dir_from_environment(
        self, store_dir: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("LOADFLEET_STORE_DIR", str(store_dir))
        result = runner.invoke(app, ["status", "stored-run"])
        assert result.exit_code == 0
        assert "COMPLETE" in result.output

    def test_unknown_run(self, tmp_path: Path):
        result = runner.invoke(app, ["status", "nope", "--store-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "unknown run" in result.output

    def test_store_dir_required(self):
        result = runner.invoke(app, ["status"])
        assert result.exit_code != 0


class TestCancelCommand:
    def test_requires_hub(self):
        result = runner.invoke(app, ["cancel", "run-1"])
        assert result.exit_code != 0

    def test_sends_cancel(self, sync_hub_url: str):
        result = runner.invoke(app, ["cancel", "run-1", "--hub", sync_hub_url])
        assert result.exit_code == 0, result.output
        assert "Cancel sent to run run-1" in result.output

    def test_unreachable_hub(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_RETRY_ATTEMPTS", "1")
        result = runner.invoke(app, ["cancel", "run-1", "--hub", "http://127.0.0.1:9"])
        assert result.exit_code == 1
        assert "Cancel failed" in result.output


class TestWorkerCommand:
    def test_rejects_unknown_task(self, write_scenario):
        result = runner.invoke(
            app,
            [
                "worker",
                "run-1",
                "worker-5",
                "--scenario",
                str(write_scenario("ok", workers=2)),
                "--hub",
                "http://127.0.0.1:9",
            ],
        )
        assert result.exit_code != 0
