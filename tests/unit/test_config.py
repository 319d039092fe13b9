"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from loadfleet._internal.config import LoadFleetConfig, load_config
from loadfleet._internal.errors import ConfigError

_ENV_VARS = (
    "LOADFLEET_HEARTBEAT_INTERVAL",
    "LOADFLEET_HEARTBEAT_MISS_LIMIT",
    "LOADFLEET_READY_TIMEOUT",
    "LOADFLEET_START_TIMEOUT",
    "LOADFLEET_MAX_DURATION",
    "LOADFLEET_RUN_GRACE",
    "LOADFLEET_CANCEL_TIMEOUT",
    "LOADFLEET_KILL_GRACE",
    "LOADFLEET_RETRY_ATTEMPTS",
    "LOADFLEET_RETRY_BASE_DELAY",
    "LOADFLEET_HUB_URL",
    "LOADFLEET_STORE_DIR",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadFleetConfig:
    """Tests for the LoadFleetConfig dataclass."""

    def test_defaults(self):
        """LoadFleetConfig has sensible defaults."""
        config = LoadFleetConfig()
        assert config.heartbeat_interval == 5.0
        assert config.heartbeat_miss_limit == 3
        assert config.max_duration is None
        assert config.hub_url == ""

    def test_frozen(self):
        """LoadFleetConfig is immutable."""
        config = LoadFleetConfig()
        with pytest.raises(AttributeError):
            config.ready_timeout = 1.0  # type: ignore[misc]

    def test_heartbeat_timeout(self):
        config = LoadFleetConfig(heartbeat_interval=2.0, heartbeat_miss_limit=4)
        assert config.heartbeat_timeout == 8.0

    def test_run_deadline_defaults_to_duration_plus_grace(self):
        config = LoadFleetConfig(run_grace=30.0)
        assert config.run_deadline(60.0) == 90.0

    def test_run_deadline_uses_max_duration(self):
        config = LoadFleetConfig(max_duration=45.0)
        assert config.run_deadline(600.0) == 45.0


class TestLoadConfig:
    """Tests for the load_config function."""

    def test_defaults_from_env(self):
        """load_config returns defaults when no env vars are set."""
        assert load_config() == LoadFleetConfig()

    def test_values_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_HEARTBEAT_INTERVAL", "0.5")
        monkeypatch.setenv("LOADFLEET_HEARTBEAT_MISS_LIMIT", "4")
        monkeypatch.setenv("LOADFLEET_MAX_DURATION", "120")
        monkeypatch.setenv("LOADFLEET_RUN_GRACE", "0")
        monkeypatch.setenv("LOADFLEET_HUB_URL", "http://hub:8089")
        monkeypatch.setenv("LOADFLEET_STORE_DIR", "/var/lib/loadfleet")

        config = load_config()
        assert config.heartbeat_interval == 0.5
        assert config.heartbeat_miss_limit == 4
        assert config.max_duration == 120.0
        assert config.run_grace == 0.0
        assert config.hub_url == "http://hub:8089"
        assert config.store_dir == "/var/lib/loadfleet"

    def test_invalid_number_raises(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_READY_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="must be a number"):
            load_config()

    def test_non_positive_timeout_raises(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_CANCEL_TIMEOUT", "0")
        with pytest.raises(ConfigError, match="must be positive"):
            load_config()

    def test_invalid_integer_raises(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_RETRY_ATTEMPTS", "2.5")
        with pytest.raises(ConfigError, match="must be an integer"):
            load_config()

    def test_zero_attempts_raises(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOADFLEET_RETRY_ATTEMPTS", "0")
        with pytest.raises(ConfigError, match=">= 1"):
            load_config()
