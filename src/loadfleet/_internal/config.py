"""Configuration loading for LoadFleet."""

from __future__ import annotations

import os
from dataclasses import dataclass

from loadfleet._internal.errors import ConfigError


@dataclass(frozen=True)
class LoadFleetConfig:
    """Global LoadFleet configuration.

    Attributes:
        heartbeat_interval: Seconds between worker heartbeats / progress reports.
        heartbeat_miss_limit: Missed intervals before a worker is UNRESPONSIVE.
        ready_timeout: Seconds the controller waits for all workers to be ready.
        start_timeout: Seconds a worker waits for the start signal.
        max_duration: Global run-duration limit in seconds. None means
            scenario duration plus ``run_grace``.
        run_grace: Slack added to the scenario duration for the default limit.
        cancel_timeout: Seconds the controller waits for workers after Cancel.
        kill_grace: Seconds between SIGTERM and SIGKILL for the engine.
        retry_attempts: Attempts for store and transport calls.
        retry_base_delay: First backoff delay in seconds.
        hub_url: Base URL of the pub/sub hub (empty for in-process transport).
        store_dir: Directory of the JSON run store (empty for in-memory).
    """

    heartbeat_interval: float = 5.0
    heartbeat_miss_limit: int = 3
    ready_timeout: float = 300.0
    start_timeout: float = 600.0
    max_duration: float | None = None
    run_grace: float = 120.0
    cancel_timeout: float = 30.0
    kill_grace: float = 10.0
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    hub_url: str = ""
    store_dir: str = ""

    @property
    def heartbeat_timeout(self) -> float:
        """Seconds of silence after which a worker is considered unresponsive."""
        return self.heartbeat_interval * self.heartbeat_miss_limit

    def run_deadline(self, scenario_duration: float) -> float:
        """Return the global run-duration limit for a scenario.

        Args:
            scenario_duration: Declared scenario duration in seconds.

        Returns:
            ``max_duration`` if configured, otherwise the scenario duration
            plus ``run_grace``.
        """
        if self.max_duration is not None:
            return self.max_duration
        return scenario_duration + self.run_grace


def _read_float(name: str, default: float, *, allow_zero: bool = False) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        msg = f"{name} must be a number, got: {raw!r}"
        raise ConfigError(msg) from None
    if value < 0 or (value == 0 and not allow_zero):
        msg = f"{name} must be positive, got: {value}"
        raise ConfigError(msg)
    return value


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got: {raw!r}"
        raise ConfigError(msg) from None
    if value < 1:
        msg = f"{name} must be >= 1, got: {value}"
        raise ConfigError(msg)
    return value


def load_config() -> LoadFleetConfig:
    """Load configuration from environment variables with defaults.

    Environment variables:
        LOADFLEET_HEARTBEAT_INTERVAL: Heartbeat interval in seconds (default: 5.0).
        LOADFLEET_HEARTBEAT_MISS_LIMIT: Missed heartbeats tolerated (default: 3).
        LOADFLEET_READY_TIMEOUT: Readiness barrier timeout (default: 300).
        LOADFLEET_START_TIMEOUT: Worker start wait (default: 600).
        LOADFLEET_MAX_DURATION: Global run-duration limit (default: unset).
        LOADFLEET_RUN_GRACE: Slack over scenario duration (default: 120).
        LOADFLEET_CANCEL_TIMEOUT: Wait for workers after Cancel (default: 30).
        LOADFLEET_KILL_GRACE: SIGTERM to SIGKILL delay (default: 10).
        LOADFLEET_RETRY_ATTEMPTS: Store/transport attempts (default: 5).
        LOADFLEET_RETRY_BASE_DELAY: First backoff delay (default: 0.5).
        LOADFLEET_HUB_URL: Pub/sub hub base URL.
        LOADFLEET_STORE_DIR: JSON run store directory.

    Returns:
        Populated LoadFleetConfig instance.

    Raises:
        ConfigError: If an environment variable has an invalid value.
    """
    max_duration_raw = os.environ.get("LOADFLEET_MAX_DURATION")
    max_duration = (
        _read_float("LOADFLEET_MAX_DURATION", 0.0) if max_duration_raw else None
    )

    return LoadFleetConfig(
        heartbeat_interval=_read_float("LOADFLEET_HEARTBEAT_INTERVAL", 5.0),
        heartbeat_miss_limit=_read_int("LOADFLEET_HEARTBEAT_MISS_LIMIT", 3),
        ready_timeout=_read_float("LOADFLEET_READY_TIMEOUT", 300.0),
        start_timeout=_read_float("LOADFLEET_START_TIMEOUT", 600.0),
        max_duration=max_duration,
        run_grace=_read_float("LOADFLEET_RUN_GRACE", 120.0, allow_zero=True),
        cancel_timeout=_read_float("LOADFLEET_CANCEL_TIMEOUT", 30.0),
        kill_grace=_read_float("LOADFLEET_KILL_GRACE", 10.0),
        retry_attempts=_read_int("LOADFLEET_RETRY_ATTEMPTS", 5),
        retry_base_delay=_read_float(
            "LOADFLEET_RETRY_BASE_DELAY", 0.5, allow_zero=True
        ),
        hub_url=os.environ.get("LOADFLEET_HUB_URL", ""),
        store_dir=os.environ.get("LOADFLEET_STORE_DIR", ""),
    )
