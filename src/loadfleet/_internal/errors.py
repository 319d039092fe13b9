"""Custom exception hierarchy for LoadFleet."""

from __future__ import annotations


class LoadFleetError(Exception):
    """Base exception for all LoadFleet errors.

    All custom exceptions in the LoadFleet framework inherit from this class,
    making it easy to catch any LoadFleet-specific error with a single
    except clause.
    """


class ConfigError(LoadFleetError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Required environment variable has an invalid value.
        - Configuration value is out of acceptable range.
    """


class ScenarioError(LoadFleetError):
    """Raised when a scenario descriptor is invalid or cannot be loaded."""


class SetupError(LoadFleetError):
    """Raised when a worker cannot prepare its local environment.

    Examples:
        - The engine executable is missing or not executable.
        - The materialized scenario configuration cannot be written.
    """


class StartTimeoutError(LoadFleetError):
    """Raised when the start barrier is not released in time."""


class EngineFailure(LoadFleetError):
    """Raised when the engine subprocess crashes or exits non-zero."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class HeartbeatLoss(LoadFleetError):
    """A worker has gone silent for longer than the heartbeat threshold.

    Informational only: a run is never failed because of heartbeat loss
    alone.
    """

    def __init__(self, task_id: str, silent_for: float) -> None:
        super().__init__(f"no heartbeat from {task_id} for {silent_for:.1f}s")
        self.task_id = task_id
        self.silent_for = silent_for


class AggregationError(LoadFleetError):
    """Raised when final worker metrics are missing or inconsistent."""


class TransportError(LoadFleetError):
    """Raised when a publish or subscribe operation fails."""


class ProtocolError(TransportError):
    """Raised when a control message cannot be encoded or decoded."""


class StoreError(LoadFleetError):
    """Raised when the run state store cannot persist or load a run."""
