"""Scenario descriptor handed to every worker of a run."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from loadfleet._internal.errors import ScenarioError


def task_ids(workers: int) -> list[str]:
    """Return the fixed task identifiers for a fleet of *workers*."""
    return [f"worker-{i}" for i in range(workers)]


@dataclass(frozen=True)
class ScenarioDescriptor:
    """What each worker runs and against what.

    ``command`` is the engine command line. Elements may contain the
    placeholders ``{target}``, ``{duration}`` and ``{config}``, which are
    substituted before the engine is spawned; the same values are also
    exported to the engine's environment.

    Attributes:
        name: Scenario name, used as the run's scenario reference.
        command: Engine executable followed by its arguments.
        target: Target endpoint, forwarded unchanged.
        duration_seconds: Test duration, forwarded unchanged.
        workers: Desired worker count N.
        env: Extra environment variables for the engine.
    """

    name: str
    command: tuple[str, ...]
    target: str
    duration_seconds: float
    workers: int = 1
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            msg = "scenario name must not be empty"
            raise ScenarioError(msg)
        if not self.command or not self.command[0]:
            msg = f"scenario {self.name!r} has no engine command"
            raise ScenarioError(msg)
        if self.duration_seconds <= 0:
            msg = f"duration_seconds must be positive, got: {self.duration_seconds}"
            raise ScenarioError(msg)
        if self.workers < 1:
            msg = f"workers must be >= 1, got: {self.workers}"
            raise ScenarioError(msg)

    @property
    def task_ids(self) -> list[str]:
        """Return the task identifiers of this scenario's fleet."""
        return task_ids(self.workers)

    def render_command(self, config_path: str | Path = "") -> list[str]:
        """Return the engine argv with placeholders substituted.

        Args:
            config_path: Path of the materialized scenario configuration.

        Returns:
            The command line to execute.

        Raises:
            ScenarioError: If an element uses an unknown placeholder.
        """
        values = {
            "target": self.target,
            "duration": _format_duration(self.duration_seconds),
            "config": str(config_path),
        }
        try:
            return [part.format(**values) for part in self.command]
        except (KeyError, IndexError, ValueError) as exc:
            msg = f"bad placeholder in engine command {list(self.command)}: {exc}"
            raise ScenarioError(msg) from exc

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict."""
        data = asdict(self)
        data["command"] = list(self.command)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScenarioDescriptor:
        """Build a descriptor from a parsed JSON document.

        Raises:
            ScenarioError: If a field is missing or has the wrong type.
        """
        try:
            command = data["command"]
            if isinstance(command, str):
                command = command.split()
            return cls(
                name=str(data["name"]),
                command=tuple(str(c) for c in command),
                target=str(data["target"]),
                duration_seconds=float(data["duration_seconds"]),
                workers=int(data.get("workers", 1)),
                env={str(k): str(v) for k, v in dict(data.get("env", {})).items()},
            )
        except KeyError as exc:
            msg = f"scenario is missing field: {exc.args[0]}"
            raise ScenarioError(msg) from exc
        except (TypeError, ValueError) as exc:
            msg = f"invalid scenario: {exc}"
            raise ScenarioError(msg) from exc


def _format_duration(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else str(seconds)


def load_scenario(path: str | Path) -> ScenarioDescriptor:
    """Load a scenario descriptor from a JSON file.

    Args:
        path: Path to the ``.json`` scenario file.

    Returns:
        The validated descriptor.

    Raises:
        ScenarioError: If the file cannot be read or is invalid.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        msg = f"Scenario file not found: {path}"
        raise ScenarioError(msg) from None
    except (OSError, ValueError) as exc:
        msg = f"Cannot load scenario {path}: {exc}"
        raise ScenarioError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Scenario {path} must contain a JSON object"
        raise ScenarioError(msg)
    return ScenarioDescriptor.from_dict(data)
