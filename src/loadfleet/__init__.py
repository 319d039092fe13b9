"""LoadFleet: orchestrate distributed load tests across a fleet of workers."""

from __future__ import annotations

from loadfleet.metrics.models import AggregateResult, WorkerMetrics
from loadfleet.orchestration.controller import RunController
from loadfleet.orchestration.fleet import LocalFleet
from loadfleet.orchestration.models import Run, RunState, WorkerState, WorkerStatus
from loadfleet.orchestration.scenario import ScenarioDescriptor, load_scenario
from loadfleet.orchestration.worker import WorkerAgent

__version__ = "0.1.0"

__all__ = [
    "AggregateResult",
    "LocalFleet",
    "Run",
    "RunController",
    "RunState",
    "ScenarioDescriptor",
    "WorkerAgent",
    "WorkerMetrics",
    "WorkerState",
    "WorkerStatus",
    "load_scenario",
]
