"""Run and per-worker status records owned by the controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from loadfleet.metrics.models import AggregateResult, WorkerMetrics


class RunState(Enum):
    """Lifecycle of a run.

    PENDING -> BARRIER_RELEASED -> RUNNING -> COMPLETE
                                           -> FAILED
                                           -> CANCELLING -> CANCELLED
    PENDING -> FAILED | CANCELLING
    """

    PENDING = auto()
    BARRIER_RELEASED = auto()
    RUNNING = auto()
    CANCELLING = auto()
    COMPLETE = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        """Return True for COMPLETE, FAILED and CANCELLED."""
        return self in _TERMINAL_RUN_STATES


_TERMINAL_RUN_STATES = frozenset(
    {RunState.COMPLETE, RunState.FAILED, RunState.CANCELLED}
)


class WorkerState(Enum):
    """Lifecycle of one worker as seen by the controller."""

    UNKNOWN = auto()
    READY = auto()
    RUNNING = auto()
    FINISHED = auto()
    FAILED = auto()
    UNRESPONSIVE = auto()

    @property
    def is_terminal(self) -> bool:
        """Return True for FINISHED and FAILED."""
        return self in (WorkerState.FINISHED, WorkerState.FAILED)


@dataclass
class WorkerStatus:
    """Controller-side record of one expected worker.

    Attributes:
        task_id: Task identifier, fixed at run creation.
        state: Current lifecycle state.
        last_heartbeat: Wall-clock time of the last message from the worker.
        partial_metrics: Latest ``Progress`` snapshot.
        final_metrics: Metrics from ``Finished``; present only when FINISHED.
        partial: True if the final metrics cover a cancelled engine.
        failure_reason: Reason from ``Failed`` or an implicit task exit.
    """

    task_id: str
    state: WorkerState = WorkerState.UNKNOWN
    last_heartbeat: float | None = None
    partial_metrics: WorkerMetrics | None = None
    final_metrics: WorkerMetrics | None = None
    partial: bool = False
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict."""
        return {
            "task_id": self.task_id,
            "state": self.state.name,
            "last_heartbeat": self.last_heartbeat,
            "partial_metrics": (
                self.partial_metrics.to_dict() if self.partial_metrics else None
            ),
            "final_metrics": (
                self.final_metrics.to_dict() if self.final_metrics else None
            ),
            "partial": self.partial,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerStatus:
        """Build a status record from :meth:`to_dict` output."""
        partial_metrics = data.get("partial_metrics")
        final_metrics = data.get("final_metrics")
        return cls(
            task_id=str(data["task_id"]),
            state=WorkerState[data.get("state", "UNKNOWN")],
            last_heartbeat=data.get("last_heartbeat"),
            partial_metrics=(
                WorkerMetrics.from_dict(partial_metrics) if partial_metrics else None
            ),
            final_metrics=(
                WorkerMetrics.from_dict(final_metrics) if final_metrics else None
            ),
            partial=bool(data.get("partial", False)),
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class Run:
    """One logical test execution across a fleet of workers.

    The set of ``worker_ids`` is fixed when the run is created and there is
    exactly one :class:`WorkerStatus` per id.

    Attributes:
        run_id: Unique run identifier.
        scenario: Scenario reference (name).
        worker_ids: Expected task identifiers, in declaration order.
        status: Current run state.
        start_time: Wall-clock time the start barrier was released.
        end_time: Wall-clock time the run reached a terminal state.
        aggregate: Merged result, set only when COMPLETE.
        failure_reason: First failure cause for FAILED / CANCELLED runs.
        workers: Per-task status keyed by task id.
    """

    run_id: str
    scenario: str
    worker_ids: tuple[str, ...]
    status: RunState = RunState.PENDING
    start_time: float | None = None
    end_time: float | None = None
    aggregate: AggregateResult | None = None
    failure_reason: str | None = None
    workers: dict[str, WorkerStatus] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        run_id: str,
        worker_ids: list[str] | tuple[str, ...],
        scenario: str = "",
    ) -> Run:
        """Create a PENDING run with one UNKNOWN status per worker.

        Raises:
            ValueError: If *worker_ids* is empty or contains duplicates.
        """
        ids = tuple(worker_ids)
        if not ids:
            msg = "a run needs at least one worker"
            raise ValueError(msg)
        if len(set(ids)) != len(ids):
            msg = f"duplicate worker ids: {sorted(ids)}"
            raise ValueError(msg)
        return cls(
            run_id=run_id,
            scenario=scenario,
            worker_ids=ids,
            workers={task_id: WorkerStatus(task_id=task_id) for task_id in ids},
        )

    @property
    def expected_workers(self) -> int:
        """Return the declared worker count N."""
        return len(self.worker_ids)

    def count(self, state: WorkerState) -> int:
        """Return how many workers are currently in *state*."""
        return sum(1 for w in self.workers.values() if w.state is state)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict."""
        return {
            "run_id": self.run_id,
            "scenario": self.scenario,
            "worker_ids": list(self.worker_ids),
            "status": self.status.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "aggregate": self.aggregate.to_dict() if self.aggregate else None,
            "failure_reason": self.failure_reason,
            "workers": {k: v.to_dict() for k, v in self.workers.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        """Build a run from :meth:`to_dict` output."""
        aggregate = data.get("aggregate")
        worker_ids = tuple(str(w) for w in data["worker_ids"])
        workers = {
            str(k): WorkerStatus.from_dict(v)
            for k, v in dict(data.get("workers", {})).items()
        }
        for task_id in worker_ids:
            workers.setdefault(task_id, WorkerStatus(task_id=task_id))
        return cls(
            run_id=str(data["run_id"]),
            scenario=str(data.get("scenario", "")),
            worker_ids=worker_ids,
            status=RunState[data.get("status", "PENDING")],
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            aggregate=AggregateResult.from_dict(aggregate) if aggregate else None,
            failure_reason=data.get("failure_reason"),
            workers=workers,
        )
