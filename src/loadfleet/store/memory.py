"""Thread-safe in-memory run state store."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from loadfleet._internal.errors import StoreError
from loadfleet.orchestration.models import Run, WorkerStatus
from loadfleet.store.base import RunStateStore, apply_run_status

if TYPE_CHECKING:
    from loadfleet.metrics.models import AggregateResult
    from loadfleet.orchestration.models import RunState


class InMemoryRunStore(RunStateStore):
    """Keeps runs in a dict guarded by a ``threading.Lock``.

    Runs are stored and returned as copies, so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    def _require(self, run_id: str) -> Run:
        try:
            return self._runs[run_id]
        except KeyError:
            msg = f"unknown run: {run_id}"
            raise StoreError(msg) from None

    def create_run(
        self, run_id: str, worker_ids: list[str] | tuple[str, ...], scenario: str = ""
    ) -> Run:
        """Create a run.

        Raises:
            StoreError: If the run already exists or the worker ids are invalid.
        """
        with self._lock:
            if run_id in self._runs:
                msg = f"run already exists: {run_id}"
                raise StoreError(msg)
            try:
                run = Run.create(run_id, worker_ids, scenario)
            except ValueError as exc:
                raise StoreError(str(exc)) from exc
            self._runs[run_id] = run
            return Run.from_dict(run.to_dict())

    def update_worker_status(self, run_id: str, task_id: str, status: WorkerStatus) -> None:
        """Replace one worker's status.

        Raises:
            StoreError: If the run or task is unknown.
        """
        with self._lock:
            run = self._require(run_id)
            if task_id not in run.workers:
                msg = f"unknown task {task_id} for run {run_id}"
                raise StoreError(msg)
            run.workers[task_id] = WorkerStatus.from_dict(status.to_dict())

    def set_run_status(
        self,
        run_id: str,
        status: RunState,
        aggregate_or_reason: AggregateResult | str | None = None,
        *,
        at: float | None = None,
    ) -> None:
        """Record a run-level transition."""
        with self._lock:
            apply_run_status(self._require(run_id), status, aggregate_or_reason, at)

    def get_run(self, run_id: str) -> Run:
        """Return a copy of the run."""
        with self._lock:
            return Run.from_dict(self._require(run_id).to_dict())

    def list_runs(self) -> list[str]:
        """Return every run identifier, sorted."""
        with self._lock:
            return sorted(self._runs)

    def __len__(self) -> int:
        """Return the number of stored runs."""
        with self._lock:
            return len(self._runs)
