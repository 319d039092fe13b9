"""Run State Store interface.

The controller is the only writer. It calls the store at every state
transition (wrapped in a bounded retry); external callers only read.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from loadfleet.metrics.models import AggregateResult
from loadfleet.orchestration.models import Run, RunState

if TYPE_CHECKING:
    from loadfleet.orchestration.models import WorkerStatus


class RunStateStore(ABC):
    """Durable record of runs and their per-worker status.

    Implementations raise :class:`~loadfleet._internal.errors.StoreError`
    for any persistence failure, including unknown run identifiers.
    """

    @abstractmethod
    def create_run(
        self, run_id: str, worker_ids: list[str] | tuple[str, ...], scenario: str = ""
    ) -> Run:
        """Create a PENDING run with one UNKNOWN worker status per id."""

    @abstractmethod
    def update_worker_status(self, run_id: str, task_id: str, status: WorkerStatus) -> None:
        """Replace the stored status of one worker."""

    @abstractmethod
    def set_run_status(
        self,
        run_id: str,
        status: RunState,
        aggregate_or_reason: AggregateResult | str | None = None,
        *,
        at: float | None = None,
    ) -> None:
        """Record a run-level transition.

        Args:
            run_id: Run identifier.
            status: New run state.
            aggregate_or_reason: AggregateResult for COMPLETE runs, the
                failure reason for FAILED / CANCELLED runs.
            at: Wall-clock time of the transition; stored as the start
                time for RUNNING and the end time for terminal states.
        """

    @abstractmethod
    def get_run(self, run_id: str) -> Run:
        """Return a snapshot of the run."""

    @abstractmethod
    def list_runs(self) -> list[str]:
        """Return every known run identifier, sorted."""


def apply_run_status(
    run: Run,
    status: RunState,
    aggregate_or_reason: AggregateResult | str | None,
    at: float | None,
) -> None:
    """Apply a :meth:`RunStateStore.set_run_status` call to *run* in place."""
    run.status = status
    if isinstance(aggregate_or_reason, AggregateResult):
        run.aggregate = aggregate_or_reason
    elif isinstance(aggregate_or_reason, str):
        run.failure_reason = aggregate_or_reason
    if at is not None:
        if status is RunState.RUNNING:
            run.start_time = at
        elif status.is_terminal:
            run.end_time = at
