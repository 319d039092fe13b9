"""Run state store keeping one JSON document per run in a directory.

Each write replaces ``<directory>/<run_id>.json`` atomically (write to a
temporary file, then ``os.replace``), so a reader never sees a torn
document. This is the file-system stand-in for a blob store keyed by run
identifier.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from loadfleet._internal.errors import StoreError
from loadfleet._internal.logging import get_logger
from loadfleet.orchestration.models import Run
from loadfleet.store.base import RunStateStore, apply_run_status

if TYPE_CHECKING:
    from loadfleet.metrics.models import AggregateResult
    from loadfleet.orchestration.models import RunState, WorkerStatus

logger = get_logger("store.json_file")


class JsonFileRunStore(RunStateStore):
    """File-backed store; safe for one writer and any number of readers.

    Attributes:
        directory: Directory holding the run documents.
    """

    def __init__(self, directory: str | Path) -> None:
        """Initialize the store, creating *directory* if needed.

        Raises:
            StoreError: If the directory cannot be created.
        """
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"cannot create store directory {self.directory}: {exc}"
            raise StoreError(msg) from exc
        self._lock = threading.Lock()

    def _path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id.startswith("."):
            msg = f"invalid run id: {run_id!r}"
            raise StoreError(msg)
        return self.directory / f"{run_id}.json"

    def _load(self, run_id: str) -> Run:
        path = self._path(run_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            msg = f"unknown run: {run_id}"
            raise StoreError(msg) from None
        except (OSError, ValueError) as exc:
            msg = f"cannot read {path}: {exc}"
            raise StoreError(msg) from exc
        try:
            return Run.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            msg = f"corrupt run document {path}: {exc}"
            raise StoreError(msg) from exc

    def _save(self, run: Run) -> None:
        path = self._path(run.run_id)
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=f".{run.run_id}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(run.to_dict(), fh, indent=2)
            os.replace(tmp_name, path)
        except OSError as exc:
            msg = f"cannot write {path}: {exc}"
            raise StoreError(msg) from exc
        logger.debug("Saved run %s (%s)", run.run_id, run.status.name)

    def create_run(
        self, run_id: str, worker_ids: list[str] | tuple[str, ...], scenario: str = ""
    ) -> Run:
        """Create and persist a run.

        Raises:
            StoreError: If the run already exists or cannot be written.
        """
        with self._lock:
            if self._path(run_id).exists():
                msg = f"run already exists: {run_id}"
                raise StoreError(msg)
            try:
                run = Run.create(run_id, worker_ids, scenario)
            except ValueError as exc:
                raise StoreError(str(exc)) from exc
            self._save(run)
            return run

    def update_worker_status(self, run_id: str, task_id: str, status: WorkerStatus) -> None:
        """Replace one worker's status in the run document."""
        with self._lock:
            run = self._load(run_id)
            if task_id not in run.workers:
                msg = f"unknown task {task_id} for run {run_id}"
                raise StoreError(msg)
            run.workers[task_id] = status
            self._save(run)

    def set_run_status(
        self,
        run_id: str,
        status: RunState,
        aggregate_or_reason: AggregateResult | str | None = None,
        *,
        at: float | None = None,
    ) -> None:
        """Record a run-level transition in the run document."""
        with self._lock:
            run = self._load(run_id)
            apply_run_status(run, status, aggregate_or_reason, at)
            self._save(run)

    def get_run(self, run_id: str) -> Run:
        """Load the run document."""
        with self._lock:
            return self._load(run_id)

    def list_runs(self) -> list[str]:
        """Return the identifiers of every run document, sorted."""
        return sorted(p.stem for p in self.directory.glob("*.json"))
