"""Run controller: the single coordinating actor of a run.

One :class:`RunController` owns one :class:`~loadfleet.orchestration.models.Run`.
Everything that can change the run (transport messages, phase timers,
heartbeat checks, scheduler exit reports, external cancel requests) is
funnelled through a single inbox and handled one event at a time, so
worker status transitions never race and no locks are needed.

State machine::

    PENDING --all N ready--> BARRIER_RELEASED --Start sent--> RUNNING
    PENDING --Failed / ready timeout--> FAILED
    RUNNING --all FINISHED--> COMPLETE
    RUNNING --any Failed--> FAILED            (Cancel broadcast once)
    PENDING|RUNNING --cancel / max duration--> CANCELLING --> CANCELLED

Duplicate and late messages are harmless: every transition first checks
the worker's current state and is skipped when it does not match.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loadfleet._internal.config import LoadFleetConfig
from loadfleet._internal.errors import (
    AggregationError,
    HeartbeatLoss,
    StoreError,
    TransportError,
)
from loadfleet._internal.logging import get_logger, run_logger
from loadfleet._internal.retry import retry_async
from loadfleet.metrics.aggregator import aggregate
from loadfleet.metrics.models import AggregateResult
from loadfleet.orchestration.models import Run, RunState, WorkerState
from loadfleet.transport.protocol import (
    CONTROLLER_ID,
    MESSAGE_TYPES,
    Cancel,
    Failed,
    Finished,
    Heartbeat,
    Hello,
    Progress,
    Ready,
    Start,
    control_topic,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadfleet.orchestration.models import WorkerStatus
    from loadfleet.store.base import RunStateStore
    from loadfleet.transport.base import Subscription, Transport
    from loadfleet.transport.protocol import ControlMessage

logger = get_logger("orchestration.controller")

REASON_READY_TIMEOUT = "ready-timeout"
REASON_MAX_DURATION = "max-duration-exceeded"
REASON_TRANSPORT = "transport"
REASON_CANCEL_REQUESTED = "cancel-requested"

_ACTIVE_WORKER_STATES = (WorkerState.RUNNING, WorkerState.UNRESPONSIVE)


# Internal events delivered through the same inbox as transport messages.


@dataclass(frozen=True)
class PhaseTimeout:
    """A phase timer fired: ``ready``, ``run`` or ``cancel``."""

    phase: str


@dataclass(frozen=True)
class CancelRequest:
    """Cancellation requested by the process hosting the controller."""

    reason: str = REASON_CANCEL_REQUESTED


@dataclass(frozen=True)
class TaskExited:
    """The scheduler saw a worker task exit."""

    task_id: str
    exit_code: int | None


@dataclass(frozen=True)
class HeartbeatCheck:
    """Periodic liveness sweep."""


@dataclass(frozen=True)
class TransportLost:
    """The control subscription closed while the run was live."""


ControllerEvent = PhaseTimeout | CancelRequest | TaskExited | HeartbeatCheck | TransportLost


class RunController:
    """Drives one run from PENDING to a terminal state.

    The in-memory :attr:`run` is authoritative for control flow; the store
    receives every transition (with bounded retries) so that external
    callers can observe the run.

    Attributes:
        run: The run record this controller owns.
    """

    def __init__(
        self,
        run_id: str,
        worker_ids: list[str] | tuple[str, ...],
        transport: Transport,
        store: RunStateStore,
        *,
        scenario: str = "",
        scenario_duration: float | None = None,
        config: LoadFleetConfig | None = None,
        start_delay: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the controller.

        Args:
            run_id: Run identifier.
            worker_ids: The fixed set of expected task identifiers.
            transport: Control-plane transport.
            store: Run state store.
            scenario: Scenario reference recorded on the run.
            scenario_duration: Declared test duration, used for the default
                global run-duration limit.
            config: Timeouts and retry settings; defaults apply if omitted.
            start_delay: Seconds between the barrier release and the
                synchronized ``start_at`` given to workers. 0 means now.
            clock: Monotonic clock used for heartbeat tracking.

        Raises:
            ValueError: If *worker_ids* is empty or has duplicates.
        """
        self.run = Run.create(run_id, worker_ids, scenario)
        self._transport = transport
        self._store = store
        self._config = config or LoadFleetConfig()
        self._run_deadline = (
            self._config.run_deadline(scenario_duration)
            if scenario_duration is not None
            else self._config.max_duration
        )
        self._start_delay = start_delay
        self._clock = clock
        self._topic = control_topic(run_id)
        self._log = run_logger(logger, run_id, CONTROLLER_ID)

        self._inbox: asyncio.Queue[ControlMessage | ControllerEvent] = asyncio.Queue()
        self._done = asyncio.Event()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._last_seen: dict[str, float] = {}
        self._start_sent = False
        self._cancel_sent = False
        self._opened = False
        self._subscription: Subscription | None = None

        self._handlers: dict[type, Callable[[Any], Any]] = {
            Hello: self._on_hello,
            Ready: self._on_ready,
            Start: self._on_start,
            Progress: self._on_progress,
            Heartbeat: self._on_heartbeat,
            Finished: self._on_finished,
            Failed: self._on_failed,
            Cancel: self._on_cancel,
            PhaseTimeout: self._on_timeout,
            CancelRequest: self._on_cancel_request,
            TaskExited: self._on_task_exited,
            HeartbeatCheck: self._on_heartbeat_check,
            TransportLost: self._on_transport_lost,
        }
        missing = set(MESSAGE_TYPES.values()) - set(self._handlers)
        if missing:
            msg = f"controller has no handler for {sorted(c.kind for c in missing)}"
            raise TypeError(msg)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        """Return the current run state."""
        return self.run.status

    @property
    def done(self) -> bool:
        """Return True once the run reached a terminal state."""
        return self._done.is_set()

    async def run_until_complete(self) -> Run:
        """Coordinate the run to a terminal state and return it."""
        await self.open()
        if self._subscription is None:
            return self.run

        pump = asyncio.create_task(
            self._pump(self._subscription), name="controller-pump"
        )
        watchdog = asyncio.create_task(self._watchdog(), name="controller-watchdog")
        try:
            while not self._done.is_set():
                await self.handle(await self._inbox.get())
        finally:
            self._subscription.close()
            for task in (pump, watchdog):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._cancel_timers()
        return self.run

    async def open(self) -> None:
        """Create the run, subscribe to its topic and arm the readiness timer.

        Idempotent. Once this returns the controller receives every message
        published on the run topic, so workers may be launched. Tests that
        drive :meth:`handle` directly call it themselves.
        """
        if self._opened:
            return
        self._opened = True
        self._log.info(
            "Run created: scenario=%s workers=%d ready_timeout=%.1fs",
            self.run.scenario or "-",
            self.run.expected_workers,
            self._config.ready_timeout,
        )
        await self._persist(
            self._store.create_run,
            self.run.run_id,
            self.run.worker_ids,
            self.run.scenario,
            description="create run",
        )
        try:
            self._subscription = await self._retry(
                self._transport.subscribe, self._topic, description="subscribe"
            )
        except TransportError as exc:
            self._log.error("Cannot subscribe to %s: %s", self._topic, exc)
            await self._finalize(RunState.FAILED, REASON_TRANSPORT)
            return
        self._arm_timer("ready", self._config.ready_timeout)

    def request_cancel(self, reason: str = REASON_CANCEL_REQUESTED) -> None:
        """Ask the controller to cancel the run. Safe to call repeatedly."""
        self._inbox.put_nowait(CancelRequest(reason))

    def report_task_exit(self, task_id: str, exit_code: int | None) -> None:
        """Report a worker task exit observed by the scheduler.

        A task that exits without having sent ``Finished`` or ``Failed`` is
        treated as an implicit ``Failed``.
        """
        self._inbox.put_nowait(TaskExited(task_id, exit_code))

    async def wait(self) -> Run:
        """Wait until the run is terminal and return it."""
        await self._done.wait()
        return self.run

    async def handle(self, event: ControlMessage | ControllerEvent) -> None:
        """Apply one message or event to the state machine."""
        if self._done.is_set():
            return
        if isinstance(event, tuple(MESSAGE_TYPES.values())):
            if not self._accepts(event):  # type: ignore[arg-type]
                return
            self._touch(event)  # type: ignore[arg-type]
        await self._handlers[type(event)](event)

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _on_hello(self, message: Hello) -> None:
        self._log.info("%s registered", message.task_id)

    async def _on_ready(self, message: Ready) -> None:
        worker = self.run.workers[message.task_id]
        if self.run.status is not RunState.PENDING or worker.state is not WorkerState.UNKNOWN:
            self._log.debug(
                "Ignoring Ready from %s (%s)", message.task_id, worker.state.name
            )
            return
        await self._set_worker(worker, WorkerState.READY)
        ready = self.run.count(WorkerState.READY)
        self._log.info(
            "%s ready (%d/%d)", message.task_id, ready, self.run.expected_workers
        )
        if ready == self.run.expected_workers:
            await self._release_barrier()

    async def _on_start(self, message: Start) -> None:
        self._log.warning("Ignoring Start sent by %s", message.task_id)

    async def _on_progress(self, message: Progress) -> None:
        worker = self.run.workers[message.task_id]
        if worker.state not in _ACTIVE_WORKER_STATES:
            self._log.debug(
                "Ignoring Progress from %s (%s)", message.task_id, worker.state.name
            )
            return
        worker.partial_metrics = message.metrics
        await self._set_worker(worker, WorkerState.RUNNING)

    async def _on_heartbeat(self, message: Heartbeat) -> None:
        worker = self.run.workers[message.task_id]
        if worker.state is WorkerState.UNRESPONSIVE:
            self._log.info("%s is responsive again", message.task_id)
            await self._set_worker(worker, WorkerState.RUNNING)

    async def _on_finished(self, message: Finished) -> None:
        worker = self.run.workers[message.task_id]
        if worker.state not in _ACTIVE_WORKER_STATES:
            self._log.debug(
                "Ignoring Finished from %s (%s)", message.task_id, worker.state.name
            )
            return
        worker.final_metrics = message.metrics
        worker.partial = message.partial
        await self._set_worker(worker, WorkerState.FINISHED)
        self._log.info(
            "%s finished: requests=%d errors=%d%s",
            message.task_id,
            message.metrics.requests,
            message.metrics.errors,
            " (partial)" if message.partial else "",
        )

        if self.run.status is RunState.RUNNING:
            if self.run.count(WorkerState.FINISHED) == self.run.expected_workers:
                await self._complete()
        elif self.run.status is RunState.CANCELLING:
            await self._maybe_finish_cancel()

    async def _on_failed(self, message: Failed) -> None:
        await self._worker_failed(message.task_id, message.reason)

    async def _on_cancel(self, message: Cancel) -> None:
        reason = message.reason or f"cancelled by {message.task_id}"
        await self._begin_cancel(reason)

    # ------------------------------------------------------------------
    # Internal event handlers
    # ------------------------------------------------------------------

    async def _on_timeout(self, event: PhaseTimeout) -> None:
        self._timers.pop(event.phase, None)
        if event.phase == "ready" and self.run.status is RunState.PENDING:
            self._log.error(
                "Readiness timeout: %d/%d workers ready",
                self.run.count(WorkerState.READY),
                self.run.expected_workers,
            )
            await self._fail(REASON_READY_TIMEOUT)
        elif event.phase == "run" and self.run.status is RunState.RUNNING:
            self._log.error("Run exceeded %.1fs, cancelling", self._run_deadline or 0.0)
            await self._begin_cancel(REASON_MAX_DURATION)
        elif event.phase == "cancel" and self.run.status is RunState.CANCELLING:
            pending = [
                w.task_id for w in self.run.workers.values() if not w.state.is_terminal
            ]
            self._log.warning("Cancel wait expired; still pending: %s", pending)
            await self._finalize(RunState.CANCELLED, self.run.failure_reason)

    async def _on_cancel_request(self, event: CancelRequest) -> None:
        await self._begin_cancel(event.reason)

    async def _on_task_exited(self, event: TaskExited) -> None:
        worker = self.run.workers.get(event.task_id)
        if worker is None:
            self._log.warning("Exit reported for unknown task %s", event.task_id)
            return
        if worker.state.is_terminal:
            return
        await self._worker_failed(
            event.task_id, f"task exited with code {event.exit_code}"
        )

    async def _on_heartbeat_check(self, event: HeartbeatCheck) -> None:
        if self.run.status not in (RunState.RUNNING, RunState.CANCELLING):
            return
        now = self._clock()
        limit = self._config.heartbeat_timeout
        for worker in self.run.workers.values():
            if worker.state is not WorkerState.RUNNING:
                continue
            silent_for = now - self._last_seen.get(worker.task_id, now)
            if silent_for > limit:
                self._log.warning("%s", HeartbeatLoss(worker.task_id, silent_for))
                await self._set_worker(worker, WorkerState.UNRESPONSIVE)

    async def _on_transport_lost(self, event: TransportLost) -> None:
        self._log.error("Control subscription lost")
        await self._finalize(RunState.FAILED, REASON_TRANSPORT)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _release_barrier(self) -> None:
        self._cancel_timer("ready")
        await self._set_run_status(RunState.BARRIER_RELEASED)

        if not self._start_sent:
            self._start_sent = True
            start_at = time.time() + self._start_delay if self._start_delay > 0 else None
            try:
                await self._broadcast(
                    Start(self.run.run_id, CONTROLLER_ID, start_at=start_at)
                )
            except TransportError:
                await self._finalize(RunState.FAILED, REASON_TRANSPORT)
                return

        now = self._clock()
        for worker in self.run.workers.values():
            self._last_seen[worker.task_id] = now
            await self._set_worker(worker, WorkerState.RUNNING)
        self.run.start_time = time.time()
        await self._set_run_status(RunState.RUNNING, at=self.run.start_time)
        if self._run_deadline is not None:
            self._arm_timer("run", self._run_deadline)
        self._log.info("Barrier released, %d workers running", self.run.expected_workers)

    async def _worker_failed(self, task_id: str, reason: str) -> None:
        worker = self.run.workers[task_id]
        if worker.state.is_terminal:
            self._log.debug("Ignoring failure of %s (%s)", task_id, worker.state.name)
            return
        worker.failure_reason = reason
        await self._set_worker(worker, WorkerState.FAILED)
        self._log.error("%s failed: %s", task_id, reason)

        if self.run.status is RunState.CANCELLING:
            await self._maybe_finish_cancel()
        else:
            await self._fail(reason)

    async def _fail(self, reason: str) -> None:
        """Fail fast: tell every worker to stop, then finalize as FAILED."""
        if self.run.status.is_terminal:
            return
        try:
            await self._send_cancel(reason)
        except TransportError:
            self._log.error("Cancel broadcast failed while failing the run")
        await self._finalize(RunState.FAILED, reason)

    async def _begin_cancel(self, reason: str) -> None:
        if self.run.status.is_terminal or self.run.status is RunState.CANCELLING:
            self._log.debug("Ignoring cancel in %s", self.run.status.name)
            return
        self._log.info("Cancelling run: %s", reason)
        self._cancel_timer("ready")
        self._cancel_timer("run")
        self.run.failure_reason = reason
        await self._set_run_status(RunState.CANCELLING, reason)
        try:
            await self._send_cancel(reason)
        except TransportError:
            await self._finalize(RunState.FAILED, REASON_TRANSPORT)
            return
        self._arm_timer("cancel", self._config.cancel_timeout)
        await self._maybe_finish_cancel()

    async def _maybe_finish_cancel(self) -> None:
        if all(w.state.is_terminal for w in self.run.workers.values()):
            await self._finalize(RunState.CANCELLED, self.run.failure_reason)

    async def _complete(self) -> None:
        try:
            result = aggregate(self.run.workers.values())
        except AggregationError as exc:
            self._log.error("Aggregation failed: %s", exc)
            await self._fail(f"aggregation: {exc}")
            return
        await self._finalize(RunState.COMPLETE, result)

    async def _finalize(
        self, status: RunState, aggregate_or_reason: AggregateResult | str | None
    ) -> None:
        if self.run.status.is_terminal:
            return
        self._cancel_timers()
        self.run.status = status
        self.run.end_time = time.time()
        if isinstance(aggregate_or_reason, AggregateResult):
            self.run.aggregate = aggregate_or_reason
            self._log.info(
                "Run COMPLETE: requests=%d errors=%d rps=%.1f p99=%.1fms",
                aggregate_or_reason.total_requests,
                aggregate_or_reason.total_errors,
                aggregate_or_reason.requests_per_second,
                aggregate_or_reason.latency_p99,
            )
        else:
            if self.run.failure_reason is None:
                self.run.failure_reason = aggregate_or_reason
            self._log.info("Run %s: %s", status.name, self.run.failure_reason)
        await self._persist(
            self._store.set_run_status,
            self.run.run_id,
            status,
            self.run.aggregate if status is RunState.COMPLETE else self.run.failure_reason,
            at=self.run.end_time,
            description=f"set status {status.name}",
        )
        self._done.set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accepts(self, message: ControlMessage) -> bool:
        if message.run_id != self.run.run_id:
            self._log.debug("Ignoring %s for run %s", message.kind, message.run_id)
            return False
        if message.task_id == CONTROLLER_ID:
            return False
        if isinstance(message, Cancel):
            return True
        if message.task_id not in self.run.workers:
            self._log.warning(
                "Ignoring %s from unexpected task %s", message.kind, message.task_id
            )
            return False
        return True

    def _touch(self, message: ControlMessage) -> None:
        if message.task_id in self.run.workers:
            self._last_seen[message.task_id] = self._clock()
            self.run.workers[message.task_id].last_heartbeat = message.sent_at

    async def _send_cancel(self, reason: str) -> None:
        if self._cancel_sent:
            return
        self._cancel_sent = True
        await self._broadcast(Cancel(self.run.run_id, CONTROLLER_ID, reason=reason))

    async def _broadcast(self, message: ControlMessage) -> None:
        self._log.info("Broadcasting %s", message.kind)
        await self._retry(
            self._transport.publish,
            self._topic,
            message,
            description=f"broadcast {message.kind}",
        )

    async def _set_worker(self, worker: WorkerStatus, state: WorkerState) -> None:
        worker.state = state
        await self._persist(
            self._store.update_worker_status,
            self.run.run_id,
            worker.task_id,
            worker,
            description=f"update {worker.task_id}",
        )

    async def _set_run_status(
        self, status: RunState, reason: str | None = None, *, at: float | None = None
    ) -> None:
        self._log.info("%s -> %s", self.run.status.name, status.name)
        self.run.status = status
        await self._persist(
            self._store.set_run_status,
            self.run.run_id,
            status,
            reason,
            at=at,
            description=f"set status {status.name}",
        )

    async def _persist(
        self, func: Callable[..., Any], *args: Any, description: str, **kwargs: Any
    ) -> None:
        try:
            await retry_async(
                func,
                *args,
                attempts=self._config.retry_attempts,
                base_delay=self._config.retry_base_delay,
                retry_on=(StoreError,),
                description=description,
                **kwargs,
            )
        except StoreError as exc:
            self._log.error("Store unavailable, continuing in memory: %s", exc)

    async def _retry(self, func: Callable[..., Any], *args: Any, description: str) -> Any:
        return await retry_async(
            func,
            *args,
            attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
            retry_on=(TransportError,),
            description=description,
        )

    def _arm_timer(self, phase: str, delay: float) -> None:
        self._cancel_timer(phase)
        loop = asyncio.get_running_loop()
        self._timers[phase] = loop.call_later(
            delay, self._inbox.put_nowait, PhaseTimeout(phase)
        )

    def _cancel_timer(self, phase: str) -> None:
        handle = self._timers.pop(phase, None)
        if handle is not None:
            handle.cancel()

    def _cancel_timers(self) -> None:
        for phase in list(self._timers):
            self._cancel_timer(phase)

    async def _pump(self, subscription: Subscription) -> None:
        async for message in subscription:
            self._inbox.put_nowait(message)
        if not self._done.is_set():
            self._inbox.put_nowait(TransportLost())

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            self._inbox.put_nowait(HeartbeatCheck())
