"""Worker agent: one per distributed task.

Lifecycle::

    subscribe -> Hello -> setup -> Ready -> wait for Start -> spawn engine
              -> Progress / Heartbeat every interval -> Finished | Failed

A ``Cancel`` for the run at any point stops the agent; if the engine is
running it is terminated (SIGTERM, then SIGKILL after the grace period)
and whatever it produced is reported.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import tempfile
import time
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loadfleet._internal.config import LoadFleetConfig
from loadfleet._internal.errors import (
    EngineFailure,
    ScenarioError,
    SetupError,
    StartTimeoutError,
    TransportError,
)
from loadfleet._internal.logging import get_logger, run_logger
from loadfleet._internal.retry import retry_async
from loadfleet.metrics.parser import EngineOutputParser
from loadfleet.orchestration.engine import EngineProcess, check_exit
from loadfleet.transport.protocol import (
    CONTROLLER_ID,
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

    from loadfleet.orchestration.scenario import ScenarioDescriptor
    from loadfleet.transport.base import Subscription, Transport
    from loadfleet.transport.protocol import ControlMessage

logger = get_logger("orchestration.worker")

REASON_SETUP = "setup"
REASON_START_TIMEOUT = "start-timeout"
REASON_CANCELLED = "cancelled"
REASON_OVERRUN = "engine-overrun"
REASON_SUPERVISION = "engine-supervision"


class AgentState(Enum):
    """Local execution state of a worker agent."""

    CREATED = auto()
    WAITING = auto()
    RUNNING = auto()
    STOPPING = auto()
    DONE = auto()


class WorkerAgent:
    """Runs one share of a load test and reports to the controller.

    Attributes:
        run_id: Run this agent belongs to.
        task_id: This agent's task identifier.
        scenario: Scenario to execute.
    """

    def __init__(
        self,
        run_id: str,
        task_id: str,
        scenario: ScenarioDescriptor,
        transport: Transport,
        *,
        config: LoadFleetConfig | None = None,
        work_dir: str | Path | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            run_id: Run identifier.
            task_id: Task identifier of this worker.
            scenario: Scenario descriptor (engine command, target, duration).
            transport: Control-plane transport.
            config: Timing and retry settings; defaults apply if omitted.
            work_dir: Directory for the materialized configuration; a
                temporary directory is created and removed if omitted.
        """
        self.run_id = run_id
        self.task_id = task_id
        self.scenario = scenario
        self._transport = transport
        self._config = config or LoadFleetConfig()
        self._work_dir = Path(work_dir).resolve() if work_dir is not None else None
        self._topic = control_topic(run_id)
        self._log = run_logger(logger, run_id, task_id)

        self._state = AgentState.CREATED
        self._subscription: Subscription | None = None
        self._engine: EngineProcess | None = None
        self._config_path: Path | None = None
        self._spawn_count = 0

    @property
    def state(self) -> AgentState:
        """Return the agent's local state."""
        return self._state

    @property
    def engine(self) -> EngineProcess | None:
        """Return the engine supervisor once the engine has been spawned."""
        return self._engine

    @property
    def spawn_count(self) -> int:
        """Return how many engine subprocesses this agent has spawned."""
        return self._spawn_count

    async def run(self) -> Finished | Failed:
        """Execute the full worker lifecycle.

        Returns:
            The terminal message that was published.

        Raises:
            TransportError: If the control channel is unusable, even after
                retries, so the outcome could not be reported.
        """
        self._subscription = await self._retry(
            self._transport.subscribe, self._topic, description="subscribe"
        )
        own_dir = self._work_dir is None
        work_dir = self._work_dir or Path(
            tempfile.mkdtemp(prefix=f"loadfleet-{self.task_id}-")
        )
        try:
            await self._publish(Hello(self.run_id, self.task_id))

            try:
                argv = self._prepare(work_dir)
            except SetupError as exc:
                self._log.error("Setup failed: %s", exc)
                return await self._conclude(
                    Failed(self.run_id, self.task_id, reason=REASON_SETUP)
                )

            await self._publish(Ready(self.run_id, self.task_id))
            self._state = AgentState.WAITING

            try:
                signal = await self._await_start()
            except StartTimeoutError as exc:
                self._log.error("%s", exc)
                return await self._conclude(
                    Failed(self.run_id, self.task_id, reason=REASON_START_TIMEOUT)
                )
            if isinstance(signal, Cancel):
                self._log.info("Cancelled before start: %s", signal.reason)
                return await self._conclude(
                    Failed(self.run_id, self.task_id, reason=REASON_CANCELLED)
                )

            return await self._conclude(await self._run_engine(argv))
        finally:
            self._subscription.close()
            if own_dir:
                shutil.rmtree(work_dir, ignore_errors=True)

    def _prepare(self, work_dir: Path) -> list[str]:
        """Check the engine binary and materialize the scenario config.

        Returns:
            The rendered engine argv.

        Raises:
            SetupError: If the engine is missing or the config cannot be written.
        """
        executable = self.scenario.command[0]
        if shutil.which(executable) is None:
            msg = f"engine executable not found: {executable!r}"
            raise SetupError(msg)

        config_path = work_dir / "scenario.json"
        document = {
            **self.scenario.to_dict(),
            "run_id": self.run_id,
            "task_id": self.task_id,
        }
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            config_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        except OSError as exc:
            msg = f"cannot write {config_path}: {exc}"
            raise SetupError(msg) from exc

        try:
            argv = self.scenario.render_command(config_path)
        except ScenarioError as exc:
            raise SetupError(str(exc)) from exc
        self._config_path = config_path
        return argv

    async def _await_start(self) -> Start | Cancel:
        """Block until Start or Cancel arrives.

        Returns:
            The Start or Cancel message.

        Raises:
            StartTimeoutError: If neither arrives within the start timeout.
        """
        deadline = time.monotonic() + self._config.start_timeout
        while True:
            remaining = deadline - time.monotonic()
            message = (
                await self._next_message(timeout=remaining) if remaining > 0 else None
            )
            if message is None:
                msg = f"no Start within {self._config.start_timeout:.1f}s"
                raise StartTimeoutError(msg)
            if isinstance(message, Start):
                signal = await self._wait_until(message.start_at)
                return signal if signal is not None else message
            if isinstance(message, Cancel):
                return message

    async def _wait_until(self, start_at: float | None) -> Cancel | None:
        """Sleep until the wall-clock *start_at*, returning early on Cancel."""
        if start_at is None:
            return None
        while True:
            delay = start_at - time.time()
            if delay <= 0:
                return None
            message = await self._next_message(timeout=delay)
            if isinstance(message, Cancel):
                return message

    async def _next_message(self, timeout: float | None = None) -> ControlMessage | None:
        """Return the next message relevant to this agent.

        Messages for other runs, from this agent itself, and worker chatter
        from peers are skipped.

        Returns:
            The message, or None on timeout.

        Raises:
            TransportError: If the subscription was closed underneath us.
        """
        assert self._subscription is not None
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            try:
                message = await self._subscription.get(timeout=remaining)
            except TimeoutError:
                return None
            if message is None:
                msg = f"subscription to {self._topic} closed"
                raise TransportError(msg)
            if message.run_id != self.run_id:
                self._log.debug("Ignoring %s for run %s", message.kind, message.run_id)
                continue
            if message.task_id == self.task_id:
                continue
            if isinstance(message, Start) and message.task_id == CONTROLLER_ID:
                return message
            if isinstance(message, Cancel):
                return message

    async def _run_engine(self, argv: list[str]) -> Finished | Failed:
        """Spawn the engine and supervise it until exit or cancellation."""
        parser = EngineOutputParser()
        self._engine = engine = EngineProcess(
            argv,
            env={
                "LOADFLEET_RUN_ID": self.run_id,
                "LOADFLEET_TASK_ID": self.task_id,
                "LOADFLEET_TARGET": self.scenario.target,
                "LOADFLEET_DURATION": str(self.scenario.duration_seconds),
                "LOADFLEET_CONFIG": str(self._config_path),
                **self.scenario.env,
            },
            on_line=parser.feed,
            on_dropped=parser.skip_line,
        )
        self._spawn_count += 1
        try:
            await engine.spawn()
        except SetupError as exc:
            self._log.error("%s", exc)
            return Failed(self.run_id, self.task_id, reason=REASON_SETUP)

        self._state = AgentState.RUNNING
        started = time.monotonic()
        overrun_at = started + self.scenario.duration_seconds + self._config.kill_grace
        interval = self._config.heartbeat_interval
        next_tick = started + interval

        exit_task = asyncio.create_task(engine.wait(), name=f"{self.task_id}-engine")
        cancel_task: asyncio.Future[Cancel | None] = asyncio.create_task(
            self._await_cancel(), name=f"{self.task_id}-cancel"
        )
        try:
            while True:
                now = time.monotonic()
                timeout = max(min(next_tick, overrun_at) - now, 0)
                done, _ = await asyncio.wait(
                    {exit_task, cancel_task},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if exit_task in done:
                    return self._report_exit(exit_task.result(), parser)

                if cancel_task in done:
                    cancel = cancel_task.result()
                    if cancel is not None:
                        return await self._stop_engine(parser, cancel.reason)
                    # Control channel lost: keep running, nobody can cancel us
                    cancel_task = asyncio.get_running_loop().create_future()

                now = time.monotonic()
                if now >= overrun_at:
                    self._log.error(
                        "Engine still running %.1fs past its duration, terminating",
                        self._config.kill_grace,
                    )
                    self._state = AgentState.STOPPING
                    await engine.terminate(self._config.kill_grace)
                    return Failed(self.run_id, self.task_id, reason=REASON_OVERRUN)
                if now >= next_tick:
                    await self._report_progress(parser)
                    while next_tick <= now:
                        next_tick += interval
        except Exception as exc:
            self._log.exception("Engine supervision failed")
            self._state = AgentState.STOPPING
            await engine.terminate(self._config.kill_grace)
            return Failed(self.run_id, self.task_id, reason=f"{REASON_SUPERVISION}: {exc}")
        finally:
            for task in (exit_task, cancel_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            if engine.running:
                # Reached when the agent task itself is cancelled
                await asyncio.shield(engine.terminate(self._config.kill_grace))

    async def _await_cancel(self) -> Cancel | None:
        """Wait for a Cancel; duplicate Start messages are ignored."""
        while True:
            try:
                message = await self._next_message()
            except TransportError as exc:
                self._log.warning("Lost control channel while running: %s", exc)
                return None
            if isinstance(message, Cancel):
                return message
            if isinstance(message, Start):
                self._log.debug("Ignoring repeated Start, engine already running")

    def _report_exit(self, returncode: int, parser: EngineOutputParser) -> Finished | Failed:
        try:
            check_exit(returncode)
        except EngineFailure as exc:
            self._log.error("%s", exc)
            return Failed(self.run_id, self.task_id, reason=str(exc))
        metrics = parser.final_metrics()
        self._log.info(
            "Engine finished: requests=%d errors=%d p99=%.1fms",
            metrics.requests,
            metrics.errors,
            metrics.latency_p99,
        )
        return Finished(self.run_id, self.task_id, metrics=metrics)

    async def _stop_engine(self, parser: EngineOutputParser, reason: str) -> Finished | Failed:
        assert self._engine is not None
        self._log.info("Cancel received (%s), stopping engine", reason or "no reason")
        self._state = AgentState.STOPPING
        await self._engine.terminate(self._config.kill_grace)
        if parser.requests > 0:
            return Finished(
                self.run_id, self.task_id, metrics=parser.final_metrics(), partial=True
            )
        return Failed(self.run_id, self.task_id, reason=REASON_CANCELLED)

    async def _report_progress(self, parser: EngineOutputParser) -> None:
        message: ControlMessage
        if parser.has_new_samples:
            message = Progress(self.run_id, self.task_id, metrics=parser.snapshot())
        else:
            message = Heartbeat(self.run_id, self.task_id)
        try:
            await self._publish(message)
        except TransportError as exc:
            # Best effort: the controller tolerates missed heartbeats
            self._log.warning("Could not send %s: %s", message.kind, exc)

    async def _conclude(self, message: Finished | Failed) -> Finished | Failed:
        await self._publish(message)
        self._state = AgentState.DONE
        return message

    async def _publish(self, message: ControlMessage) -> None:
        await self._retry(
            self._transport.publish,
            self._topic,
            message,
            description=f"publish {message.kind}",
        )

    async def _retry(
        self, func: Callable[..., Any], *args: Any, description: str
    ) -> Any:
        return await retry_async(
            func,
            *args,
            attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
            retry_on=(TransportError,),
            description=f"{self.task_id} {description}",
        )
