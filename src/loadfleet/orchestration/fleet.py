"""Local fleet launcher: one controller and N worker agents in one process."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
import uuid
from typing import TYPE_CHECKING, Any

from loadfleet._internal.config import LoadFleetConfig
from loadfleet._internal.logging import get_logger
from loadfleet.orchestration.controller import RunController
from loadfleet.orchestration.worker import WorkerAgent
from loadfleet.store.memory import InMemoryRunStore
from loadfleet.transport.memory import InMemoryTransport

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadfleet.orchestration.models import Run
    from loadfleet.orchestration.scenario import ScenarioDescriptor
    from loadfleet.store.base import RunStateStore
    from loadfleet.transport.base import Transport

logger = get_logger("orchestration.fleet")


def new_run_id() -> str:
    """Return a fresh run identifier."""
    return uuid.uuid4().hex[:12]


def install_uvloop() -> None:
    """Install uvloop as the default event loop policy if available.

    Falls back silently to the default asyncio event loop on Windows
    or if uvloop is not installed.
    """
    if sys.platform == "win32":
        return

    try:
        import uvloop

        uvloop.install()
        logger.debug("uvloop installed as event loop policy")
    except ImportError:
        logger.debug("uvloop not available, using default asyncio event loop")


def install_cancel_handlers(callback: Callable[[], None]) -> None:
    """Route SIGINT and SIGTERM to *callback* for graceful cancellation.

    Must be called from inside the running event loop.
    """
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, callback)
        loop.add_signal_handler(signal.SIGTERM, callback)
    else:
        # Windows doesn't support add_signal_handler
        signal.signal(signal.SIGINT, lambda _s, _f: callback())
        signal.signal(signal.SIGTERM, lambda _s, _f: callback())


def remove_cancel_handlers() -> None:
    """Remove the handlers, restoring defaults."""
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    else:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)


class LocalFleet:
    """Plays the scheduler's role for a run whose workers are local tasks.

    The controller is opened (run created, topic subscribed) before any
    worker is launched. A worker task that dies with an exception is
    reported to the controller as a task exit; SIGINT and SIGTERM request
    cancellation of the run.

    Attributes:
        scenario: Scenario every worker executes.
        run_id: Identifier of the run.
        transport: Shared control-plane transport.
        store: Run state store written by the controller.
        controller: The run's controller.
        agents: One agent per expected task.
    """

    def __init__(
        self,
        scenario: ScenarioDescriptor,
        *,
        run_id: str | None = None,
        transport: Transport | None = None,
        store: RunStateStore | None = None,
        config: LoadFleetConfig | None = None,
        handle_signals: bool = True,
    ) -> None:
        """Initialize the fleet without starting anything.

        Args:
            scenario: Scenario to run; ``scenario.workers`` sets N.
            run_id: Run identifier; generated if omitted.
            transport: Transport to share; an in-memory one if omitted.
            store: Run state store; an in-memory one if omitted.
            config: Timing and retry settings shared by all participants.
            handle_signals: Install SIGINT/SIGTERM handlers while running.
        """
        self.scenario = scenario
        self.run_id = run_id or new_run_id()
        self.transport = transport or InMemoryTransport()
        self.store = store or InMemoryRunStore()
        self._config = config or LoadFleetConfig()
        self._handle_signals = handle_signals
        self.controller = RunController(
            self.run_id,
            scenario.task_ids,
            self.transport,
            self.store,
            scenario=scenario.name,
            scenario_duration=scenario.duration_seconds,
            config=self._config,
        )
        self.agents = [
            WorkerAgent(self.run_id, task_id, scenario, self.transport, config=self._config)
            for task_id in scenario.task_ids
        ]

    async def run(self) -> Run:
        """Launch the fleet and wait for the run to reach a terminal state.

        Returns:
            The final run record.
        """
        logger.info(
            "Launching run %s: scenario=%s workers=%d",
            self.run_id,
            self.scenario.name,
            len(self.agents),
        )
        await self.controller.open()
        controller_task = asyncio.create_task(
            self.controller.run_until_complete(), name=f"controller-{self.run_id}"
        )
        worker_tasks = [
            asyncio.create_task(agent.run(), name=f"agent-{agent.task_id}")
            for agent in self.agents
        ]
        for agent, task in zip(self.agents, worker_tasks, strict=True):
            task.add_done_callback(self._exit_reporter(agent.task_id))

        if self._handle_signals:
            install_cancel_handlers(self._on_signal)
        try:
            run = await controller_task
            # Workers that received Cancel need a moment to stop their engines
            await asyncio.wait(worker_tasks, timeout=self._config.cancel_timeout)
        finally:
            if self._handle_signals:
                remove_cancel_handlers()
            for task in worker_tasks:
                if not task.done():
                    task.cancel()
            for task in worker_tasks:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        return run

    def _exit_reporter(self, task_id: str) -> Callable[[asyncio.Task[Any]], None]:
        def _on_done(task: asyncio.Task[Any]) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Worker task %s crashed: %r", task_id, exc)
                self.controller.report_task_exit(task_id, 1)

        return _on_done

    def _on_signal(self) -> None:
        logger.info("Signal received, cancelling run %s", self.run_id)
        self.controller.request_cancel("interrupted")
