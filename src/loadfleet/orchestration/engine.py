"""Supervision of the load-generation engine subprocess."""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import TYPE_CHECKING

from loadfleet._internal.errors import EngineFailure, SetupError
from loadfleet._internal.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

logger = get_logger("orchestration.engine")

# Engines may report a whole interval's latencies on one line
LINE_LIMIT = 16 * 1024 * 1024


class EngineProcess:
    """One engine subprocess, spawned at most once.

    stdout is read line by line and handed to ``on_line``; stderr is
    inherited so engine diagnostics land in the worker's log stream.

    Attributes:
        argv: Command line of the engine.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        on_line: Callable[[str], None] | None = None,
        on_dropped: Callable[[], None] | None = None,
        line_limit: int = LINE_LIMIT,
    ) -> None:
        """Initialize without spawning.

        Args:
            argv: Engine executable and arguments.
            env: Variables added to the inherited environment.
            cwd: Working directory for the engine.
            on_line: Callback invoked with each decoded stdout line.
            on_dropped: Callback invoked for each line longer than
                *line_limit*, which is discarded.
            line_limit: Longest stdout line accepted, in bytes.
        """
        self.argv = list(argv)
        self._env = dict(env or {})
        self._cwd = cwd
        self._on_line = on_line
        self._on_dropped = on_dropped
        self._line_limit = line_limit
        self.dropped_lines = 0
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._spawned = False

    @property
    def pid(self) -> int | None:
        """Return the engine's process id once spawned."""
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        """Return True between spawn and exit."""
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        """Return the exit code, or None while running / before spawn."""
        return self._process.returncode if self._process else None

    async def spawn(self) -> None:
        """Start the engine.

        Raises:
            RuntimeError: If the engine was already spawned.
            SetupError: If the executable cannot be started.
        """
        if self._spawned:
            msg = "engine already spawned for this worker"
            raise RuntimeError(msg)
        self._spawned = True

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env={**os.environ, **self._env},
                cwd=self._cwd,
                limit=self._line_limit,
            )
        except OSError as exc:
            msg = f"cannot start engine {self.argv[0]!r}: {exc}"
            raise SetupError(msg) from exc

        logger.info("Engine started: pid=%d argv=%s", self._process.pid, self.argv)
        self._reader = asyncio.create_task(
            self._read_stdout(), name=f"engine-stdout-{self._process.pid}"
        )

    async def _read_stdout(self) -> None:
        assert self._process is not None
        assert self._process.stdout is not None
        while True:
            try:
                raw = await self._process.stdout.readline()
            except ValueError:
                self.dropped_lines += 1
                logger.warning(
                    "Dropped engine stdout line longer than %d bytes", self._line_limit
                )
                if self._on_dropped is not None:
                    self._on_dropped()
                continue
            if not raw:
                return
            if self._on_line is not None:
                self._on_line(raw.decode("utf-8", errors="replace"))

    async def wait(self) -> int:
        """Wait for the engine to exit and its stdout to be fully consumed.

        Returns:
            The engine's exit code.
        """
        if self._process is None:
            msg = "engine was never spawned"
            raise RuntimeError(msg)
        if self._reader is not None:
            # Shielded so a timed-out caller does not kill the reader.
            # Re-raises a failure of the on_line callback.
            await asyncio.shield(self._reader)
        return await self._process.wait()

    async def terminate(self, grace: float) -> int:
        """Stop the engine: SIGTERM, then SIGKILL after *grace* seconds.

        Args:
            grace: Seconds to wait for a graceful exit.

        Returns:
            The engine's exit code.
        """
        if self._process is None:
            msg = "engine was never spawned"
            raise RuntimeError(msg)
        if self._process.returncode is None:
            logger.info("Terminating engine pid=%d", self._process.pid)
            with contextlib.suppress(ProcessLookupError):
                self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "Engine pid=%d ignored SIGTERM for %.1fs, killing",
                    self._process.pid,
                    grace,
                )
                with contextlib.suppress(ProcessLookupError):
                    self._process.kill()
        returncode = await self._process.wait()
        if self._reader is not None:
            await asyncio.wait({self._reader})
        return returncode


def check_exit(returncode: int) -> None:
    """Raise :class:`EngineFailure` for a non-zero engine exit code.

    Negative codes mean the engine was killed by a signal.
    """
    if returncode == 0:
        return
    if returncode < 0:
        msg = f"engine killed by signal {-returncode}"
    else:
        msg = f"engine exited with code {returncode}"
    raise EngineFailure(msg, returncode=returncode)
