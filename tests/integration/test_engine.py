"""Integration tests for engine subprocess supervision."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING

import pytest

from loadfleet._internal.errors import EngineFailure, SetupError
from loadfleet.orchestration.engine import EngineProcess, check_exit

if TYPE_CHECKING:
    from pathlib import Path


def _argv(script: Path, mode: str, samples: int = 2) -> list[str]:
    return [sys.executable, str(script), mode, str(samples)]


class TestEngineProcess:
    @pytest.mark.timeout(30)
    async def test_lines_are_forwarded(self, engine_script: Path):
        lines: list[str] = []
        engine = EngineProcess(_argv(engine_script, "ok"), on_line=lines.append)
        await engine.spawn()

        assert await engine.wait() == 0
        assert engine.returncode == 0
        assert lines[0].strip() == "engine warming up"
        assert len(lines) == 3

    @pytest.mark.timeout(30)
    async def test_spawns_at_most_once(self, engine_script: Path):
        engine = EngineProcess(_argv(engine_script, "ok", samples=1))
        await engine.spawn()
        with pytest.raises(RuntimeError, match="already spawned"):
            await engine.spawn()
        await engine.wait()

    async def test_missing_executable(self, tmp_path: Path):
        engine = EngineProcess([str(tmp_path / "no-such-engine")])
        with pytest.raises(SetupError, match="cannot start engine"):
            await engine.spawn()
        assert engine.pid is None

    async def test_wait_before_spawn(self):
        with pytest.raises(RuntimeError, match="never spawned"):
            await EngineProcess(["true"]).wait()

    @pytest.mark.timeout(30)
    async def test_environment_is_passed(self, engine_script: Path):
        engine = EngineProcess(
            _argv(engine_script, "ok"),
            env={"FAKE_FAIL_TASK": "worker-3", "LOADFLEET_TASK_ID": "worker-3"},
        )
        await engine.spawn()
        assert await engine.wait() == 3

    @pytest.mark.timeout(30)
    async def test_terminate_running_engine(self, engine_script: Path):
        first_line = asyncio.Event()
        engine = EngineProcess(
            _argv(engine_script, "hang"), on_line=lambda _line: first_line.set()
        )
        await engine.spawn()
        await asyncio.wait_for(first_line.wait(), timeout=10)

        assert await engine.terminate(grace=5.0) == -15

    @pytest.mark.timeout(30)
    async def test_kill_after_grace(self, engine_script: Path):
        first_line = asyncio.Event()
        engine = EngineProcess(
            _argv(engine_script, "stubborn"), on_line=lambda _line: first_line.set()
        )
        await engine.spawn()
        await asyncio.wait_for(first_line.wait(), timeout=10)

        assert await engine.terminate(grace=0.3) == -9

    @pytest.mark.timeout(30)
    async def test_wide_sample_line_is_read_whole(self, engine_script: Path):
        lines: list[str] = []
        engine = EngineProcess(_argv(engine_script, "wide"), on_line=lines.append)
        await engine.spawn()

        assert await engine.wait() == 0
        assert engine.dropped_lines == 0
        assert json.loads(lines[-1])["requests"] == 20000

    @pytest.mark.timeout(30)
    async def test_line_over_limit_is_dropped(self, engine_script: Path):
        lines: list[str] = []
        drops: list[None] = []
        engine = EngineProcess(
            _argv(engine_script, "wide"),
            on_line=lines.append,
            on_dropped=lambda: drops.append(None),
            line_limit=1024,
        )
        await engine.spawn()

        assert await engine.wait() == 0
        assert engine.dropped_lines >= 1
        assert len(drops) == engine.dropped_lines
        assert lines[0].strip() == "engine warming up"
        assert not any('"requests": 20000' in line for line in lines)

    @pytest.mark.timeout(30)
    async def test_callback_failure_surfaces_from_wait(self, engine_script: Path):
        def explode(_line: str) -> None:
            msg = "callback broke"
            raise RuntimeError(msg)

        engine = EngineProcess(_argv(engine_script, "hang"), on_line=explode)
        await engine.spawn()

        with pytest.raises(RuntimeError, match="callback broke"):
            await engine.wait()
        assert engine.running
        assert await engine.terminate(grace=5.0) == -15
        assert not engine.running


class TestCheckExit:
    def test_zero_is_success(self):
        check_exit(0)

    def test_non_zero_exit(self):
        with pytest.raises(EngineFailure, match="exited with code 3") as exc_info:
            check_exit(3)
        assert exc_info.value.returncode == 3

    def test_killed_by_signal(self):
        with pytest.raises(EngineFailure, match="killed by signal 9"):
            check_exit(-9)
