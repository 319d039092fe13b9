"""Integration tests for the local fleet launcher."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from loadfleet.orchestration.fleet import LocalFleet
from loadfleet.orchestration.models import RunState, WorkerState
from loadfleet.store.json_file import JsonFileRunStore

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.timeout(30)


class TestLocalFleet:
    async def test_fleet_completes(self, make_scenario, fast_config):
        fleet = LocalFleet(
            make_scenario("ok", workers=2, samples=3),
            run_id="fleet-ok",
            config=fast_config,
            handle_signals=False,
        )
        run = await fleet.run()

        assert run.status is RunState.COMPLETE
        assert run.aggregate.worker_count == 2
        assert run.aggregate.total_requests == 60
        assert run.aggregate.total_errors == 6
        assert run.aggregate.error_rate == pytest.approx(0.1)
        assert run.count(WorkerState.FINISHED) == 2
        assert all(agent.spawn_count == 1 for agent in fleet.agents)

    async def test_one_failing_worker_fails_the_run(self, make_scenario, fast_config):
        scenario = make_scenario(
            "hang", workers=3, duration=30.0, env={"FAKE_FAIL_TASK": "worker-1"}
        )
        fleet = LocalFleet(scenario, config=fast_config, handle_signals=False)
        run = await fleet.run()

        assert run.status is RunState.FAILED
        assert run.failure_reason == "engine exited with code 3"
        assert run.aggregate is None
        assert run.workers["worker-1"].state is WorkerState.FAILED

    async def test_run_is_persisted(self, make_scenario, fast_config, tmp_path: Path):
        store = JsonFileRunStore(tmp_path / "runs")
        fleet = LocalFleet(
            make_scenario("ok", samples=2),
            run_id="persisted",
            store=store,
            config=fast_config,
            handle_signals=False,
        )
        await fleet.run()

        stored = JsonFileRunStore(tmp_path / "runs").get_run("persisted")
        assert stored.status is RunState.COMPLETE
        assert stored.scenario == "fake-ok"
        assert stored.aggregate.total_requests == 20
        assert stored.start_time is not None
        assert stored.end_time >= stored.start_time

    async def test_generated_run_id(self, make_scenario, fast_config):
        fleet = LocalFleet(make_scenario("ok"), config=fast_config, handle_signals=False)
        assert len(fleet.run_id) == 12
        assert [agent.task_id for agent in fleet.agents] == ["worker-0"]
