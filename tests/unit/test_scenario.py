"""Tests for scenario descriptors."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from loadfleet._internal.errors import ScenarioError
from loadfleet.orchestration.scenario import ScenarioDescriptor, load_scenario, task_ids


def _scenario(**overrides) -> ScenarioDescriptor:
    values = {
        "name": "checkout",
        "command": ("engine", "--target", "{target}", "--duration", "{duration}"),
        "target": "https://api.example.com",
        "duration_seconds": 60.0,
        "workers": 3,
    }
    values.update(overrides)
    return ScenarioDescriptor(**values)


class TestScenarioDescriptor:
    def test_task_ids(self):
        assert task_ids(3) == ["worker-0", "worker-1", "worker-2"]
        assert _scenario().task_ids == ["worker-0", "worker-1", "worker-2"]

    def test_render_command(self):
        argv = _scenario(command=("engine", "-c", "{config}", "-d", "{duration}")).render_command(
            "/tmp/scenario.json"
        )
        assert argv == ["engine", "-c", "/tmp/scenario.json", "-d", "60"]

    def test_render_fractional_duration(self):
        argv = _scenario(duration_seconds=1.5).render_command()
        assert argv[-1] == "1.5"
        assert argv[2] == "https://api.example.com"

    def test_render_unknown_placeholder_raises(self):
        with pytest.raises(ScenarioError, match="bad placeholder"):
            _scenario(command=("engine", "{users}")).render_command()

    @pytest.mark.parametrize(
        ("overrides", "match"),
        [
            ({"name": ""}, "name"),
            ({"command": ()}, "no engine command"),
            ({"duration_seconds": 0}, "duration_seconds"),
            ({"workers": 0}, "workers"),
        ],
    )
    def test_validation(self, overrides: dict, match: str):
        with pytest.raises(ScenarioError, match=match):
            _scenario(**overrides)

    def test_from_dict_splits_string_command(self):
        scenario = ScenarioDescriptor.from_dict(
            {
                "name": "smoke",
                "command": "engine --fast",
                "target": "http://t",
                "duration_seconds": 5,
            }
        )
        assert scenario.command == ("engine", "--fast")
        assert scenario.workers == 1

    def test_from_dict_missing_field(self):
        with pytest.raises(ScenarioError, match="missing field: target"):
            ScenarioDescriptor.from_dict(
                {"name": "smoke", "command": ["engine"], "duration_seconds": 5}
            )


class TestLoadScenario:
    def test_load(self, tmp_path: Path):
        path = tmp_path / "scenario.json"
        path.write_text(json.dumps(_scenario(env={"TOKEN": "x"}).to_dict()))
        assert load_scenario(path) == _scenario(env={"TOKEN": "x"})

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ScenarioError, match="not found"):
            load_scenario(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path: Path):
        path = tmp_path / "scenario.json"
        path.write_text("{")
        with pytest.raises(ScenarioError, match="Cannot load"):
            load_scenario(path)

    def test_non_object(self, tmp_path: Path):
        path = tmp_path / "scenario.json"
        path.write_text("[]")
        with pytest.raises(ScenarioError, match="JSON object"):
            load_scenario(path)

    def test_bundled_example(self):
        path = Path(__file__).resolve().parents[2] / "examples" / "smoke.json"
        scenario = load_scenario(path)
        assert scenario.workers == 2
        assert scenario.render_command()[2:4] == ["http://localhost:8080/", "30"]
