"""Shared test fixtures for LoadFleet test suite."""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import TYPE_CHECKING

import pytest
from aiohttp import web

from loadfleet._internal.config import LoadFleetConfig
from loadfleet.metrics.histogram import LatencyHistogram
from loadfleet.metrics.models import WorkerMetrics
from loadfleet.orchestration.scenario import ScenarioDescriptor
from loadfleet.transport.hub import create_hub_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator
    from pathlib import Path


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


# =============================================================================
# Fake engine
# =============================================================================

# Modes:
#   ok        print SAMPLES samples, then exit 0
#   crash     print one sample, then exit 3
#   hang      print samples forever (until terminated)
#   stubborn  like hang, but ignores SIGTERM
#   quiet     like ok, but silent for half a second first
#   wide      one 20000-latency sample on a single line, then exit 0
#   nan       one sample with a NaN latency, then like ok
# A task whose id equals $FAKE_FAIL_TASK exits 3 immediately.
FAKE_ENGINE = """\
import json
import os
import signal
import sys
import time

mode = sys.argv[1] if len(sys.argv) > 1 else "ok"
samples = int(sys.argv[2]) if len(sys.argv) > 2 else 3

fail_task = os.environ.get("FAKE_FAIL_TASK")
if fail_task and os.environ.get("LOADFLEET_TASK_ID") == fail_task:
    print("simulated failure", file=sys.stderr)
    sys.exit(3)

if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

print("engine warming up", flush=True)
if mode == "quiet":
    time.sleep(0.5)
if mode == "wide":
    wide = {"requests": 20000, "errors": 0, "latencies_ms": [10.0] * 20000}
    print(json.dumps(wide), flush=True)
    sys.exit(0)
if mode == "nan":
    print('{"requests": 1, "errors": 0, "latencies_ms": [NaN]}', flush=True)
sample = {"requests": 10, "errors": 1, "latencies_ms": [10.0] * 9 + [120.0]}
sent = 0
while mode in ("hang", "stubborn") or sent < samples:
    print(json.dumps(sample), flush=True)
    sent += 1
    if mode == "crash":
        sys.exit(3)
    time.sleep(0.05)
"""


@pytest.fixture
def engine_script(tmp_path: Path) -> Path:
    """Write the fake engine script and return its path."""
    path = tmp_path / "fake_engine.py"
    path.write_text(FAKE_ENGINE)
    return path


@pytest.fixture
def make_scenario(engine_script: Path) -> Callable[..., ScenarioDescriptor]:
    """Factory for scenarios that run the fake engine."""

    def _make(
        mode: str = "ok",
        *,
        workers: int = 1,
        duration: float = 5.0,
        samples: int = 3,
        env: dict[str, str] | None = None,
    ) -> ScenarioDescriptor:
        return ScenarioDescriptor(
            name=f"fake-{mode}",
            command=(sys.executable, str(engine_script), mode, str(samples)),
            target="http://127.0.0.1:9",
            duration_seconds=duration,
            workers=workers,
            env=env or {},
        )

    return _make


# =============================================================================
# Configuration and metrics
# =============================================================================


@pytest.fixture
def fast_config() -> LoadFleetConfig:
    """Configuration with short intervals so tests finish quickly."""
    return LoadFleetConfig(
        heartbeat_interval=0.05,
        heartbeat_miss_limit=2,
        ready_timeout=5.0,
        start_timeout=5.0,
        run_grace=5.0,
        cancel_timeout=2.0,
        kill_grace=0.5,
        retry_attempts=2,
        retry_base_delay=0.01,
    )


def build_metrics(
    latencies: list[float], *, errors: int = 0, elapsed: float = 10.0
) -> WorkerMetrics:
    """Final metrics whose histogram holds exactly *latencies*."""
    histogram = LatencyHistogram()
    for latency in latencies:
        histogram.record(latency)
    return WorkerMetrics(
        requests=len(latencies),
        errors=errors,
        elapsed_seconds=elapsed,
        latency_p50=histogram.percentile(50.0),
        latency_p95=histogram.percentile(95.0),
        latency_p99=histogram.percentile(99.0),
        histogram=histogram.encode(),
    )


@pytest.fixture
def make_metrics() -> Callable[..., WorkerMetrics]:
    """Factory for final worker metrics built from raw latencies."""
    return build_metrics


# =============================================================================
# Hub servers
# =============================================================================


async def _start_hub() -> tuple[web.AppRunner, str]:
    runner = web.AppRunner(create_hub_app())
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", 0).start()
    host, port = runner.addresses[0][:2]
    return runner, f"http://{host}:{port}"


@pytest.fixture
async def hub_url() -> AsyncIterator[str]:
    """Hub on an ephemeral port in the test's own event loop."""
    runner, url = await _start_hub()
    yield url
    await runner.cleanup()


@pytest.fixture
def sync_hub_url() -> Iterator[str]:
    """Hub on its own loop in a daemon thread, for CLI commands that call asyncio.run."""
    ready = threading.Event()
    state: dict[str, object] = {}

    def _serve() -> None:
        loop = asyncio.new_event_loop()
        runner, state["url"] = loop.run_until_complete(_start_hub())
        state["loop"] = loop
        ready.set()
        loop.run_forever()
        loop.run_until_complete(runner.cleanup())
        loop.close()

    thread = threading.Thread(target=_serve, name="hub", daemon=True)
    thread.start()
    assert ready.wait(timeout=5.0), "hub thread did not start"

    yield str(state["url"])

    loop = state["loop"]
    assert isinstance(loop, asyncio.AbstractEventLoop)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5.0)
