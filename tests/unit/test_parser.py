"""Tests for the engine output parser."""

from __future__ import annotations

import json

import pytest

from loadfleet.metrics.histogram import LatencyHistogram
from loadfleet.metrics.parser import EngineOutputParser, _compute_percentiles


def _line(requests: int, errors: int = 0, latencies: list[float] | None = None) -> str:
    return json.dumps(
        {"requests": requests, "errors": errors, "latencies_ms": latencies or []}
    ) + "\n"


class TestComputePercentiles:
    def test_empty(self):
        assert _compute_percentiles([]) == (0.0, 0.0, 0.0)

    def test_uniform_samples(self):
        p50, p95, p99 = _compute_percentiles([float(v) for v in range(1, 101)])
        assert p50 == pytest.approx(50.5)
        assert p95 == pytest.approx(95.05)
        assert p99 == pytest.approx(99.01)


class TestEngineOutputParser:
    def test_accumulates_counters(self):
        parser = EngineOutputParser(clock=0.0)
        assert parser.feed(_line(10, 1, [5.0] * 10))
        assert parser.feed(_line(5, 0, [7.0] * 5))
        assert parser.requests == 15
        assert parser.errors == 1

    def test_ignores_non_json_chatter(self):
        parser = EngineOutputParser(clock=0.0)
        assert not parser.feed("Starting engine v1.2\n")
        assert not parser.feed("\n")
        assert parser.requests == 0
        assert parser.malformed_lines == 0

    def test_counts_malformed_samples(self):
        parser = EngineOutputParser(clock=0.0)
        assert not parser.feed("{not json\n")
        assert not parser.feed('{"errors": 1}\n')
        assert not parser.feed(_line(2, 5))
        assert not parser.feed(_line(-1))
        assert parser.malformed_lines == 4
        assert parser.requests == 0

    @pytest.mark.parametrize(
        "text",
        [
            '{"requests": 1, "errors": 0, "latencies_ms": [NaN]}',
            '{"requests": 1, "errors": 0, "latencies_ms": [Infinity]}',
            '{"requests": 1, "errors": 0, "latencies_ms": [-Infinity, 3.0]}',
            '{"requests": 1, "errors": 0, "latencies_ms": [1e400]}',
            '{"requests": Infinity, "errors": 0}',
        ],
    )
    def test_rejects_non_finite_values(self, text: str):
        parser = EngineOutputParser(clock=0.0)
        assert not parser.feed(text + "\n")
        assert parser.malformed_lines == 1
        assert parser.requests == 0
        assert not parser.has_new_samples
        assert LatencyHistogram.decode(parser.final_metrics(now=1.0).histogram).count == 0

    def test_skipped_lines_count_as_malformed(self):
        parser = EngineOutputParser(clock=0.0)
        parser.skip_line()
        parser.skip_line()
        assert parser.malformed_lines == 2

    def test_snapshot_drains_interval_window(self):
        parser = EngineOutputParser(clock=100.0)
        parser.feed(_line(4, 0, [10.0, 10.0, 10.0, 50.0]))
        assert parser.has_new_samples

        first = parser.snapshot(now=102.0)
        assert first.requests == 4
        assert first.elapsed_seconds == pytest.approx(2.0)
        assert first.latency_p99 > 40.0
        assert first.histogram is None
        assert not parser.has_new_samples

        parser.feed(_line(2, 0, [1.0, 1.0]))
        second = parser.snapshot(now=103.0)
        assert second.requests == 6
        assert second.latency_p99 == pytest.approx(1.0)

    def test_final_metrics_cover_whole_run(self):
        parser = EngineOutputParser(clock=0.0)
        parser.feed(_line(3, 1, [10.0, 10.0, 10.0]))
        parser.snapshot(now=1.0)
        parser.feed(_line(1, 0, [200.0]))

        final = parser.final_metrics(now=4.0)
        assert final.requests == 4
        assert final.errors == 1
        assert final.elapsed_seconds == pytest.approx(4.0)
        assert final.latency_p99 == pytest.approx(200.0, rel=0.01)
        assert final.histogram is not None
        assert LatencyHistogram.decode(final.histogram).count == 4
