"""Incremental parser for the load-generation engine's stdout.

The engine reports progress as newline-delimited JSON objects, one per
sampling interval::

    {"requests": 120, "errors": 2, "latencies_ms": [11.2, 9.8, ...]}

``requests`` and ``errors`` are counts for the interval, ``latencies_ms``
holds the individual response times observed in it. Any line that is not
a JSON object is engine chatter and is ignored.
"""

from __future__ import annotations

import json
import math
import time

import numpy as np

from loadfleet._internal.logging import get_logger
from loadfleet.metrics.histogram import LatencyHistogram
from loadfleet.metrics.models import WorkerMetrics

logger = get_logger("metrics.parser")


def _compute_percentiles(latencies: list[float]) -> tuple[float, float, float]:
    """Compute (p50, p95, p99) from raw latency samples.

    Args:
        latencies: Latency values in milliseconds.

    Returns:
        Tuple of (p50, p95, p99), all 0.0 when there are no samples.
    """
    if not latencies:
        return (0.0, 0.0, 0.0)

    arr = np.array(latencies, dtype=np.float64)
    p50, p95, p99 = np.percentile(arr, [50.0, 95.0, 99.0])
    return (float(p50), float(p95), float(p99))


class EngineOutputParser:
    """Accumulates engine samples into cumulative worker metrics.

    ``feed`` is called once per stdout line. ``snapshot`` drains the samples
    gathered since the previous snapshot into a ``Progress`` payload, and
    ``final_metrics`` produces the ``Finished`` payload, including the
    encoded histogram of every sample.

    Attributes:
        malformed_lines: JSON objects that did not match the sample format,
            plus lines too long to read.
    """

    def __init__(self, *, clock: float | None = None) -> None:
        """Initialize the parser.

        Args:
            clock: Monotonic start time; defaults to now.
        """
        self._started = clock if clock is not None else time.monotonic()
        self._requests = 0
        self._errors = 0
        self._histogram = LatencyHistogram()
        self._window: list[float] = []
        self._new_samples = False
        self.malformed_lines = 0

    @property
    def requests(self) -> int:
        """Return the cumulative request count."""
        return self._requests

    @property
    def errors(self) -> int:
        """Return the cumulative error count."""
        return self._errors

    @property
    def has_new_samples(self) -> bool:
        """Return True if samples arrived since the last snapshot."""
        return self._new_samples

    def feed(self, line: str) -> bool:
        """Consume one line of engine output.

        Args:
            line: Raw stdout line (trailing newline allowed).

        Returns:
            True if the line was a valid sample and was recorded.
        """
        text = line.strip()
        if not text.startswith("{"):
            if text:
                logger.debug("engine: %s", text)
            return False

        try:
            sample = json.loads(text)
            requests = int(sample["requests"])
            errors = int(sample.get("errors", 0))
            latencies = [float(v) for v in sample.get("latencies_ms", [])]
            if not all(math.isfinite(v) for v in latencies):
                msg = "non-finite latency"
                raise ValueError(msg)
        except (ValueError, TypeError, KeyError, OverflowError):
            self.malformed_lines += 1
            logger.warning("Ignoring malformed engine sample: %.200s", text)
            return False

        if requests < 0 or errors < 0 or errors > requests:
            self.malformed_lines += 1
            logger.warning(
                "Ignoring inconsistent engine sample: requests=%d errors=%d",
                requests,
                errors,
            )
            return False

        self._requests += requests
        self._errors += errors
        for latency in latencies:
            self._histogram.record(latency)
        self._window.extend(latencies)
        self._new_samples = True
        return True

    def skip_line(self) -> None:
        """Count a line the reader had to discard as malformed."""
        self.malformed_lines += 1

    def snapshot(self, *, now: float | None = None) -> WorkerMetrics:
        """Drain the interval window and return cumulative progress metrics.

        Args:
            now: Monotonic time of the snapshot; defaults to now.

        Returns:
            WorkerMetrics with cumulative counters and interval percentiles.
        """
        now = now if now is not None else time.monotonic()
        p50, p95, p99 = _compute_percentiles(self._window)
        self._window = []
        self._new_samples = False
        return WorkerMetrics(
            requests=self._requests,
            errors=self._errors,
            elapsed_seconds=max(now - self._started, 0.0),
            latency_p50=p50,
            latency_p95=p95,
            latency_p99=p99,
        )

    def final_metrics(self, *, now: float | None = None) -> WorkerMetrics:
        """Return whole-run metrics including the encoded histogram.

        Args:
            now: Monotonic time the engine stopped; defaults to now.

        Returns:
            WorkerMetrics suitable for a ``Finished`` message.
        """
        now = now if now is not None else time.monotonic()
        return WorkerMetrics(
            requests=self._requests,
            errors=self._errors,
            elapsed_seconds=max(now - self._started, 0.0),
            latency_p50=self._histogram.percentile(50.0),
            latency_p95=self._histogram.percentile(95.0),
            latency_p99=self._histogram.percentile(99.0),
            histogram=self._histogram.encode(),
        )
