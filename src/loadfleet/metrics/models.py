"""Metric dataclasses exchanged between workers and the controller."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

__all__ = [
    "AggregateResult",
    "WorkerMetrics",
]


@dataclass(frozen=True)
class WorkerMetrics:
    """Cumulative metrics reported by one worker.

    Counters are cumulative since the engine started. The latency summary
    covers the most recent sampling interval for ``Progress`` reports and
    the whole run for ``Finished`` reports.

    Attributes:
        requests: Total requests issued by the engine.
        errors: Total failed requests.
        elapsed_seconds: Seconds since the engine started.
        latency_p50: 50th percentile latency (ms).
        latency_p95: 95th percentile latency (ms).
        latency_p99: 99th percentile latency (ms).
        histogram: Encoded HDR histogram of every latency sample, present
            on final metrics only.
    """

    requests: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    latency_p50: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    histogram: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerMetrics:
        """Build metrics from :meth:`to_dict` output.

        Raises:
            ValueError: If a counter is not numeric.
        """
        histogram = data.get("histogram")
        return cls(
            requests=int(data.get("requests", 0)),
            errors=int(data.get("errors", 0)),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
            latency_p50=float(data.get("latency_p50", 0.0)),
            latency_p95=float(data.get("latency_p95", 0.0)),
            latency_p99=float(data.get("latency_p99", 0.0)),
            histogram=str(histogram) if histogram is not None else None,
        )


@dataclass(frozen=True)
class AggregateResult:
    """Fleet-wide result computed once every worker has finished.

    Attributes:
        worker_count: Number of workers that contributed.
        total_requests: Sum of requests across workers.
        total_errors: Sum of errors across workers.
        error_rate: Fraction of requests that failed (0.0 to 1.0).
        duration_seconds: Longest worker engine runtime.
        requests_per_second: Total requests divided by duration.
        latency_min: Minimum latency in milliseconds.
        latency_max: Maximum latency in milliseconds.
        latency_avg: Mean latency in milliseconds.
        latency_p50: 50th percentile latency (ms).
        latency_p75: 75th percentile latency (ms).
        latency_p90: 90th percentile latency (ms).
        latency_p95: 95th percentile latency (ms).
        latency_p99: 99th percentile latency (ms).
        latency_p999: 99.9th percentile latency (ms).
        requests_by_task: Request count per task identifier.
    """

    worker_count: int
    total_requests: int = 0
    total_errors: int = 0
    error_rate: float = 0.0
    duration_seconds: float = 0.0
    requests_per_second: float = 0.0
    latency_min: float = 0.0
    latency_max: float = 0.0
    latency_avg: float = 0.0
    latency_p50: float = 0.0
    latency_p75: float = 0.0
    latency_p90: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    latency_p999: float = 0.0
    requests_by_task: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AggregateResult:
        """Build a result from :meth:`to_dict` output."""
        values = dict(data)
        values["requests_by_task"] = {
            str(k): int(v) for k, v in dict(values.get("requests_by_task", {})).items()
        }
        return cls(**values)
