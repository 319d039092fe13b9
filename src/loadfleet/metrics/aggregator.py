"""Fleet-wide aggregation of per-worker final metrics.

Counters are summed; latency percentiles are read from the merge of every
worker's HDR histogram, never averaged across workers. Workers are visited
in sorted task-id order and histogram addition is commutative, so the
result depends only on the set of statuses, not on message arrival order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loadfleet._internal.errors import AggregationError
from loadfleet._internal.logging import get_logger
from loadfleet.metrics.histogram import LatencyHistogram
from loadfleet.metrics.models import AggregateResult
from loadfleet.orchestration.models import WorkerState

if TYPE_CHECKING:
    from collections.abc import Iterable

    from loadfleet.orchestration.models import WorkerStatus

logger = get_logger("metrics.aggregator")


def aggregate(statuses: Iterable[WorkerStatus]) -> AggregateResult:
    """Merge the final metrics of every FINISHED worker.

    Args:
        statuses: Worker status records; non-FINISHED workers are skipped.

    Returns:
        The fleet-wide AggregateResult.

    Raises:
        AggregationError: If a FINISHED worker has no final metrics, has
            inconsistent counters, or carries an undecodable histogram.
    """
    finished = sorted(
        (s for s in statuses if s.state is WorkerState.FINISHED),
        key=lambda s: s.task_id,
    )

    merged = LatencyHistogram()
    total_requests = 0
    total_errors = 0
    duration = 0.0
    requests_by_task: dict[str, int] = {}

    for status in finished:
        metrics = status.final_metrics
        if metrics is None:
            msg = f"{status.task_id} finished without final metrics"
            raise AggregationError(msg)
        if metrics.requests < 0 or metrics.errors < 0:
            msg = f"{status.task_id} reported negative counters"
            raise AggregationError(msg)
        if metrics.errors > metrics.requests:
            msg = (
                f"{status.task_id} reported more errors ({metrics.errors}) "
                f"than requests ({metrics.requests})"
            )
            raise AggregationError(msg)

        if metrics.histogram is not None:
            try:
                merged.merge(LatencyHistogram.decode(metrics.histogram))
            except ValueError as exc:
                msg = f"{status.task_id} sent an invalid histogram"
                raise AggregationError(msg) from exc
        elif metrics.requests > 0:
            logger.warning(
                "%s reported %d requests without a latency histogram",
                status.task_id,
                metrics.requests,
            )

        total_requests += metrics.requests
        total_errors += metrics.errors
        duration = max(duration, metrics.elapsed_seconds)
        requests_by_task[status.task_id] = metrics.requests

    error_rate = total_errors / total_requests if total_requests > 0 else 0.0
    rps = total_requests / duration if duration > 0 else 0.0

    return AggregateResult(
        worker_count=len(finished),
        total_requests=total_requests,
        total_errors=total_errors,
        error_rate=error_rate,
        duration_seconds=duration,
        requests_per_second=rps,
        latency_min=merged.min_ms,
        latency_max=merged.max_ms,
        latency_avg=merged.mean_ms,
        latency_p50=merged.percentile(50.0),
        latency_p75=merged.percentile(75.0),
        latency_p90=merged.percentile(90.0),
        latency_p95=merged.percentile(95.0),
        latency_p99=merged.percentile(99.0),
        latency_p999=merged.percentile(99.9),
        requests_by_task=requests_by_task,
    )
