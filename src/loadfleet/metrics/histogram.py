"""Mergeable latency distribution shipped between workers and the controller.

Each worker records every latency sample its engine reports into a
:class:`LatencyHistogram`. The final histogram travels inside the
``Finished`` message as hdrh's compressed base64 text; the controller
decodes one per worker and merges them, so fleet percentiles come from
the combined distribution rather than an average of per-worker numbers.

Samples are milliseconds on the way in and out. hdrh only stores integers,
so values are kept as whole microseconds and clamped to ``1us..60s``.
"""

from __future__ import annotations

from hdrh.histogram import HdrHistogram  # type: ignore[import-untyped]

_US_PER_MS = 1000
_FLOOR_US = 1
_CEILING_US = 60 * 1_000_000
_PRECISION = 3


def _new_hdr() -> HdrHistogram:  # type: ignore[no-any-unimported]
    return HdrHistogram(_FLOOR_US, _CEILING_US, _PRECISION)


class LatencyHistogram:
    """Latency samples for one worker, or merged across a fleet."""

    __slots__ = ("_hdr",)

    def __init__(self, hdr: HdrHistogram | None = None) -> None:  # type: ignore[no-any-unimported]
        self._hdr = hdr if hdr is not None else _new_hdr()

    def __len__(self) -> int:
        return int(self._hdr.total_count)

    @property
    def count(self) -> int:
        """Number of samples recorded."""
        return len(self)

    @staticmethod
    def _ms(value_us: float) -> float:
        return float(value_us) / _US_PER_MS

    def record(self, latency_ms: float, count: int = 1) -> bool:
        """Add ``count`` samples of ``latency_ms``; out-of-range values are clamped."""
        value_us = min(max(int(latency_ms * _US_PER_MS), _FLOOR_US), _CEILING_US)
        return bool(self._hdr.record_value(value_us, count))

    def percentile(self, pct: float) -> float:
        """Latency at ``pct`` (0-100) in milliseconds, 0.0 when nothing was recorded."""
        if not self.count:
            return 0.0
        return self._ms(self._hdr.get_value_at_percentile(pct))

    @property
    def min_ms(self) -> float:
        return self._ms(self._hdr.get_min_value()) if self.count else 0.0

    @property
    def max_ms(self) -> float:
        return self._ms(self._hdr.get_max_value()) if self.count else 0.0

    @property
    def mean_ms(self) -> float:
        return self._ms(self._hdr.get_mean_value()) if self.count else 0.0

    def merge(self, other: LatencyHistogram) -> LatencyHistogram:
        """Fold ``other`` into this histogram and return ``self``."""
        self._hdr.add(other._hdr)
        return self

    def encode(self) -> str:
        """Compressed base64 text suitable for a JSON message field."""
        payload = self._hdr.encode()
        return payload.decode("ascii") if isinstance(payload, bytes) else str(payload)

    @classmethod
    def decode(cls, encoded: str) -> LatencyHistogram:
        """Inverse of :meth:`encode`.

        Raises:
            ValueError: If ``encoded`` is not an hdrh payload.
        """
        try:
            hdr = HdrHistogram.decode(encoded.encode("ascii"))
        except Exception as exc:
            msg = f"invalid encoded histogram: {exc}"
            raise ValueError(msg) from exc
        return cls(hdr)
