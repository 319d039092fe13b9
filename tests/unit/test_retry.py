"""Tests for the bounded retry helper."""

from __future__ import annotations

import pytest

from loadfleet._internal.errors import StoreError, TransportError
from loadfleet._internal.retry import backoff_delays, retry_async


class TestBackoffDelays:
    def test_doubles_from_base(self):
        assert backoff_delays(4, 0.5) == [0.5, 1.0, 2.0]

    def test_capped_by_max_delay(self):
        assert backoff_delays(5, 1.0, max_delay=3.0) == [1.0, 2.0, 3.0, 3.0]

    def test_single_attempt_has_no_delays(self):
        assert backoff_delays(1, 1.0) == []


class TestRetryAsync:
    async def test_returns_first_success(self):
        calls = []

        def _op(value: int) -> int:
            calls.append(value)
            return value * 2

        assert await retry_async(_op, 21, attempts=3, base_delay=0) == 42
        assert calls == [21]

    async def test_awaits_coroutine_functions(self):
        async def _op(*, name: str) -> str:
            return f"hello {name}"

        assert await retry_async(_op, name="fleet", base_delay=0) == "hello fleet"

    async def test_retries_until_success(self):
        attempts = []

        async def _flaky() -> str:
            attempts.append(1)
            if len(attempts) < 3:
                msg = "hub unavailable"
                raise TransportError(msg)
            return "ok"

        result = await retry_async(
            _flaky, attempts=5, base_delay=0.001, retry_on=(TransportError,)
        )
        assert result == "ok"
        assert len(attempts) == 3

    async def test_raises_after_exhaustion(self):
        attempts = []

        def _broken() -> None:
            attempts.append(1)
            msg = "disk full"
            raise StoreError(msg)

        with pytest.raises(StoreError, match="disk full"):
            await retry_async(_broken, attempts=3, base_delay=0.001, retry_on=(StoreError,))
        assert len(attempts) == 3

    async def test_other_exceptions_propagate_immediately(self):
        attempts = []

        def _bug() -> None:
            attempts.append(1)
            msg = "not retryable"
            raise ValueError(msg)

        with pytest.raises(ValueError, match="not retryable"):
            await retry_async(_bug, attempts=5, base_delay=0.001, retry_on=(StoreError,))
        assert len(attempts) == 1
