"""Bounded exponential-backoff retry for store and transport calls."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any

from loadfleet._internal.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger("retry")


def backoff_delays(
    attempts: int, base_delay: float, max_delay: float = 30.0
) -> list[float]:
    """Return the sleep schedule between *attempts* tries.

    Args:
        attempts: Total number of attempts (>= 1).
        base_delay: Delay before the second attempt.
        max_delay: Upper bound for any single delay.

    Returns:
        ``attempts - 1`` delays doubling from ``base_delay``.
    """
    return [min(base_delay * (2**n), max_delay) for n in range(max(attempts - 1, 0))]


async def retry_async(
    func: Callable[..., Any],
    *args: Any,
    attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    **kwargs: Any,
) -> Any:
    """Call *func* until it succeeds or the attempts are exhausted.

    *func* may be a plain callable or a coroutine function; awaitable
    results are awaited. Only exceptions listed in *retry_on* are retried,
    anything else propagates immediately.

    Args:
        func: Callable to invoke.
        *args: Positional arguments for *func*.
        attempts: Maximum number of calls.
        base_delay: Delay before the first retry, doubled on each retry.
        max_delay: Upper bound for a single delay.
        retry_on: Exception types that trigger a retry.
        description: Short label used in log messages.
        **kwargs: Keyword arguments for *func*.

    Returns:
        Whatever *func* returns.

    Raises:
        Exception: The last exception raised by *func* once retries are
            exhausted.
    """
    delays = backoff_delays(attempts, base_delay, max_delay)
    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except retry_on as exc:
            if attempt > len(delays):
                logger.error(
                    "%s failed after %d attempts: %s", description, attempt, exc
                )
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
