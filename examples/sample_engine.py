"""A small HTTP load engine that speaks the LoadFleet sample format.

It keeps ``users`` concurrent GET loops against the target for the given
duration and prints one JSON sample per second on stdout::

    {"requests": 42, "errors": 0, "latencies_ms": [11.2, 9.8, ...]}

Any HTTP engine can be plugged into a fleet the same way. Run it with:

    loadfleet run examples/smoke.json --workers 2
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Any

import aiohttp


def _empty_sample() -> dict[str, Any]:
    return {"requests": 0, "errors": 0, "latencies_ms": []}


async def _user(
    session: aiohttp.ClientSession,
    target: str,
    deadline: float,
    current: list[dict[str, Any]],
) -> None:
    while time.monotonic() < deadline:
        started = time.perf_counter()
        try:
            async with session.get(target) as resp:
                await resp.read()
                ok = resp.status < 400
        except (aiohttp.ClientError, TimeoutError):
            ok = False
        sample = current[0]
        sample["latencies_ms"].append((time.perf_counter() - started) * 1000.0)
        sample["requests"] += 1
        if not ok:
            sample["errors"] += 1


def _report(current: list[dict[str, Any]]) -> None:
    sample, current[0] = current[0], _empty_sample()
    if sample["requests"]:
        print(json.dumps(sample), flush=True)


async def main(target: str, duration: float, users: int) -> None:
    deadline = time.monotonic() + duration
    # Users write into current[0]; the reporter swaps in a fresh sample
    current = [_empty_sample()]
    timeout = aiohttp.ClientTimeout(total=10)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        tasks = [
            asyncio.create_task(_user(session, target, deadline, current))
            for _ in range(users)
        ]
        while not all(t.done() for t in tasks):
            await asyncio.wait(tasks, timeout=1.0)
            _report(current)
        await asyncio.gather(*tasks)


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("usage: sample_engine.py TARGET DURATION [USERS]", file=sys.stderr)
        sys.exit(2)
    asyncio.run(
        main(
            sys.argv[1],
            float(sys.argv[2]),
            int(sys.argv[3]) if len(sys.argv) > 3 else 4,
        )
    )
