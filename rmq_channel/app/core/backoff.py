"""Backoff utilities.

`exponential_backoff` yields `(attempt, delay)` pairs. The caller tries its
operation after each yield; on the next iteration the generator sleeps for the
grown delay first. Only connection setup retries; channel operations never do.
"""
import asyncio
from typing import AsyncIterator, Tuple


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[Tuple[int, float]]:
    delay = min(initial_delay, max_delay)
    attempt = 1
    while attempt <= max_attempts:
        yield attempt, delay
        if attempt == max_attempts:
            return
        await asyncio.sleep(delay)
        delay = min(delay * multiplier, max_delay)
        attempt += 1
