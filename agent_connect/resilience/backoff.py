"""Exponential backoff with jitter for retry attempts.

delay(base, n) = base * 2**n + uniform(0, 100) milliseconds, with ``n``
zero-based (the first retry after the initial failure uses ``n = 0``).

A zero base skips the wait entirely, jitter included.
"""

from __future__ import annotations

import asyncio
import random
from typing import Callable

JITTER_MS = 100.0


def backoff_delay_ms(
    base_ms: float,
    attempt_index: int,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in milliseconds for *attempt_index*."""
    if base_ms <= 0:
        return 0.0
    return base_ms * (2**attempt_index) + rand() * JITTER_MS


async def sleep_backoff(base_ms: float, attempt_index: int) -> float:
    """Sleep for the backoff delay and return the delay slept (ms)."""
    if base_ms <= 0:
        return 0.0
    delay = backoff_delay_ms(base_ms, attempt_index)
    await asyncio.sleep(delay / 1000.0)
    return delay
