from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 0.5, jitter: float = 0.1) -> float:
    """Compute exponential backoff with jitter for retry ``attempt`` (0-based)."""
    if base <= 0:
        return 0.0
    delay = base * (2 ** attempt)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 0.5, jitter: float = 0.1) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base, jitter)
    if delay > 0:
        await asyncio.sleep(delay)
