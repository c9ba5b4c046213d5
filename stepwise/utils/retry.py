from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from ..constants import DEFAULT_BACKOFF_BASE_MS

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff(attempt: int, base_ms: int = DEFAULT_BACKOFF_BASE_MS) -> int:
    """Milliseconds to wait after failed ``attempt``: 1s, 2s, 4s, ..."""
    return (2 ** (attempt - 1)) * base_ms


async def schedule_retry(
    attempt: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    sleep: Sleep = asyncio.sleep,
) -> int:
    """Sleep for the backoff delay before retrying, returning the delay used."""
    delay_ms = compute_backoff(attempt, base_ms)
    await sleep(delay_ms / 1000)
    return delay_ms
