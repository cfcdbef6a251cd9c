"""Backoff utilities.

`exponential_backoff` is an async generator used for connection attempts: it
yields the current delay for the caller to attempt an operation, then sleeps
before the next attempt.

`compute_retry_delay` is the job retry formula: exponential growth capped at
`max_delay_seconds`, then a uniform jitter of +/- `jitter_factor` of the capped
delay so that jobs failing together do not retry together.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import AsyncIterator


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[float]:
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        yield delay
        if attempt < max_attempts:
            delay = min(delay * multiplier, max_delay)
            await asyncio.sleep(delay)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry delay parameters for failed jobs (seconds)."""

    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_factor < 1:
            raise ValueError("jitter_factor must be in [0, 1)")


def base_retry_delay(retry_count: int, policy: RetryPolicy) -> float:
    """Un-jittered delay: min(initial * multiplier ** retry_count, max)."""
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    try:
        delay = policy.initial_delay_seconds * (policy.backoff_multiplier ** retry_count)
    except OverflowError:
        delay = policy.max_delay_seconds
    return min(delay, policy.max_delay_seconds)


def compute_retry_delay(
    retry_count: int,
    policy: RetryPolicy,
    *,
    rng: random.Random | None = None,
) -> float:
    delay = base_retry_delay(retry_count, policy)
    spread = delay * policy.jitter_factor
    uniform = (rng or random).uniform
    return max(0.0, delay + uniform(-spread, spread))
