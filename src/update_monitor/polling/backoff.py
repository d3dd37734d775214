"""
Restart backoff for the polling loop.

This module computes jittered exponential retry delays and provides a sleep
that ends as soon as the monitor is asked to stop.
"""

import asyncio
import random
from collections.abc import Callable

from ..config import BackoffPolicy

RandomSource = Callable[[], float]


def compute_backoff(
    policy: BackoffPolicy,
    attempt: int,
    random_source: RandomSource = random.random,
) -> int:
    """
    Compute the delay before restart attempt ``attempt``.

    Args:
        policy: Backoff policy
        attempt: 1-indexed count of consecutive conflicts (clamped to >= 1)
        random_source: Callable returning a float in [0, 1)

    Returns:
        Delay in milliseconds, within [0, policy.max_delay_ms]
    """
    attempt = max(1, attempt)
    base = min(
        float(policy.max_delay_ms),
        policy.initial_delay_ms * policy.growth_factor ** (attempt - 1),
    )
    # Map [0, 1) onto [-jitter, +jitter)
    spread = policy.jitter_fraction * (2.0 * random_source() - 1.0)
    delay = round(base * (1.0 + spread))
    return max(0, min(policy.max_delay_ms, delay))


async def sleep_with_abort(delay_ms: int, cancel_event: asyncio.Event) -> bool:
    """
    Sleep for ``delay_ms`` unless ``cancel_event`` is set first.

    Returns:
        True if the sleep was aborted by cancellation, False if it elapsed
    """
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=max(0, delay_ms) / 1000)
    except TimeoutError:
        return False
    return True


def format_duration_ms(ms: int | float) -> str:
    """Format a millisecond duration for log output."""
    ms = max(0, round(ms))
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        seconds = ms / 1000
        return f"{seconds:.1f}s".replace(".0s", "s")
    minutes, rest = divmod(ms // 1000, 60)
    return f"{minutes}m {rest}s" if rest else f"{minutes}m"
