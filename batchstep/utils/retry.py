from __future__ import annotations

import random
from datetime import datetime, timedelta

DEFAULT_MAX_DELAY = 3600.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Compute exponential backoff with jitter, capped at ``max_delay`` seconds."""
    delay = min(base ** attempt, max_delay)
    return delay + random.uniform(0, jitter)


def next_poll_time(
    now: datetime,
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> datetime:
    """Deadline for a chunk entering its ``attempt``-th poll wait."""
    delay = compute_backoff(attempt, base=base, jitter=jitter, max_delay=max_delay)
    return now + timedelta(seconds=delay)
