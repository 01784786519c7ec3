from __future__ import annotations

from datetime import datetime, timedelta


# (highest retry count in tier, delay) in ascending order; counts past the last tier use ABANDON_DELAY.
RETRY_TIERS: tuple[tuple[int, timedelta], ...] = (
    (3, timedelta(seconds=20)),
    (6, timedelta(minutes=3)),
    (12, timedelta(minutes=60)),
)
ABANDON_DELAY = timedelta(minutes=120)


def next_attempt_delay(retry_count: int) -> timedelta:
    """Return the wait before the next push attempt.

    ``retry_count`` is the number of attempts already made, including the one
    that just failed. There is no jitter.
    """
    count = max(1, int(retry_count))
    for ceiling, delay in RETRY_TIERS:
        if count <= ceiling:
            return delay
    return ABANDON_DELAY


def next_attempt_at(retry_count: int, *, failed_at: datetime) -> datetime:
    return failed_at + next_attempt_delay(retry_count)
