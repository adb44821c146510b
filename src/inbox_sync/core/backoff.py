"""Exponential retry delay for failing mailbox connections."""

from __future__ import annotations

from datetime import timedelta

BASE_DELAY = timedelta(minutes=5)
MAX_DELAY = timedelta(hours=4)


def backoff_delay(consecutive_failures: int) -> timedelta:
    """Return the wait before the next attempt after ``consecutive_failures``.

    The delay starts at five minutes, doubles with every further failure and
    never exceeds four hours. The count is always incremented before this is
    called, so anything below one is a programming error.
    """
    if consecutive_failures <= 0:
        raise ValueError("consecutive_failures must be at least 1")
    # Past this exponent the product is beyond the ceiling anyway.
    exponent = min(consecutive_failures - 1, 16)
    return min(BASE_DELAY * (2**exponent), MAX_DELAY)


__all__ = ["BASE_DELAY", "MAX_DELAY", "backoff_delay"]
