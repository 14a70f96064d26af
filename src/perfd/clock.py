"""Monotonic clock used to timestamp samples."""

import time
from typing import Protocol


class Clock(Protocol):
    """Source of sample timestamps (nanoseconds, monotonic)."""

    def now(self) -> int: ...


class MonotonicClock:
    """Clock backed by time.monotonic_ns().

    Timestamps have no wall-clock meaning; they are only comparable with
    other readings from the same boot.
    """

    def now(self) -> int:
        return time.monotonic_ns()


NANOS_PER_SECOND = 1_000_000_000


def seconds_to_nanos(seconds: float) -> int:
    """Convert a duration in seconds to nanoseconds."""
    return int(seconds * NANOS_PER_SECOND)
