# src/perfd/ringbuffer.py
"""Fixed-capacity ring buffer for timestamped values.

Used where a time series must not grow without bound. Slots live in a
preallocated list; ``_start`` points at the oldest entry and ``_size``
counts resident entries, so insert and evict are both O(1).
"""

import threading
from dataclasses import dataclass
from typing import Generic, TypeVar

from perfd.samples import in_range

T = TypeVar("T")


@dataclass(frozen=True)
class TimeValue(Generic[T]):
    """Single entry in the ring buffer."""

    timestamp: int
    value: T


class TimeValueBuffer(Generic[T]):
    """Thread-safe ring buffer of (timestamp, value) pairs.

    Holds at most ``capacity`` of the most recent entries; adding beyond
    capacity overwrites the oldest one.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._slots: list[TimeValue[T] | None] = [None] * capacity
        self._start = 0
        self._size = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        """Return number of resident entries."""
        with self._lock:
            return self._size

    def add(self, value: T, timestamp: int) -> None:
        """Append a value, evicting the oldest entry when full."""
        entry = TimeValue(timestamp=timestamp, value=value)
        with self._lock:
            if self._size < self._capacity:
                self._slots[(self._start + self._size) % self._capacity] = entry
                self._size += 1
            else:
                self._slots[self._start] = entry
                self._start = (self._start + 1) % self._capacity

    def get(self, index: int) -> TimeValue[T]:
        """Return the index-th oldest resident entry.

        Raises:
            IndexError: If index is negative or >= len(self).
        """
        with self._lock:
            if index < 0 or index >= self._size:
                raise IndexError(f"index {index} out of range for {self._size} entries")
            entry = self._slots[(self._start + index) % self._capacity]
        assert entry is not None
        return entry

    def get_range(self, from_ts: int, to_ts: int) -> list[TimeValue[T]]:
        """Return entries with from_ts < timestamp <= to_ts, oldest first."""
        with self._lock:
            result = []
            for offset in range(self._size):
                entry = self._slots[(self._start + offset) % self._capacity]
                if entry is not None and in_range(entry.timestamp, from_ts, to_ts):
                    result.append(entry)
            return result
