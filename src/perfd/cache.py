"""Thread-safe sample stores, one per metric family.

Samplers append from their own threads; the query server reads ranges
from the event loop. Every method holds the store lock only for the
in-memory append or scan.
"""

import itertools
import threading
from typing import Protocol

from perfd.ringbuffer import TimeValueBuffer
from perfd.samples import ANY_SUBJECT, Sample, in_range, subject_matches


class SampleStore(Protocol):
    """Contract shared by the unbounded and bounded caches."""

    def add(self, sample: Sample) -> None: ...

    def retrieve(self, subject: int, from_ts: int, to_ts: int) -> list[Sample]: ...

    def __len__(self) -> int: ...


def _check_storable(sample: Sample) -> None:
    if sample.subject == ANY_SUBJECT:
        raise ValueError("ANY_SUBJECT is a query wildcard and cannot be stored")


class SampleCache:
    """Append-only sample store.

    Grows without bound; use BoundedSampleCache where memory must be capped.
    """

    def __init__(self) -> None:
        self._samples: list[Sample] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def add(self, sample: Sample) -> None:
        """Append a sample."""
        _check_storable(sample)
        with self._lock:
            self._samples.append(sample)

    def retrieve(self, subject: int, from_ts: int, to_ts: int) -> list[Sample]:
        """Return samples for ``subject`` (or ANY_SUBJECT) with from_ts < ts <= to_ts.

        Results keep insertion order.
        """
        with self._lock:
            return [
                s
                for s in self._samples
                if subject_matches(subject, s.subject) and in_range(s.timestamp, from_ts, to_ts)
            ]


class BoundedSampleCache:
    """Sample store keeping at most ``capacity`` samples per subject.

    Each subject gets its own TimeValueBuffer. Values carry a global
    insertion sequence number so ANY_SUBJECT queries can merge the
    per-subject rings back into insertion order.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._buffers: dict[int, TimeValueBuffer[tuple[int, Sample]]] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            buffers = list(self._buffers.values())
        return sum(len(b) for b in buffers)

    def add(self, sample: Sample) -> None:
        """Append a sample, evicting the subject's oldest sample when full."""
        _check_storable(sample)
        with self._lock:
            buffer = self._buffers.get(sample.subject)
            if buffer is None:
                buffer = TimeValueBuffer(self.capacity)
                self._buffers[sample.subject] = buffer
            seq = next(self._sequence)
            buffer.add((seq, sample), sample.timestamp)

    def retrieve(self, subject: int, from_ts: int, to_ts: int) -> list[Sample]:
        """Return samples for ``subject`` (or ANY_SUBJECT) with from_ts < ts <= to_ts."""
        with self._lock:
            if subject == ANY_SUBJECT:
                buffers = list(self._buffers.values())
            else:
                buffer = self._buffers.get(subject)
                buffers = [buffer] if buffer is not None else []

        entries = [e.value for b in buffers for e in b.get_range(from_ts, to_ts)]
        if len(buffers) > 1:
            entries.sort(key=lambda pair: pair[0])
        return [sample for _, sample in entries]


def make_cache(capacity: int) -> SampleCache | BoundedSampleCache:
    """Return an unbounded cache for capacity 0, a bounded one otherwise."""
    if capacity < 0:
        raise ValueError(f"capacity must be >= 0, got {capacity}")
    if capacity == 0:
        return SampleCache()
    return BoundedSampleCache(capacity)
