"""Set of process ids currently under observation."""

import threading


class ProcessRegistry:
    """Thread-safe, insertion-ordered set of pids.

    Samplers call snapshot() once per tick and iterate the copy, so the
    lock is never held while reading /proc.
    """

    def __init__(self) -> None:
        self._pids: dict[int, None] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._pids

    def add(self, pid: int) -> bool:
        """Start observing ``pid``. Returns False if it was already registered."""
        with self._lock:
            if pid in self._pids:
                return False
            self._pids[pid] = None
            return True

    def remove(self, pid: int) -> bool:
        """Stop observing ``pid``. Returns False if it was not registered."""
        with self._lock:
            if pid not in self._pids:
                return False
            del self._pids[pid]
            return True

    def snapshot(self) -> list[int]:
        """Return a copy of the registered pids in registration order."""
        with self._lock:
            return list(self._pids)
