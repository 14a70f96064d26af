"""Background sampler lifecycle.

Each sampler owns one daemon thread. The loop waits one interval on a stop
event, runs a collection pass, and repeats. stop() sets the event and joins,
so an in-flight pass always completes and nothing is written afterwards.

The thread holds only a weak reference to its sampler between passes. When
the last reference to a running sampler goes away its finalizer sets the
stop event, so an abandoned sampler stops like one that was closed.

start() and stop() are meant to be called from a single control path; they
are safe against the sampling loop, not against each other.
"""

import threading
import weakref
from abc import ABC, abstractmethod

import structlog

log = structlog.get_logger()


def _sampling_loop(
    ref: "weakref.ref[Sampler]", stop_event: threading.Event, interval: float
) -> None:
    while not stop_event.wait(interval):
        sampler = ref()
        if sampler is None:
            return
        sampler.run_once()
        del sampler


class Sampler(ABC):
    """Periodic collector running on a dedicated thread."""

    def __init__(self, name: str, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.name = name
        self.interval = interval
        self.ticks = 0
        self.failures = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._finalizer: weakref.finalize | None = None

    @property
    def running(self) -> bool:
        """Whether the sampling thread is active."""
        return self._thread is not None

    def start(self) -> None:
        """Spawn the sampling thread. No-op if already running."""
        if self._thread is not None:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=_sampling_loop,
            args=(weakref.ref(self), self._stop_event, self.interval),
            name=f"perfd-{self.name}",
            daemon=True,
        )
        self._finalizer = weakref.finalize(self, self._stop_event.set)
        self._thread.start()
        log.debug("sampler_started", sampler=self.name, interval=self.interval)

    def stop(self) -> None:
        """Signal the thread and wait for the current pass to finish.

        No-op if not running.
        """
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if self._finalizer is not None:
            self._finalizer.detach()
            self._finalizer = None
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None
        log.debug("sampler_stopped", sampler=self.name, ticks=self.ticks)

    def close(self) -> None:
        """Release the sampler (stops it if running)."""
        self.stop()

    def __enter__(self) -> "Sampler":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run_once(self) -> None:
        """Run one collection pass, containing any failure to this tick."""
        self.ticks += 1
        try:
            self.sample()
        except Exception as e:
            self.failures += 1
            log.exception("sample_failed", sampler=self.name, error=str(e))

    @abstractmethod
    def sample(self) -> None:
        """Collect once and append results to the cache."""
