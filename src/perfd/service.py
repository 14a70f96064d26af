"""Profiler service: owns the caches, the registry and every sampler.

One CPU sampler covers all monitored subjects. Network and memory sampling
is per subject, so each start_monitoring() builds a pair of samplers and
each stop_monitoring() tears them down.
"""

import threading

import structlog

from perfd.cache import SampleStore, make_cache
from perfd.clock import Clock, MonotonicClock
from perfd.config import Config
from perfd.cpu import CpuUsageSampler
from perfd.memory import CommandRunner, MemoryLevelsSampler
from perfd.network import NetworkCollector, UidNotFoundError
from perfd.registry import ProcessRegistry
from perfd.sampler import Sampler
from perfd.samples import MetricFamily, Sample

log = structlog.get_logger()


class ProfilerService:
    """Starts, stops and queries the samplers for a set of subjects."""

    def __init__(
        self,
        config: Config,
        clock: Clock | None = None,
        memory_runner: CommandRunner | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or MonotonicClock()
        self.memory_runner = memory_runner
        self.caches: dict[MetricFamily, SampleStore] = {
            family: make_cache(config.cache.capacity) for family in MetricFamily
        }
        self.registry = ProcessRegistry()
        self.cpu_sampler = CpuUsageSampler(
            self.caches[MetricFamily.CPU],
            self.clock,
            registry=self.registry,
            proc_root=config.procfs.proc_root,
            clock_ticks=config.procfs.clock_ticks,
            interval=config.sampling.cpu_interval,
        )
        self._subject_samplers: dict[int, list[Sampler]] = {}
        self._running = False
        # Serializes sampler lifecycle; sampling threads never take it
        self._lock = threading.Lock()
        # Guards _subject_samplers only; never held across a join
        self._samplers_lock = threading.Lock()

    @property
    def running(self) -> bool:
        """Whether samplers are active."""
        return self._running

    @property
    def samplers(self) -> list[Sampler]:
        """Every sampler owned by the service, CPU first."""
        return self._all_samplers()

    def _all_samplers(self) -> list[Sampler]:
        result: list[Sampler] = [self.cpu_sampler]
        with self._samplers_lock:
            for samplers in self._subject_samplers.values():
                result.extend(samplers)
        return result

    def cache(self, family: MetricFamily | str) -> SampleStore:
        """Return the cache for a metric family.

        Raises:
            ValueError: If ``family`` is not a known metric family.
        """
        return self.caches[MetricFamily(family)]

    def now(self) -> int:
        """Current clock reading, in the same unit as sample timestamps."""
        return self.clock.now()

    def start(self) -> None:
        """Start every sampler. No-op if already running."""
        with self._lock:
            if self._running:
                return
            for sampler in self._all_samplers():
                sampler.start()
            self._running = True
        log.info("service_started", subjects=len(self.registry))

    def stop(self) -> None:
        """Stop every sampler and wait for in-flight passes to finish."""
        with self._lock:
            if not self._running:
                return
            for sampler in self._all_samplers():
                sampler.stop()
            self._running = False
        log.info("service_stopped")

    def start_monitoring(self, pid: int) -> bool:
        """Begin sampling ``pid``.

        Returns:
            False if the pid was already monitored.
        """
        with self._lock:
            if not self.registry.add(pid):
                return False

            samplers: list[Sampler] = []
            try:
                samplers.append(self._network_collector(pid))
            except UidNotFoundError as e:
                log.warning("network_sampling_disabled", pid=pid, error=str(e))
            samplers.append(self._memory_sampler(pid))
            with self._samplers_lock:
                self._subject_samplers[pid] = samplers

            if self._running:
                for sampler in samplers:
                    sampler.start()

        log.info(
            "monitoring_started",
            pid=pid,
            samplers=[s.name for s in samplers],
        )
        return True

    def stop_monitoring(self, pid: int) -> bool:
        """Stop sampling ``pid``. Stored samples are kept.

        Returns:
            False if the pid was not monitored.
        """
        with self._lock:
            if not self.registry.remove(pid):
                return False
            with self._samplers_lock:
                samplers = self._subject_samplers.pop(pid, [])

        # A pass may be inside a slow command; join without holding any lock
        for sampler in samplers:
            sampler.stop()

        log.info("monitoring_stopped", pid=pid)
        return True

    def clear(self) -> None:
        """Stop monitoring every subject."""
        for pid in self.registry.snapshot():
            self.stop_monitoring(pid)

    def query(
        self, family: MetricFamily | str, subject: int, from_ts: int, to_ts: int
    ) -> list[Sample]:
        """Return samples of ``family`` for ``subject`` with from_ts < timestamp <= to_ts.

        Raises:
            ValueError: If ``family`` is not a known metric family.
        """
        return self.cache(family).retrieve(subject, from_ts, to_ts)

    def status(self) -> dict:
        """Snapshot of service state for the status request and heartbeats."""
        samplers = self.samplers
        return {
            "running": self._running,
            "subjects": self.registry.snapshot(),
            "samples": {family.value: len(cache) for family, cache in self.caches.items()},
            "samplers": [
                {
                    "name": s.name,
                    "running": s.running,
                    "ticks": s.ticks,
                    "failures": s.failures,
                }
                for s in samplers
            ],
        }

    def _network_collector(self, pid: int) -> NetworkCollector:
        network = self.config.network
        return NetworkCollector.for_process(
            pid,
            self.caches[MetricFamily.CONNECTIONS],
            self.caches[MetricFamily.TRAFFIC],
            self.clock,
            proc_root=self.config.procfs.proc_root,
            connection_tables=network.connection_tables,
            traffic_stats=network.traffic_stats,
            listen_filter=network.listen_filter,
            interval=self.config.sampling.network_interval,
        )

    def _memory_sampler(self, pid: int) -> MemoryLevelsSampler:
        memory = self.config.memory
        return MemoryLevelsSampler(
            pid,
            self.caches[MetricFamily.MEMORY],
            self.clock,
            command=memory.command,
            runner=self.memory_runner,
            timeout=memory.command_timeout,
            interval=self.config.sampling.memory_interval,
        )
