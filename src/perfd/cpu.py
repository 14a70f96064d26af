"""CPU time sampling from /proc/stat and /proc/<pid>/stat.

Both sources report time in scheduler ticks. Ticks are converted to
milliseconds with the platform tick rate; only 100 Hz and 1000 Hz are
supported.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import structlog

from perfd.cache import SampleStore
from perfd.clock import Clock
from perfd.procfs import int_token, read_file
from perfd.registry import ProcessRegistry
from perfd.sampler import Sampler
from perfd.samples import CpuUsage, Sample

log = structlog.get_logger()

# Ticks per second -> milliseconds per tick
MS_PER_TICK = {
    100: 10,
    1000: 1,
}

# user nice system idle iowait irq softirq steal guest guest_nice
SYSTEM_STAT_FIELDS = 10
IDLE_FIELD = 3

# proc(5) field numbers are 1-based over the whole record: pid is 1,
# comm is 2, state is 3. After the closing parenthesis token 0 is state.
_FIRST_FIELD_AFTER_COMM = 3
UTIME_FIELD = 14
STIME_FIELD = 15
CUTIME_FIELD = 16
CSTIME_FIELD = 17


def ms_per_tick(clock_ticks: int) -> int | None:
    """Return milliseconds per scheduler tick, or None for unsupported rates."""
    return MS_PER_TICK.get(clock_ticks)


def detect_clock_ticks() -> int:
    """Return the kernel tick rate (USER_HZ)."""
    return os.sysconf("SC_CLK_TCK")


@dataclass(frozen=True)
class SystemCpuTimes:
    """System-wide CPU time in milliseconds."""

    system_time_ms: int  # Everything except idle
    elapsed_time_ms: int  # Everything including idle


def parse_system_stat(content: str, tick_ms: int) -> SystemCpuTimes | None:
    """Parse the aggregate ``cpu`` line of /proc/stat.

    Args:
        content: Contents of /proc/stat (only the first line is used)
        tick_ms: Milliseconds per tick

    Returns:
        SystemCpuTimes, or None if the first line is malformed.
    """
    line = content.split("\n", 1)[0]
    parts = line.split()
    if len(parts) < SYSTEM_STAT_FIELDS + 1 or parts[0] != "cpu":
        return None
    try:
        values = [int(p) for p in parts[1 : SYSTEM_STAT_FIELDS + 1]]
    except ValueError:
        return None

    elapsed = sum(values)
    busy = elapsed - values[IDLE_FIELD]
    return SystemCpuTimes(system_time_ms=busy * tick_ms, elapsed_time_ms=elapsed * tick_ms)


def parse_process_stat(content: str, pid: int) -> int | None:
    """Parse /proc/<pid>/stat and return utime + stime + cutime + cstime in ticks.

    The command name is parenthesized and may contain spaces or parentheses,
    so positional parsing resumes after the last ``)`` of the record rather
    than splitting the whole line.

    Returns:
        Total CPU ticks, or None if the record is malformed or belongs to a
        different pid.
    """
    open_paren = content.find("(")
    close_paren = content.rfind(")")
    if open_paren <= 0 or close_paren < open_paren:
        return None

    try:
        record_pid = int(content[:open_paren].strip())
    except ValueError:
        return None
    if record_pid != pid:
        return None

    rest = close_paren + 1
    total = 0
    for field in (UTIME_FIELD, STIME_FIELD, CUTIME_FIELD, CSTIME_FIELD):
        value = int_token(content, field - _FIRST_FIELD_AFTER_COMM, rest)
        if value is None:
            return None
        total += value
    return total


class CpuUsageSampler(Sampler):
    """Samples CPU time for every registered pid.

    Each tick reads the system-wide baseline first; if that fails, the whole
    tick is dropped, since process time is only meaningful next to a
    contemporaneous system reading.
    """

    def __init__(
        self,
        cache: SampleStore,
        clock: Clock,
        *,
        registry: ProcessRegistry | None = None,
        proc_root: Path | str = "/proc",
        clock_ticks: int = 0,
        interval: float = 0.1,
    ) -> None:
        super().__init__("cpu", interval)
        self.cache = cache
        self.clock = clock
        self.registry = registry if registry is not None else ProcessRegistry()
        self.proc_root = Path(proc_root)
        self.clock_ticks = clock_ticks or detect_clock_ticks()
        self._tick_ms = ms_per_tick(self.clock_ticks)
        if self._tick_ms is None:
            # Every system pass fails until a supported rate is configured
            log.warning("cpu_tick_rate_unsupported", clock_ticks=self.clock_ticks)

    def read_system(self) -> SystemCpuTimes | None:
        """Read the system-wide CPU baseline."""
        if self._tick_ms is None:
            return None
        content = read_file(self.proc_root / "stat")
        if content is None:
            return None
        return parse_system_stat(content, self._tick_ms)

    def read_process_ms(self, pid: int) -> int | None:
        """Read CPU time consumed by ``pid`` (including reaped children), in ms."""
        if self._tick_ms is None:
            return None
        content = read_file(self.proc_root / str(pid) / "stat")
        if content is None:
            return None
        ticks = parse_process_stat(content, pid)
        if ticks is None:
            return None
        return ticks * self._tick_ms

    def sample(self) -> None:
        pids = self.registry.snapshot()
        if not pids:
            return

        system = self.read_system()
        if system is None:
            log.debug("cpu_system_read_failed", clock_ticks=self.clock_ticks)
            return

        for pid in pids:
            process_ms = self.read_process_ms(pid)
            if process_ms is None:
                log.debug("cpu_process_read_failed", pid=pid)
                continue
            self.cache.add(
                Sample(
                    subject=pid,
                    timestamp=self.clock.now(),
                    payload=CpuUsage(
                        system_time_ms=system.system_time_ms,
                        elapsed_time_ms=system.elapsed_time_ms,
                        process_time_ms=process_ms,
                    ),
                )
            )
