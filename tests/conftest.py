"""Shared test fixtures for perfd."""

import tempfile
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from perfd.config import Config, ProcfsConfig, SamplingConfig
from perfd.samples import CpuUsage, Sample
from perfd.service import ProfilerService

FIXTURES = Path(__file__).parent / "fixtures"


class FakeClock:
    """Deterministic clock; each now() advances by ``step`` nanoseconds."""

    def __init__(self, start: int = 1_000, step: int = 0) -> None:
        self.value = start
        self.step = step

    def now(self) -> int:
        current = self.value
        self.value += self.step
        return current

    def advance(self, nanos: int) -> None:
        self.value += nanos


def make_cpu_sample(subject: int, timestamp: int, process_ms: int = 10) -> Sample:
    """Create a CpuUsage sample for testing."""
    return Sample(
        subject=subject,
        timestamp=timestamp,
        payload=CpuUsage(system_time_ms=100, elapsed_time_ms=200, process_time_ms=process_ms),
    )


def write_proc_stat(proc_root: Path, values: list[int]) -> None:
    """Write /proc/stat with an aggregate cpu line."""
    line = "cpu  " + " ".join(str(v) for v in values)
    per_cpu = "cpu0 " + " ".join(str(v) for v in values)
    (proc_root / "stat").write_text(f"{line}\n{per_cpu}\nintr 12345\nctxt 67890\n")


def write_process_stat(
    proc_root: Path,
    pid: int,
    utime: int,
    stime: int,
    cutime: int = 0,
    cstime: int = 0,
    comm: str = "app",
) -> None:
    """Write /proc/<pid>/stat with the given CPU tick fields."""
    # Fields 3..13: state ppid pgrp session tty_nr tpgid flags minflt cminflt majflt cmajflt
    head = f"{pid} ({comm}) S 1 {pid} {pid} 0 -1 4194560 100 0 0 0"
    tail = "20 0 1 0 12345 1000000 200"
    proc_dir = proc_root / str(pid)
    proc_dir.mkdir(parents=True, exist_ok=True)
    (proc_dir / "stat").write_text(f"{head} {utime} {stime} {cutime} {cstime} {tail}\n")


def write_process_status(proc_root: Path, pid: int, uid: int) -> None:
    """Write /proc/<pid>/status with a Uid line."""
    proc_dir = proc_root / str(pid)
    proc_dir.mkdir(parents=True, exist_ok=True)
    (proc_dir / "status").write_text(
        f"Name:\tapp\nState:\tS (sleeping)\nPid:\t{pid}\n"
        f"Uid:\t{uid}\t{uid}\t{uid}\t{uid}\nGid:\t{uid}\t{uid}\t{uid}\t{uid}\n"
    )


TCP_HEADER = (
    "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt"
    "   uid  timeout inode"
)


def tcp_row(slot: int, local: str, remote: str, state: str, uid: int) -> str:
    """Build one /proc/net/tcp row."""
    return (
        f"   {slot}: {local} {remote} {state} 00000000:00000000 00:00000000 00000000"
        f" {uid:>5}        0 {40000 + slot} 1 0000000000000000 100 0 0 10 0"
    )


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    """Empty fake /proc tree."""
    root = tmp_path / "proc"
    (root / "net").mkdir(parents=True)
    return root


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104-108 characters and pytest's
    tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="pf_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock() -> FakeClock:
    """Clock that only moves when told to."""
    return FakeClock()


def meminfo_runner(args: list[str]) -> str:
    """Command runner that always returns the version 3 checkin report."""
    return (FIXTURES / "meminfo_v3.txt").read_text()


class BlockingRunner:
    """Command runner that hangs like a stuck dumpsys until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, args: list[str]) -> str:
        self.entered.set()
        self.release.wait(5.0)
        return meminfo_runner(args)


def populate_proc(proc_root: Path, pid: int, uid: int = 10023) -> None:
    """Give ``pid`` readable entries for every sampler."""
    write_proc_stat(proc_root, [1, 2, 3, 4, 5, 6, 7, 8, 9, 10])
    write_process_stat(proc_root, pid, utime=5, stime=3)
    write_process_status(proc_root, pid, uid)
    row = tcp_row(0, "0F02000A:A1B2", "5DB8D822:01BB", "01", uid)
    (proc_root / "net" / "tcp").write_text(f"{TCP_HEADER}\n{row}\n")
    stats = proc_root / "net" / "xt_qtaguid"
    stats.mkdir(exist_ok=True)
    (stats / "stats").write_text(
        "idx iface acct_tag_hex uid_tag_int cnt_set rx_bytes rx_packets tx_bytes tx_packets\n"
        f"2 wlan0 0x0 {uid} 0 4096 12 2048 9\n"
    )


@pytest.fixture
def service_config(proc_root: Path) -> Config:
    """Config pointing at the fake /proc with fast sampling."""
    config = Config()
    config.procfs = ProcfsConfig(proc_root=str(proc_root), clock_ticks=100)
    config.sampling = SamplingConfig(
        cpu_interval=0.01, network_interval=0.01, memory_interval=0.01
    )
    return config


@pytest.fixture
def service(service_config: Config, fake_clock: FakeClock) -> Iterator[ProfilerService]:
    """Stopped service with a canned meminfo runner."""
    svc = ProfilerService(service_config, clock=fake_clock, memory_runner=meminfo_runner)
    yield svc
    svc.stop()


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Apply all Config path property patches to the given ExitStack.

    Args:
        stack: ExitStack to register patches with
        base_path: Directory to use for all Config paths
    """
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "runtime_dir",
        new_callable=lambda: property(lambda self: base_path)
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch Config's directories to live under a short temporary path.

    Every derived path (config file, log, PID file, socket) follows.
    """
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path
