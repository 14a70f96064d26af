"""Network sampling: open connections and traffic bytes per app uid.

Network activity is attributed by uid, not pid, so each subject's uid is
resolved from /proc/<pid>/status once, when its collector is built.

Connection tables (/proc/net/tcp and friends) look like:

      sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid ...
       0: 00000000:1F90 00000000:0000 0A 00000000:00000000 00:00000000 00000000 10023 ...

Traffic accounting (/proc/net/xt_qtaguid/stats) looks like:

    idx iface acct_tag_hex uid_tag_int cnt_set rx_bytes rx_packets tx_bytes ...
    2 wlan0 0x0 10023 0 4096 12 2048 ...
"""

import re
from pathlib import Path

import structlog

from perfd.cache import SampleStore
from perfd.clock import Clock
from perfd.procfs import int_token, read_file, read_lines, token_equals
from perfd.sampler import Sampler
from perfd.samples import ConnectionCount, Sample, TrafficBytes

log = structlog.get_logger()

DEFAULT_CONNECTION_TABLES = ("tcp", "tcp6", "udp", "udp6", "raw", "raw6")
DEFAULT_TRAFFIC_STATS = "net/xt_qtaguid/stats"

# Token positions in connection table rows
CONNECTION_UID_INDEX = 7

# Token positions in xt_qtaguid rows
TRAFFIC_UID_INDEX = 3
TRAFFIC_RX_BYTES_INDEX = 5
TRAFFIC_TX_BYTES_INDEX = 7

# TCP_LISTEN in the kernel's st column
LISTEN_STATE = "0A"

LISTEN_FILTERS = ("scan", "regex")

# Row number, then all-zero local and remote addresses, then LISTEN
LISTENING_PATTERN = re.compile(
    r"^\s*\d+:\s+0+:[0-9A-Fa-f]{4}\s+0+:[0-9A-Fa-f]{4}\s+0A\s",
    re.ASCII,
)

_UID_PATTERN = re.compile(r"^Uid:\s*(\d+)", re.ASCII | re.MULTILINE)

# Same character classes as \d, \s and [0-9A-Fa-f] under re.ASCII
_DIGITS = frozenset("0123456789")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_SPACES = frozenset(" \t\n\r\f\v")
_ZERO = frozenset("0")
_PORT_WIDTH = 4


class UidNotFoundError(LookupError):
    """Raised when a process's uid cannot be resolved from its status file."""


def resolve_uid(proc_root: Path | str, pid: int) -> int | None:
    """Return the real uid of ``pid`` from /proc/<pid>/status, or None."""
    content = read_file(Path(proc_root) / str(pid) / "status")
    if content is None:
        return None
    match = _UID_PATTERN.search(content)
    if match is None:
        return None
    return int(match.group(1))


def matches_listening_pattern(line: str) -> bool:
    """Regex form of the listen-on-all-interfaces filter."""
    return LISTENING_PATTERN.match(line) is not None


def _skip(line: str, pos: int, chars: frozenset[str]) -> int:
    while pos < len(line) and line[pos] in chars:
        pos += 1
    return pos


def scan_listening(line: str) -> bool:
    """Incremental-scanner form of the listen-on-all-interfaces filter.

    Accepts and rejects exactly the same lines as LISTENING_PATTERN.
    """
    n = len(line)
    pos = _skip(line, 0, _SPACES)

    # Heading row number and colon
    digits_end = _skip(line, pos, _DIGITS)
    if digits_end == pos or digits_end >= n or line[digits_end] != ":":
        return False
    pos = digits_end + 1

    # Local then remote address: zero run, colon, fixed-width hex port
    for _ in range(2):
        spaces_end = _skip(line, pos, _SPACES)
        if spaces_end == pos:
            return False
        zeros_end = _skip(line, spaces_end, _ZERO)
        if zeros_end == spaces_end or zeros_end >= n or line[zeros_end] != ":":
            return False
        port_start = zeros_end + 1
        port_end = port_start + _PORT_WIDTH
        if port_end > n or any(c not in _HEX_DIGITS for c in line[port_start:port_end]):
            return False
        pos = port_end

    spaces_end = _skip(line, pos, _SPACES)
    if spaces_end == pos:
        return False
    state_end = spaces_end + len(LISTEN_STATE)
    return (
        line.startswith(LISTEN_STATE, spaces_end) and state_end < n and line[state_end] in _SPACES
    )


def get_listen_filter(name: str):
    """Return the listening-line predicate for a configured filter name.

    Raises:
        ValueError: If ``name`` is not one of LISTEN_FILTERS.
    """
    if name == "scan":
        return scan_listening
    if name == "regex":
        return matches_listening_pattern
    raise ValueError(f"Unknown listen_filter: {name!r}. Must be one of {LISTEN_FILTERS}")


class ConnectionCountParser:
    """Counts connections owned by a uid across the kernel's socket tables."""

    def __init__(self, tables: list[Path], uid: int, listen_filter: str = "scan") -> None:
        self.tables = tables
        self.uid = uid
        self._uid_token = str(uid)
        self._is_listening = get_listen_filter(listen_filter)

    def count_lines(self, lines: list[str]) -> int:
        """Count rows owned by the uid that are not listening on all interfaces."""
        count = 0
        for line in lines:
            if not token_equals(line, CONNECTION_UID_INDEX, self._uid_token):
                continue
            if self._is_listening(line):
                continue
            count += 1
        return count

    def count(self) -> int | None:
        """Return the connection count, or None if no table could be read.

        Tables missing on this kernel (e.g. raw6) are skipped.
        """
        total = 0
        readable = 0
        for table in self.tables:
            lines = read_lines(table)
            if lines is None:
                continue
            readable += 1
            total += self.count_lines(lines)
        return total if readable else None


class TrafficByteParser:
    """Sums send/receive bytes for a uid across all accounting rows."""

    def __init__(self, stats_path: Path, uid: int) -> None:
        self.stats_path = stats_path
        self.uid = uid
        self._uid_token = str(uid)

    def parse_lines(self, lines: list[str]) -> TrafficBytes:
        """Sum bytes over every row owned by the uid (one per interface/tag)."""
        sent = 0
        received = 0
        for line in lines:
            if not token_equals(line, TRAFFIC_UID_INDEX, self._uid_token):
                continue
            tx = int_token(line, TRAFFIC_TX_BYTES_INDEX)
            rx = int_token(line, TRAFFIC_RX_BYTES_INDEX)
            if tx is None or rx is None:
                continue
            sent += tx
            received += rx
        return TrafficBytes(sent=sent, received=received)

    def read(self) -> TrafficBytes | None:
        """Return traffic totals, or None if the accounting file is unreadable."""
        lines = read_lines(self.stats_path)
        if lines is None:
            return None
        return self.parse_lines(lines)


class NetworkCollector(Sampler):
    """Samples connection count and traffic bytes for one subject."""

    def __init__(
        self,
        pid: int,
        uid: int,
        connections_cache: SampleStore,
        traffic_cache: SampleStore,
        clock: Clock,
        *,
        proc_root: Path | str = "/proc",
        connection_tables: tuple[str, ...] | list[str] = DEFAULT_CONNECTION_TABLES,
        traffic_stats: str = DEFAULT_TRAFFIC_STATS,
        listen_filter: str = "scan",
        interval: float = 0.3,
    ) -> None:
        super().__init__(f"network-{pid}", interval)
        self.pid = pid
        self.uid = uid
        self.connections_cache = connections_cache
        self.traffic_cache = traffic_cache
        self.clock = clock
        root = Path(proc_root)
        self.connections = ConnectionCountParser(
            [root / "net" / table for table in connection_tables],
            uid,
            listen_filter=listen_filter,
        )
        self.traffic = TrafficByteParser(root / traffic_stats, uid)

    @classmethod
    def for_process(
        cls,
        pid: int,
        connections_cache: SampleStore,
        traffic_cache: SampleStore,
        clock: Clock,
        *,
        proc_root: Path | str = "/proc",
        **kwargs,
    ) -> "NetworkCollector":
        """Build a collector for ``pid``, resolving its uid.

        Raises:
            UidNotFoundError: If the uid cannot be read from /proc/<pid>/status.
        """
        uid = resolve_uid(proc_root, pid)
        if uid is None:
            raise UidNotFoundError(f"No uid found for pid {pid}")
        return cls(
            pid, uid, connections_cache, traffic_cache, clock, proc_root=proc_root, **kwargs
        )

    def sample(self) -> None:
        count = self.connections.count()
        if count is None:
            log.debug("connection_tables_unreadable", pid=self.pid)
        else:
            self.connections_cache.add(
                Sample(self.pid, self.clock.now(), ConnectionCount(count=count))
            )

        traffic = self.traffic.read()
        if traffic is None:
            log.debug("traffic_stats_unreadable", pid=self.pid)
        else:
            self.traffic_cache.add(Sample(self.pid, self.clock.now(), traffic))
