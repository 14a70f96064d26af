"""Memory levels sampling from ``dumpsys meminfo --checkin`` output.

The checkin report is a flat comma-separated record whose field positions
depend on the leading format version. Positions used here (0-based):

    0        format version (3 or 4)
    1-2      pid, process name
    3-30     max/allocated/free/pss/swappable/shared dirty/shared clean,
             four columns each (native, dalvik, other, total)
    31-34    private dirty (native, dalvik, other, total)
    35-38    private clean (native, dalvik, other, total)
    39-42    swapped out
    43-46    swapped out pss (version 4 only)
    43 / 47  first category label (version 3 / 4)

From the category start, each label is followed by a fixed group of numeric
columns: 6 in version 3 (pss, swappable pss, shared dirty, shared clean,
private dirty, private clean), 8 in version 4 (adds swapped out and swapped
out pss). All values are KB.
"""

import functools
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

import structlog

from perfd.cache import SampleStore
from perfd.clock import Clock
from perfd.sampler import Sampler
from perfd.samples import MemoryLevels, Sample

log = structlog.get_logger()

DEFAULT_COMMAND = ("dumpsys", "meminfo", "--checkin")

# Lines before this one are preamble noise
HEADER_PREFIX = "time,"

MIN_SUPPORTED_VERSION = 3

CommandRunner = Callable[[list[str]], str | None]


class Bucket(Enum):
    """Output buckets for memory categories."""

    JAVA = "java"
    NATIVE = "native"
    STACK = "stack"
    GRAPHICS = "graphics"
    CODE = "code"
    OTHER = "other"
    UNKNOWN = "unknown"


CATEGORY_BUCKETS: dict[str, Bucket] = {
    ".art mmap": Bucket.JAVA,
    "Stack": Bucket.STACK,
    "Gfx dev": Bucket.GRAPHICS,
    "EGL mtrack": Bucket.GRAPHICS,
    "GL mtrack": Bucket.GRAPHICS,
    ".so mmap": Bucket.CODE,
    ".jar mmap": Bucket.CODE,
    ".apk mmap": Bucket.CODE,
    ".ttf mmap": Bucket.CODE,
    ".dex mmap": Bucket.CODE,
    ".oat mmap": Bucket.CODE,
    "Dalvik Other": Bucket.OTHER,
    "Cursor": Bucket.OTHER,
    "Ashmem": Bucket.OTHER,
    "Other dev": Bucket.OTHER,
    "Other mmap": Bucket.OTHER,
    "Other mtrack": Bucket.OTHER,
    "Unknown": Bucket.OTHER,
}

# Aggregate columns shared by every version for the two main heaps
AGGREGATE_BUCKETS: dict[int, Bucket] = {
    31: Bucket.NATIVE,  # native private dirty
    32: Bucket.JAVA,  # dalvik private dirty
    35: Bucket.NATIVE,  # native private clean
    36: Bucket.JAVA,  # dalvik private clean
}


@dataclass(frozen=True)
class CheckinLayout:
    """Version-dependent positions in the checkin record."""

    version: int
    categories_start: int  # Token index of the first category label
    stats_per_category: int  # Numeric columns after each label
    private_dirty_offset: int = 4  # Within a category's numeric group
    private_clean_offset: int = 5


CHECKIN_LAYOUTS: dict[int, CheckinLayout] = {
    3: CheckinLayout(version=3, categories_start=43, stats_per_category=6),
    4: CheckinLayout(version=4, categories_start=47, stats_per_category=8),
}


class _State(Enum):
    VERSION = auto()
    AGGREGATES = auto()
    LABEL = auto()
    STATS = auto()
    REJECTED = auto()


class CheckinStateMachine:
    """Consumes checkin tokens one at a time and accumulates bucket totals.

    States:
        VERSION     token 0 selects the layout, unsupported versions reject
        AGGREGATES  fixed positions up to the layout's category start
        LABEL       a category label selects the bucket for the next group
        STATS       the label's numeric group; only private dirty/clean count

    The record is complete only when it ends right before a label, i.e.
    with no partially consumed category group.
    """

    def __init__(self, layouts: dict[int, CheckinLayout] | None = None) -> None:
        self.layouts = layouts if layouts is not None else CHECKIN_LAYOUTS
        self.state = _State.VERSION
        self.layout: CheckinLayout | None = None
        self.version: int | None = None
        self.totals = {bucket: 0 for bucket in Bucket}
        self._index = 0
        self._bucket = Bucket.UNKNOWN
        self._stat = 0

    @property
    def rejected(self) -> bool:
        """Whether the record has been rejected."""
        return self.state is _State.REJECTED

    def feed(self, token: str) -> bool:
        """Consume one token. Returns False once the record is rejected."""
        if self.state is _State.REJECTED:
            return False

        if self.state is _State.VERSION:
            self._on_version(token)
        elif self.state is _State.AGGREGATES:
            self._on_aggregate(token)
        elif self.state is _State.LABEL:
            self._bucket = CATEGORY_BUCKETS.get(token.strip(), Bucket.UNKNOWN)
            self._stat = 0
            self.state = _State.STATS
        else:
            self._on_stat(token)

        self._index += 1
        return self.state is not _State.REJECTED

    def result(self) -> MemoryLevels | None:
        """Return the accumulated levels, or None if the record is incomplete."""
        if self.state is not _State.LABEL:
            return None
        t = self.totals
        java = t[Bucket.JAVA]
        native = t[Bucket.NATIVE]
        stack = t[Bucket.STACK]
        graphics = t[Bucket.GRAPHICS]
        code = t[Bucket.CODE]
        other = t[Bucket.OTHER]
        return MemoryLevels(
            java=java,
            native=native,
            stack=stack,
            graphics=graphics,
            code=code,
            other=other,
            total=java + native + stack + graphics + code + other,
        )

    def _reject(self) -> None:
        self.state = _State.REJECTED

    def _add(self, bucket: Bucket, token: str) -> None:
        try:
            value = int(token)
        except ValueError:
            self._reject()
            return
        self.totals[bucket] += value

    def _on_version(self, token: str) -> None:
        try:
            self.version = int(token)
        except ValueError:
            self._reject()
            return
        self.layout = self.layouts.get(self.version)
        if self.version < MIN_SUPPORTED_VERSION or self.layout is None:
            self._reject()
            return
        self._advance_aggregates()

    def _on_aggregate(self, token: str) -> None:
        bucket = AGGREGATE_BUCKETS.get(self._index)
        if bucket is not None:
            self._add(bucket, token)
            if self.rejected:
                return
        self._advance_aggregates()

    def _advance_aggregates(self) -> None:
        assert self.layout is not None
        if self._index + 1 >= self.layout.categories_start:
            self.state = _State.LABEL
        else:
            self.state = _State.AGGREGATES

    def _on_stat(self, token: str) -> None:
        assert self.layout is not None
        if self._stat in (self.layout.private_dirty_offset, self.layout.private_clean_offset):
            if self._bucket is not Bucket.UNKNOWN:
                self._add(self._bucket, token)
                if self.rejected:
                    return
        self._stat += 1
        if self._stat == self.layout.stats_per_category:
            self.state = _State.LABEL


def checkin_tokens(output: str) -> list[str] | None:
    """Return the comma-separated tokens of the record following the header row.

    The checkin format prints one record per line; only the first non-empty
    line after the header is read, and any later record is ignored.

    Returns:
        Tokens of the first record after the ``time,`` header, or None if the
        header is missing.
    """
    lines = output.splitlines()
    for i, line in enumerate(lines):
        if line.startswith(HEADER_PREFIX):
            record = next((ln.strip() for ln in lines[i + 1 :] if ln.strip()), None)
            break
    else:
        return None

    if record is None:
        return []
    tokens = record.split(",")
    if tokens and tokens[-1] == "":
        tokens.pop()
    return tokens


class MemoryLevelsParser:
    """Parses checkin output into MemoryLevels."""

    def __init__(self, layouts: dict[int, CheckinLayout] | None = None) -> None:
        self.layouts = layouts

    def parse(self, output: str) -> MemoryLevels | None:
        """Parse a full command output.

        Returns:
            MemoryLevels, or None for a missing header, unsupported version,
            non-numeric value or truncated record.
        """
        tokens = checkin_tokens(output)
        if tokens is None:
            return None
        machine = CheckinStateMachine(self.layouts)
        for token in tokens:
            if not machine.feed(token):
                log.debug("meminfo_rejected", version=machine.version)
                return None
        return machine.result()


def run_command(args: list[str], timeout: float | None = None) -> str | None:
    """Run a command and return its stdout, or None on any failure."""
    try:
        result = subprocess.run(
            args,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        log.debug("command_not_found", command=args[0])
        return None
    except subprocess.TimeoutExpired:
        log.warning("command_timed_out", command=args[0], timeout=timeout)
        return None
    except OSError as e:
        log.debug("command_failed", command=args[0], error=str(e))
        return None

    if result.returncode != 0:
        log.debug("command_failed", command=args[0], returncode=result.returncode)
        return None
    return result.stdout


class MemoryLevelsSampler(Sampler):
    """Samples the private memory breakdown of one subject."""

    def __init__(
        self,
        pid: int,
        cache: SampleStore,
        clock: Clock,
        *,
        command: tuple[str, ...] | list[str] = DEFAULT_COMMAND,
        runner: CommandRunner | None = None,
        timeout: float = 0.0,
        interval: float = 0.3,
    ) -> None:
        super().__init__(f"memory-{pid}", interval)
        self.pid = pid
        self.cache = cache
        self.clock = clock
        self.command = list(command)
        self.runner = runner or functools.partial(run_command, timeout=timeout or None)
        self.parser = MemoryLevelsParser()

    def sample(self) -> None:
        output = self.runner([*self.command, str(self.pid)])
        if output is None:
            return
        levels = self.parser.parse(output)
        if levels is None:
            log.debug("meminfo_unparsed", pid=self.pid)
            return
        self.cache.add(Sample(self.pid, self.clock.now(), levels))
