"""Sample data model shared by samplers, caches and the query server."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Final, Union

# Query-only wildcard; never stored in a cache
ANY_SUBJECT: Final = -1


class MetricFamily(str, Enum):
    """Metric families, one cache per family."""

    CPU = "cpu"
    CONNECTIONS = "connections"
    TRAFFIC = "traffic"
    MEMORY = "memory"


@dataclass(frozen=True)
class CpuUsage:
    """CPU time consumed, in milliseconds since boot.

    System and elapsed times are the system-wide baseline read in the same
    tick as the process time, so deltas between two samples give usage.
    """

    system_time_ms: int
    elapsed_time_ms: int
    process_time_ms: int


@dataclass(frozen=True)
class ConnectionCount:
    """Open (non-listening) sockets owned by the subject's uid."""

    count: int


@dataclass(frozen=True)
class TrafficBytes:
    """Cumulative bytes sent/received by the subject's uid."""

    sent: int
    received: int


@dataclass(frozen=True)
class MemoryLevels:
    """Private memory breakdown in KB."""

    java: int
    native: int
    stack: int
    graphics: int
    code: int
    other: int
    total: int


MetricPayload = Union[CpuUsage, ConnectionCount, TrafficBytes, MemoryLevels]

PAYLOAD_FAMILIES: dict[type, MetricFamily] = {
    CpuUsage: MetricFamily.CPU,
    ConnectionCount: MetricFamily.CONNECTIONS,
    TrafficBytes: MetricFamily.TRAFFIC,
    MemoryLevels: MetricFamily.MEMORY,
}
FAMILY_PAYLOADS: dict[MetricFamily, type] = {v: k for k, v in PAYLOAD_FAMILIES.items()}


@dataclass(frozen=True)
class Sample:
    """One timestamped measurement for one subject."""

    subject: int
    timestamp: int
    payload: MetricPayload

    @property
    def family(self) -> MetricFamily:
        """Metric family this sample belongs to."""
        return PAYLOAD_FAMILIES[type(self.payload)]

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "subject": self.subject,
            "timestamp": self.timestamp,
            "family": self.family.value,
            "payload": asdict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Sample":
        """Deserialize from a dictionary.

        Raises:
            ValueError: If the family is unknown.
        """
        payload_type = FAMILY_PAYLOADS[MetricFamily(data["family"])]
        return cls(
            subject=data["subject"],
            timestamp=data["timestamp"],
            payload=payload_type(**data["payload"]),
        )


def subject_matches(query_subject: int, stored_subject: int) -> bool:
    """Return True if a query for ``query_subject`` selects ``stored_subject``."""
    return query_subject == ANY_SUBJECT or query_subject == stored_subject


def in_range(timestamp: int, from_ts: int, to_ts: int) -> bool:
    """Range test used by every cache: from_ts < timestamp <= to_ts."""
    return from_ts < timestamp <= to_ts
