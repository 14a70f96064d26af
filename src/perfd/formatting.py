"""Formatting utilities for CLI output."""

from perfd.clock import NANOS_PER_SECOND


def format_bytes(count: int) -> str:
    """Format a byte count with a binary unit ("512B", "1.5KiB", "3.2MiB")."""
    if abs(count) < 1024:
        return f"{count}B"
    value = count / 1024
    for unit in ("KiB", "MiB"):
        if abs(value) < 1024:
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}GiB"


def format_kb(kb: int) -> str:
    """Format a KB value as reported by meminfo."""
    return format_bytes(kb * 1024)


def format_age(timestamp: int, now: int) -> str:
    """Format how long before ``now`` a sample was taken.

    Args:
        timestamp: Sample timestamp (ns, daemon clock)
        now: Current daemon clock reading (ns)

    Returns:
        "0.4s ago" style string; samples from the future render as "now".
    """
    delta = now - timestamp
    if delta <= 0:
        return "now"
    return f"{delta / NANOS_PER_SECOND:.1f}s ago"


def cpu_percent(previous: dict, current: dict) -> float | None:
    """CPU usage of one subject between two consecutive CPU payloads.

    Returns:
        Percentage of elapsed system time spent in the process, or None
        if elapsed time did not advance.
    """
    elapsed = current["elapsed_time_ms"] - previous["elapsed_time_ms"]
    if elapsed <= 0:
        return None
    process = current["process_time_ms"] - previous["process_time_ms"]
    return 100.0 * process / elapsed


def format_payload(family: str, payload: dict) -> str:
    """Render one sample payload as a compact single line."""
    if family == "cpu":
        return (
            f"process {payload['process_time_ms']}ms, system {payload['system_time_ms']}ms"
            f" / {payload['elapsed_time_ms']}ms"
        )
    if family == "connections":
        return f"{payload['count']} open"
    if family == "traffic":
        return f"sent {format_bytes(payload['sent'])}, received {format_bytes(payload['received'])}"
    if family == "memory":
        parts = ("java", "native", "stack", "graphics", "code", "other")
        breakdown = " ".join(f"{name}={format_kb(payload[name])}" for name in parts)
        return f"total {format_kb(payload['total'])} ({breakdown})"
    return str(payload)


def with_cpu_usage(samples: list[dict]) -> list[tuple[dict, float | None]]:
    """Pair each CPU sample with its usage since the subject's previous sample."""
    last: dict[int, dict] = {}
    result = []
    for sample in samples:
        previous = last.get(sample["subject"])
        usage = cpu_percent(previous["payload"], sample["payload"]) if previous else None
        result.append((sample, usage))
        last[sample["subject"]] = sample
    return result
