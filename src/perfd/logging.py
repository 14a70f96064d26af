"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain-specific helpers (daemon_started, monitoring_started, heartbeat, etc.)
4. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from perfd.config import Config

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    WATCH = "[bright_green]▲[/]"
    UNWATCH = "[bright_red]▼[/]"
    SIGNAL = "⚡"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started() -> None:
    """Log daemon startup complete."""
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def monitoring_started(pid: int) -> None:
    """Log a subject added to monitoring."""
    info(f"Monitoring [cyan]{pid}[/]", Icon.WATCH)


def monitoring_stopped(pid: int) -> None:
    """Log a subject removed from monitoring."""
    info(f"Stopped monitoring [cyan]{pid}[/]", Icon.UNWATCH)


def heartbeat(
    subject_count: int,
    sample_counts: dict[str, int],
    failures: int,
    rss_mb: float,
) -> None:
    """Log periodic heartbeat stats."""
    counts = ", ".join(f"{family} {count}" for family, count in sample_counts.items())
    failure_part = f", [red]{failures} failed[/]" if failures else ""
    info(
        f"[cyan]{subject_count}[/] monitored, [dim]{counts}{failure_part}, "
        f"{round(rss_mb, 1)}MB RSS[/]",
        Icon.HEARTBEAT,
    )


def socket_listening(path: str) -> None:
    """Log socket server ready."""
    info(f"Socket listening on [cyan]{path}[/]")


def socket_stopped() -> None:
    """Log socket server stopped."""
    info("Socket server stopped")


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


def config_summary(cpu_interval: float, capacity: int, clock_ticks: int) -> None:
    """Log config summary."""
    cap = "unbounded" if capacity == 0 else str(capacity)
    hz = "auto" if clock_ticks == 0 else f"{clock_ticks}Hz"
    info(f"Config: cpu every [cyan]{cpu_interval}s[/], cache=[cyan]{cap}[/], ticks=[cyan]{hz}[/]")


def pid_file_invalid() -> None:
    """Log PID file invalid."""
    warn("PID file invalid")


def stale_pid_file(pid: int, actual_process: str) -> None:
    """Log stale PID file (different process)."""
    info(f"[dim]Stale PID file, PID {pid} is {actual_process}[/]")


def stale_pid_not_found(pid: int) -> None:
    """Log stale PID file (process not found)."""
    info(f"[dim]Stale PID file, PID {pid} not found[/]")


def pid_verify_failed(pid: int) -> None:
    """Log PID verification failed (access denied)."""
    warn(f"Can't verify PID {pid}, assuming running")


def invalid_client_message(reason: str) -> None:
    """Log invalid client message received."""
    warn(f"Invalid client message: {reason}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, level: int = logging.INFO) -> None:
    """Configure structlog to write JSON Lines to the rotating daemon log.

    Args:
        config: Application config with paths and rotation limits
        level: Minimum stdlib level written to the file
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("stdlib"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("daemon"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
