"""Configuration system for perfd."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from perfd.memory import DEFAULT_COMMAND
from perfd.network import DEFAULT_CONNECTION_TABLES, DEFAULT_TRAFFIC_STATS, LISTEN_FILTERS


@dataclass
class SamplingConfig:
    """Sampler periods, in seconds."""

    cpu_interval: float = 0.1  # System + per-process CPU pass
    network_interval: float = 0.3  # Connection tables + traffic accounting
    memory_interval: float = 0.3  # One meminfo command per subject


@dataclass
class CacheConfig:
    """Sample cache sizing."""

    capacity: int = 0  # Samples kept per subject; 0 keeps everything


@dataclass
class ProcfsConfig:
    """Where kernel pseudo-files are read from."""

    proc_root: str = "/proc"
    clock_ticks: int = 0  # Scheduler ticks per second; 0 asks the kernel


@dataclass
class NetworkConfig:
    """Network sampler sources, relative to proc_root."""

    connection_tables: list[str] = field(default_factory=lambda: list(DEFAULT_CONNECTION_TABLES))
    traffic_stats: str = DEFAULT_TRAFFIC_STATS
    listen_filter: str = "scan"  # "scan" or "regex"


@dataclass
class MemoryConfig:
    """Memory sampler command."""

    command: list[str] = field(default_factory=lambda: list(DEFAULT_COMMAND))
    command_timeout: float = 0.0  # Seconds; 0 waits indefinitely


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    heartbeat_seconds: float = 60.0  # Seconds between heartbeat log lines
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    procfs: ProcfsConfig = field(default_factory=ProcfsConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "perfd"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "perfd"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID, socket).

        Stored in /tmp/ so it's cleared on reboot.
        """
        return Path("/tmp/perfd")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        sections = ["sampling", "cache", "procfs", "network", "memory", "system"]
        for name in sections:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        Raises:
            ValueError: If the file cannot be parsed or a value is out of range.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            sampling=_load_sampling_config(data.get("sampling", {})),
            cache=_load_cache_config(data.get("cache", {})),
            procfs=_load_procfs_config(data.get("procfs", {})),
            network=_load_network_config(data.get("network", {})),
            memory=_load_memory_config(data.get("memory", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config from TOML data, using dataclass defaults for missing fields."""
    d = SamplingConfig()
    config = SamplingConfig(
        cpu_interval=float(data.get("cpu_interval", d.cpu_interval)),
        network_interval=float(data.get("network_interval", d.network_interval)),
        memory_interval=float(data.get("memory_interval", d.memory_interval)),
    )
    for name in ("cpu_interval", "network_interval", "memory_interval"):
        value = getattr(config, name)
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")
    return config


def _load_cache_config(data: dict) -> CacheConfig:
    """Load cache config from TOML data."""
    capacity = int(data.get("capacity", CacheConfig().capacity))
    if capacity < 0:
        raise ValueError(f"capacity must be >= 0, got {capacity}")
    return CacheConfig(capacity=capacity)


def _load_procfs_config(data: dict) -> ProcfsConfig:
    """Load procfs config from TOML data."""
    d = ProcfsConfig()
    clock_ticks = int(data.get("clock_ticks", d.clock_ticks))
    if clock_ticks < 0:
        raise ValueError(f"clock_ticks must be >= 0, got {clock_ticks}")
    return ProcfsConfig(
        proc_root=str(data.get("proc_root", d.proc_root)),
        clock_ticks=clock_ticks,
    )


def _load_network_config(data: dict) -> NetworkConfig:
    """Load network config from TOML data."""
    d = NetworkConfig()
    listen_filter = str(data.get("listen_filter", d.listen_filter))
    if listen_filter not in LISTEN_FILTERS:
        raise ValueError(
            f"Invalid listen_filter: {listen_filter!r}. Must be one of {LISTEN_FILTERS}"
        )
    return NetworkConfig(
        connection_tables=[str(t) for t in data.get("connection_tables", d.connection_tables)],
        traffic_stats=str(data.get("traffic_stats", d.traffic_stats)),
        listen_filter=listen_filter,
    )


def _load_memory_config(data: dict) -> MemoryConfig:
    """Load memory config from TOML data."""
    d = MemoryConfig()
    command = [str(arg) for arg in data.get("command", d.command)]
    if not command:
        raise ValueError("memory command must not be empty")
    command_timeout = float(data.get("command_timeout", d.command_timeout))
    if command_timeout < 0:
        raise ValueError(f"command_timeout must be >= 0, got {command_timeout}")
    return MemoryConfig(command=command, command_timeout=command_timeout)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    heartbeat_seconds = float(data.get("heartbeat_seconds", d.heartbeat_seconds))
    if heartbeat_seconds <= 0:
        raise ValueError(f"heartbeat_seconds must be > 0, got {heartbeat_seconds}")
    return SystemConfig(
        heartbeat_seconds=heartbeat_seconds,
        log_max_bytes=int(data.get("log_max_bytes", d.log_max_bytes)),
        log_backup_count=int(data.get("log_backup_count", d.log_backup_count)),
    )
