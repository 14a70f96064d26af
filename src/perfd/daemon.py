"""Background daemon for perfd."""

import asyncio
import os
import signal
from importlib.metadata import version

import psutil
import structlog

from perfd import logging as console
from perfd.config import Config
from perfd.logging import configure
from perfd.service import ProfilerService
from perfd.socket_server import QueryServer

log = structlog.get_logger()


class Daemon:
    """Owns the profiler service and the query socket for one process lifetime."""

    def __init__(self, config: Config, service: ProfilerService | None = None):
        self.config = config
        self.service = service or ProfilerService(config)
        self._server: QueryServer | None = None
        self._shutdown_event = asyncio.Event()
        self._owns_pid_file = False

    async def start(self) -> None:
        """Start the daemon and block until shutdown is requested.

        Raises:
            RuntimeError: If another daemon already holds the PID file.
        """
        log.info("daemon_starting", version=version("perfd"))
        log.info(
            "daemon_config",
            cpu_interval=self.config.sampling.cpu_interval,
            network_interval=self.config.sampling.network_interval,
            memory_interval=self.config.sampling.memory_interval,
            cache_capacity=self.config.cache.capacity,
            clock_ticks=self.service.cpu_sampler.clock_ticks,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            log.error("daemon_already_running")
            console.already_running()
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            console.config_created(str(self.config.config_path))

        await asyncio.to_thread(self.service.start)

        self._server = QueryServer(self.config.socket_path, self.service)
        await self._server.start()
        console.socket_listening(str(self.config.socket_path))

        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()

        if self._server:
            await self._server.stop()
            self._server = None
            console.socket_stopped()

        await asyncio.to_thread(self.service.stop)

        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False

        log.info("daemon_stopped")
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually a perfd daemon, since PIDs are reused after a reboot.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            console.pid_file_invalid()
            self._remove_pid_file()
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()
            if "perfd" in " ".join(cmdline).lower():
                log.info("daemon_already_running_verified", pid=pid, cmdline=" ".join(cmdline[:3]))
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            console.stale_pid_file(pid, proc.name())
            self._remove_pid_file()
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            console.stale_pid_not_found(pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process, assume it's running
            log.warning("pid_check_access_denied", pid=pid)
            console.pid_verify_failed(pid)
            return True

    async def _main_loop(self) -> None:
        """Log a heartbeat every heartbeat_seconds until shutdown."""
        interval = self.config.system.heartbeat_seconds
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                status = await asyncio.to_thread(self.service.status)
                self._heartbeat(status)
            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                break

    def _heartbeat(self, status: dict) -> None:
        """Log service counters and daemon memory use."""
        failures = sum(s["failures"] for s in status["samplers"])
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        clients = self._server.client_count if self._server else 0

        log.info(
            "daemon_heartbeat",
            subjects=len(status["subjects"]),
            samples=status["samples"],
            failures=failures,
            clients=clients,
            rss_mb=round(rss_mb, 1),
        )
        console.heartbeat(len(status["subjects"]), status["samples"], failures, rss_mb)


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    configure(config)
    console.version_info("perfd", version("perfd"))
    console.config_summary(
        config.sampling.cpu_interval, config.cache.capacity, config.procfs.clock_ticks
    )

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
