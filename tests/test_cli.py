"""Tests for CLI commands."""

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from perfd.cli import _run_client, main
from perfd.config import Config

NS = 1_000_000_000


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


def cpu_sample(subject: int, timestamp: int, process_ms: int, elapsed_ms: int) -> dict:
    return {
        "subject": subject,
        "timestamp": timestamp,
        "family": "cpu",
        "payload": {
            "system_time_ms": elapsed_ms // 2,
            "elapsed_time_ms": elapsed_ms,
            "process_time_ms": process_ms,
        },
    }


class FakeClient:
    """Stands in for SocketClient inside _run_client."""

    response: dict = {"type": "pong", "timestamp": 1}

    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path

    async def __aenter__(self) -> "FakeClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        pass

    async def status(self) -> dict:
        return self.response


class TestRunClient:
    """Tests for the shared daemon round-trip helper."""

    def test_no_socket(self, patched_config_paths, capsys):
        async def action(client):
            return await client.status()

        with pytest.raises(SystemExit) as exc:
            _run_client(action)

        assert exc.value.code == 1
        assert "daemon is not running" in capsys.readouterr().err

    def test_error_response_exits(self, patched_config_paths, capsys):
        async def action(client):
            return await client.status()

        FakeClient.response = {"type": "error", "error": "Unknown family: 'disk'"}
        with patch("perfd.socket_client.SocketClient", FakeClient):
            with pytest.raises(SystemExit) as exc:
                _run_client(action)

        assert exc.value.code == 1
        assert "Error: Unknown family: 'disk'" in capsys.readouterr().err

    def test_returns_response(self, patched_config_paths):
        async def action(client):
            return await client.status()

        FakeClient.response = {"type": "status", "running": True}
        with patch("perfd.socket_client.SocketClient", FakeClient):
            assert _run_client(action) == {"type": "status", "running": True}

    def test_connection_lost(self, patched_config_paths, capsys):
        async def action(client):
            raise ConnectionError("Connection closed by server")

        with patch("perfd.socket_client.SocketClient", FakeClient):
            with pytest.raises(SystemExit):
                _run_client(action)

        assert "daemon unreachable" in capsys.readouterr().err


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_daemon_stopped(self, runner: CliRunner, patched_config_paths) -> None:
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "PID file: none" in result.output
        assert "Daemon: stopped" in result.output

    def test_status_running(self, runner: CliRunner, patched_config_paths: Path) -> None:
        (patched_config_paths / "daemon.pid").write_text("4321")
        (patched_config_paths / "daemon.sock").touch()
        status = {
            "type": "status",
            "running": True,
            "subjects": [100, 200],
            "samples": {"cpu": 12, "connections": 4, "traffic": 4, "memory": 3},
            "samplers": [
                {"name": "cpu", "running": True, "ticks": 6, "failures": 0},
                {"name": "memory-100", "running": True, "ticks": 3, "failures": 1},
            ],
            "clients": 1,
        }

        with patch("perfd.cli._run_client", return_value=status):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "PID file: 4321" in result.output
        assert "Daemon: running" in result.output
        assert "Monitored: 100, 200" in result.output
        assert "cpu=12, connections=4, traffic=4, memory=3" in result.output
        assert "memory-100" in result.output


class TestMonitorCommands:
    """Tests for monitor start/stop."""

    def test_monitor_start(self, runner: CliRunner) -> None:
        response = {"type": "ok", "pid": 100, "changed": True}
        with (
            patch("perfd.cli._run_client", return_value=response),
            patch("perfd.logging.monitoring_started") as started,
        ):
            result = runner.invoke(main, ["monitor", "start", "100"])

        assert result.exit_code == 0
        started.assert_called_once_with(100)

    def test_monitor_start_already_monitored(self, runner: CliRunner) -> None:
        response = {"type": "ok", "pid": 100, "changed": False}
        with patch("perfd.cli._run_client", return_value=response):
            result = runner.invoke(main, ["monitor", "start", "100"])

        assert result.exit_code == 0
        assert "PID 100 is already monitored" in result.output

    def test_monitor_stop_not_monitored(self, runner: CliRunner) -> None:
        response = {"type": "ok", "pid": 7, "changed": False}
        with patch("perfd.cli._run_client", return_value=response):
            result = runner.invoke(main, ["monitor", "stop", "7"])

        assert "PID 7 is not monitored" in result.output

    def test_monitor_rejects_non_numeric_pid(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["monitor", "start", "app"])
        assert result.exit_code == 2


class TestQueryCommand:
    """Tests for the query command."""

    def test_query_unknown_family(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["query", "disk"])
        assert result.exit_code == 2

    def test_query_empty(self, runner: CliRunner) -> None:
        response = {"type": "samples", "family": "memory", "samples": [], "now": 50 * NS}
        with patch("perfd.cli._run_client", return_value=response):
            result = runner.invoke(main, ["query", "memory", "--last", "30"])

        assert result.exit_code == 0
        assert "No memory samples in the last 30s." in result.output

    def test_query_cpu_table_shows_usage(self, runner: CliRunner) -> None:
        samples = [
            cpu_sample(100, 10 * NS, process_ms=100, elapsed_ms=1000),
            cpu_sample(100, 11 * NS, process_ms=350, elapsed_ms=2000),
        ]
        response = {"type": "samples", "family": "cpu", "samples": samples, "now": 12 * NS}
        with patch("perfd.cli._run_client", return_value=response):
            result = runner.invoke(main, ["query", "cpu", "--pid", "100"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert "Usage" in lines[0]
        assert "2.0s ago" in lines[2]
        assert "-" in lines[2]
        assert "25.0%" in lines[3]
        assert "process 350ms, system 1000ms / 2000ms" in lines[3]

    def test_query_json(self, runner: CliRunner) -> None:
        samples = [cpu_sample(100, 10 * NS, process_ms=100, elapsed_ms=1000)]
        response = {"type": "samples", "family": "cpu", "samples": samples, "now": 12 * NS}
        with patch("perfd.cli._run_client", return_value=response):
            result = runner.invoke(main, ["query", "cpu", "--format", "json"])

        assert result.exit_code == 0
        assert json.loads(result.output) == samples

    def test_query_builds_range_from_daemon_clock(self, runner: CliRunner) -> None:
        """--last is converted to nanoseconds and measured back from the daemon's now."""
        calls = []

        class QueryClient:
            async def request(self, msg):
                return {"type": "now", "timestamp": 100 * NS}

            async def query(self, family, pid=None, from_ts=None, to_ts=None):
                calls.append((family, pid, from_ts, to_ts))
                return {"type": "samples", "family": family, "samples": []}

        def fake_run_client(action):
            return asyncio.run(action(QueryClient()))

        with patch("perfd.cli._run_client", side_effect=fake_run_client):
            result = runner.invoke(main, ["query", "traffic", "-p", "42", "-l", "2.5"])

        assert result.exit_code == 0
        assert calls == [("traffic", 42, 100 * NS - int(2.5 * NS), 100 * NS)]


class TestConfigCommands:
    """Tests for config show/reset."""

    def test_config_show(self, runner: CliRunner, patched_config_paths) -> None:
        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0
        assert "Exists: False" in result.output
        assert "cpu_interval = 0.1" in result.output
        assert "listen_filter = scan" in result.output

    def test_config_reset(self, runner: CliRunner, patched_config_paths) -> None:
        result = runner.invoke(main, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert Config().config_path.exists()
        assert Config.load() == Config()
