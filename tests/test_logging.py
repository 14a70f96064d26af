"""Tests for console output helpers and structlog file configuration."""

import io
import json
import logging
import logging.handlers
from unittest.mock import patch

import pytest
import structlog
from rich.console import Console

from perfd import logging as console
from perfd.config import Config, SystemConfig


@pytest.fixture
def captured():
    """Redirect the Rich console into a buffer."""
    buffer = io.StringIO()
    with patch.object(console, "_console", Console(file=buffer, width=200, highlight=False)):
        yield buffer


@pytest.fixture
def restore_logging():
    """Undo configure() so later tests see default logging."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


class TestConsoleHelpers:
    """Console helpers print one timestamped line each."""

    def test_levels(self, captured):
        console.info("hello")
        console.warn("careful")
        console.error("broken")
        lines = captured.getvalue().splitlines()
        assert "[info] hello" in lines[0]
        assert "[warn] careful" in lines[1]
        assert "[err]" in lines[2] and "broken" in lines[2]

    def test_monitoring_helpers(self, captured):
        console.monitoring_started(4242)
        console.monitoring_stopped(4242)
        output = captured.getvalue()
        assert "Monitoring 4242" in output
        assert "Stopped monitoring 4242" in output

    def test_heartbeat(self, captured):
        console.heartbeat(2, {"cpu": 10, "memory": 4}, failures=0, rss_mb=31.26)
        output = captured.getvalue()
        assert "2 monitored" in output
        assert "cpu 10, memory 4" in output
        assert "failed" not in output
        assert "31.3MB RSS" in output

    def test_heartbeat_with_failures(self, captured):
        console.heartbeat(1, {"cpu": 1}, failures=3, rss_mb=10.0)
        assert "3 failed" in captured.getvalue()

    def test_already_running(self, captured):
        console.already_running(99)
        console.already_running()
        lines = captured.getvalue().splitlines()
        assert "PID 99" in lines[0]
        assert "Another daemon already running" in lines[1]

    def test_config_summary(self, captured):
        console.config_summary(0.1, 0, 0)
        console.config_summary(0.5, 500, 1000)
        lines = captured.getvalue().splitlines()
        assert "cache=unbounded" in lines[0]
        assert "ticks=auto" in lines[0]
        assert "cache=500" in lines[1]
        assert "ticks=1000Hz" in lines[1]

    def test_markup_is_rendered(self, captured):
        console.socket_listening("/tmp/perfd/daemon.sock")
        output = captured.getvalue()
        assert "[cyan]" not in output
        assert "/tmp/perfd/daemon.sock" in output


class TestConfigure:
    """configure() routes structlog and stdlib records to a JSON Lines file."""

    def test_writes_json_lines(self, patched_config_paths, restore_logging):
        config = Config()
        console.configure(config)

        structlog.get_logger("perfd.test").info("sampler_started", sampler="cpu")
        logging.getLogger("third.party").warning("plain %s", "record")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = config.log_path.read_text().splitlines()
        events = [json.loads(line) for line in lines]

        ours = events[0]
        assert ours["event"] == "sampler_started"
        assert ours["sampler"] == "cpu"
        assert ours["level"] == "info"
        assert ours["source"] == "daemon"
        assert "ts" in ours

        foreign = events[1]
        assert foreign["event"] == "plain record"
        assert foreign["level"] == "warning"
        assert foreign["source"] == "stdlib"

    def test_level_filters_debug(self, patched_config_paths, restore_logging):
        config = Config()
        console.configure(config)

        structlog.get_logger("perfd.test").debug("too_chatty")
        structlog.get_logger("perfd.test").info("kept")
        for handler in logging.getLogger().handlers:
            handler.flush()

        events = [json.loads(line) for line in config.log_path.read_text().splitlines()]
        assert [e["event"] for e in events] == ["kept"]

    def test_rotation_settings(self, patched_config_paths, restore_logging):
        config = Config(system=SystemConfig(log_max_bytes=2048, log_backup_count=2))
        console.configure(config)

        [handler] = logging.getLogger().handlers
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.maxBytes == 2048
        assert handler.backupCount == 2
