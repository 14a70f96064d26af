"""Unix socket server answering sample queries from CLI clients.

Protocol: newline-delimited JSON. Each request line gets exactly one
response line on the same connection.

Request types:
- ping: liveness check, answered with the service clock
- now: service clock reading, for building query ranges
- start_monitoring / stop_monitoring: add or remove a subject
- query: samples of one family for a subject (or every subject)
- status: service state and sampler counters
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from perfd import logging as console
from perfd.samples import ANY_SUBJECT, MetricFamily

if TYPE_CHECKING:
    from perfd.service import ProfilerService

log = structlog.get_logger()

_MISSING = object()


class RequestError(ValueError):
    """Raised for requests that cannot be answered as sent."""


def _error(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message}


def _int_field(request: dict[str, Any], name: str, default: Any = _MISSING) -> int:
    """Return an integer request field.

    Raises:
        RequestError: If the field is missing (and has no default) or not an integer.
    """
    value = request.get(name, default)
    if value is _MISSING:
        raise RequestError(f"Missing field: {name}")
    # bool is an int subclass but never a valid pid or timestamp
    if isinstance(value, bool) or not isinstance(value, int):
        raise RequestError(f"Field {name} must be an integer, got {value!r}")
    return value


def _pid_field(request: dict[str, Any]) -> int:
    pid = _int_field(request, "pid")
    if pid <= 0:
        raise RequestError(f"Field pid must be positive, got {pid}")
    return pid


class QueryServer:
    """Unix domain socket server exposing a ProfilerService."""

    def __init__(self, socket_path: Path, service: ProfilerService) -> None:
        self.socket_path = socket_path
        self.service = service
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._running = False
        self._handlers = {
            "ping": self._handle_ping,
            "now": self._handle_now,
            "start_monitoring": self._handle_start_monitoring,
            "stop_monitoring": self._handle_stop_monitoring,
            "query": self._handle_query,
            "status": self._handle_status,
        }

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        self._running = True
        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server and drop every client."""
        self._running = False

        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one client until it disconnects."""
        self._clients.add(writer)
        log.debug("socket_client_connected", count=len(self._clients))

        try:
            while self._running:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line longer than the stream limit; framing is lost
                    log.warning("socket_request_too_long")
                    break
                if not line:
                    break
                if not line.strip():
                    continue

                response = await self.handle_line(line)
                writer.write(json.dumps(response).encode() + b"\n")
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.debug("socket_client_disconnected", count=len(self._clients))

    async def handle_line(self, line: bytes) -> dict[str, Any]:
        """Decode one request line and return its response."""
        try:
            request = json.loads(line)
        except ValueError as e:
            log.warning("socket_invalid_json", error=str(e))
            console.invalid_client_message("not JSON")
            return _error(f"Invalid JSON: {e}")
        if not isinstance(request, dict):
            return _error("Request must be a JSON object")
        return await self.handle_request(request)

    async def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Dispatch a decoded request to its handler."""
        kind = request.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            log.warning("socket_unknown_request", type=kind)
            return _error(f"Unknown request type: {kind!r}")

        try:
            return await handler(request)
        except RequestError as e:
            log.warning("socket_invalid_request", type=kind, error=str(e))
            console.invalid_client_message(str(e))
            return _error(str(e))
        except Exception as e:
            log.exception("socket_request_failed", type=kind, error=str(e))
            return _error(f"Request failed: {e}")

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"type": "pong", "timestamp": self.service.now()}

    async def _handle_now(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"type": "now", "timestamp": self.service.now()}

    async def _handle_start_monitoring(self, request: dict[str, Any]) -> dict[str, Any]:
        pid = _pid_field(request)
        changed = await asyncio.to_thread(self.service.start_monitoring, pid)
        return {"type": "ok", "pid": pid, "changed": changed}

    async def _handle_stop_monitoring(self, request: dict[str, Any]) -> dict[str, Any]:
        pid = _pid_field(request)
        changed = await asyncio.to_thread(self.service.stop_monitoring, pid)
        return {"type": "ok", "pid": pid, "changed": changed}

    async def _handle_query(self, request: dict[str, Any]) -> dict[str, Any]:
        family_name = request.get("family")
        try:
            family = MetricFamily(family_name)
        except ValueError:
            valid = [f.value for f in MetricFamily]
            raise RequestError(f"Unknown family: {family_name!r}. Must be one of {valid}") from None

        subject = _int_field(request, "pid", ANY_SUBJECT)
        if subject <= 0 and subject != ANY_SUBJECT:
            raise RequestError(f"Field pid must be positive, got {subject}")
        from_ts = _int_field(request, "from", 0)
        to_ts = _int_field(request, "to", self.service.now())

        samples = self.service.query(family, subject, from_ts, to_ts)
        return {
            "type": "samples",
            "family": family.value,
            "samples": [s.to_dict() for s in samples],
        }

    async def _handle_status(self, request: dict[str, Any]) -> dict[str, Any]:
        status = await asyncio.to_thread(self.service.status)
        return {"type": "status", **status, "clients": self.client_count}
