"""Unix socket client for querying the perfd daemon."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

# Query responses carry whole sample ranges on one line
READ_LIMIT = 16 * 1024 * 1024


class SocketClient:
    """Unix domain socket client for the daemon's request/response protocol.

    Simple and stateless: connects or throws. Callers handle reconnection.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        """Whether client is connected."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Connect to the daemon socket.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        self._reader, self._writer = await asyncio.open_unix_connection(
            str(self.socket_path), limit=READ_LIMIT
        )

    async def disconnect(self) -> None:
        """Disconnect from the daemon socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def __aenter__(self) -> "SocketClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def read_message(self, timeout: float = 1.0) -> dict[str, Any]:
        """Read next message from socket with timeout.

        Raises:
            ConnectionError: If connection is lost
            TimeoutError: If no data received within timeout
            json.JSONDecodeError: If message is invalid JSON
        """
        if not self._reader:
            raise ConnectionError("Not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")

        return json.loads(line.decode())

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Send a JSON-encoded, newline-delimited message to the daemon.

        Raises:
            ConnectionError: If not connected or write fails
        """
        if not self._writer or self._writer.is_closing():
            raise ConnectionError("Not connected")

        try:
            data = json.dumps(msg).encode() + b"\n"
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            raise ConnectionError(f"Send failed: {e}") from e

    async def request(self, msg: dict[str, Any], timeout: float = 5.0) -> dict[str, Any]:
        """Send one request and wait for its response."""
        await self.send_message(msg)
        return await self.read_message(timeout=timeout)

    async def ping(self, timeout: float = 1.0) -> int:
        """Return the daemon's clock reading."""
        response = await self.request({"type": "ping"}, timeout=timeout)
        return response["timestamp"]

    async def start_monitoring(self, pid: int) -> dict[str, Any]:
        """Ask the daemon to start sampling ``pid``."""
        return await self.request({"type": "start_monitoring", "pid": pid})

    async def stop_monitoring(self, pid: int) -> dict[str, Any]:
        """Ask the daemon to stop sampling ``pid``."""
        return await self.request({"type": "stop_monitoring", "pid": pid})

    async def query(
        self,
        family: str,
        pid: int | None = None,
        from_ts: int | None = None,
        to_ts: int | None = None,
    ) -> dict[str, Any]:
        """Fetch samples of ``family``; omitted fields take the daemon's defaults."""
        msg: dict[str, Any] = {"type": "query", "family": family}
        if pid is not None:
            msg["pid"] = pid
        if from_ts is not None:
            msg["from"] = from_ts
        if to_ts is not None:
            msg["to"] = to_ts
        return await self.request(msg)

    async def status(self) -> dict[str, Any]:
        """Fetch service status."""
        return await self.request({"type": "status"})
