"""Async HTTP health endpoints built on ``asyncio.start_server``.

- ``/healthz``: liveness, always 200 while the process serves requests.
- ``/readyz``: readiness, 503 when any component reports ``status: error``.
- ``/status``: full relay status document, always 200.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import structlog

logger = structlog.get_logger()

StatusProvider = Callable[[], Awaitable[dict[str, Any]]]

_REASONS = {
    200: "OK",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def contains_error(health: dict[str, Any]) -> bool:
    """True if any component (nested dict or list item) has status 'error'."""
    for value in health.values():
        if isinstance(value, dict):
            if value.get("status") == "error" or contains_error(value):
                return True
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, dict) and item.get("status") == "error":
                    return True
    return False


class HealthServer:
    """Serves health probes for the relay.

    Parameters
    ----------
    port:
        TCP port to listen on.
    readiness_check:
        Async callable returning the relay health document.
    status_provider:
        Async callable for ``/status``; defaults to *readiness_check*.
    """

    def __init__(
        self,
        port: int,
        readiness_check: StatusProvider,
        status_provider: StatusProvider | None = None,
        host: str = "0.0.0.0",  # noqa: S104
    ) -> None:
        self._port = port
        self._host = host
        self._readiness_check = readiness_check
        self._status_provider = status_provider or readiness_check
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle, host=self._host, port=self._port
        )
        logger.info("health.server_started", port=self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("health.server_stopped")

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            method, path = self._parse_request(request_line)

            if method not in ("GET", "HEAD"):
                await self._respond(writer, 405, {"error": "method not allowed"})
            elif path == "/healthz":
                await self._respond(writer, 200, {"status": "ok"})
            elif path == "/readyz":
                health = await self._readiness_check()
                code = 503 if contains_error(health) else 200
                await self._respond(writer, code, health)
            elif path == "/status":
                await self._respond(writer, 200, await self._status_provider())
            else:
                await self._respond(writer, 404, {"error": "not found"})
        except Exception:
            logger.debug("health.request_error", exc_info=True)
            with suppress(Exception):
                await self._respond(writer, 500, {"error": "internal server error"})
        finally:
            with suppress(Exception):
                writer.close()
                await writer.wait_closed()

    @staticmethod
    def _parse_request(request_line: bytes) -> tuple[str, str]:
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        if len(parts) >= 2:
            return parts[0].upper(), parts[1].split("?", 1)[0]
        return "", ""

    @staticmethod
    async def _respond(
        writer: asyncio.StreamWriter, status: int, body: dict[str, Any]
    ) -> None:
        payload = json.dumps(body, default=str).encode()
        header = (
            f"HTTP/1.1 {status} {_REASONS.get(status, 'Unknown')}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(header.encode() + payload)
        await writer.drain()
