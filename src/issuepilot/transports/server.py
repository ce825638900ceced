"""HTTP host for a pipeline engine.

Exposes an :class:`InProcessTransport` to :class:`RemoteTransport`
clients. Commands arrive as JSON posts; events leave on a
server-sent-events stream.

Uses only the standard library (``asyncio``, ``http``, ``json``,
``urllib.parse``); no third-party HTTP framework is needed for four
routes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlsplit

from issuepilot.transports.base import Command, EventCategory, Unsubscribe
from issuepilot.transports.in_process import InProcessTransport
from issuepilot.transports.wire import encode_frame

logger = logging.getLogger(__name__)


class EngineServer:
    """Async HTTP server wrapping an in-process transport.

    Routes:
        ``POST /api/engine/command``: run a command.
        ``GET /api/engine/events``: server-sent-events stream.
        ``GET /api/engine/state``: snapshot of the engine.
        ``GET /api/engine/history``: audit records, ``?item=N`` to filter.

    Args:
        transport: Transport bound to the engine being served.
        host: Bind address.
        port: Bind port; ``0`` picks a free one (see :attr:`port`).
        auth_token: Required bearer token. Empty disables authentication.
        keepalive_seconds: Idle interval between ``: keepalive`` comments
            on event streams.
    """

    def __init__(
        self,
        transport: InProcessTransport,
        host: str = "127.0.0.1",
        port: int = 3001,
        *,
        auth_token: str = "",
        keepalive_seconds: float = 15.0,
    ) -> None:
        self._transport = transport
        self._host = host
        self._port = port
        self._auth_token = auth_token
        self._keepalive = keepalive_seconds
        self._server: asyncio.Server | None = None
        self._streams: set[asyncio.Queue[Any]] = set()

    @property
    def port(self) -> int:
        return self._port

    @property
    def stream_count(self) -> int:
        """Number of connected event-stream clients."""
        return len(self._streams)

    async def start(self) -> None:
        """Start listening."""
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port
        )
        self._port = self._server.sockets[0].getsockname()[1]
        logger.info("Engine server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Close event streams and stop listening."""
        for queue in list(self._streams):
            queue.put_nowait(None)
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    # -----------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line, headers, body = await self._read_request(reader)
            if request_line is None:
                return

            method, target, _ = request_line.split(" ", 2)
            url = urlsplit(target)
            path = url.path.rstrip("/")

            if path.startswith("/api/") and not self._authorized(headers):
                await self._send_json(
                    writer, HTTPStatus.UNAUTHORIZED, {"error": "Unauthorized"}
                )
                return

            if method == "GET" and path == "/api/engine/events":
                await self._stream_events(writer)
                return

            status, payload = await self._route(method, path, parse_qs(url.query), body)
            await self._send_json(writer, status, payload)
        except Exception as exc:
            logger.error("Connection handler error: %s", exc)
            try:
                await self._send_json(
                    writer,
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    {"error": "Internal server error"},
                )
            except ConnectionError:
                pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str | None, dict[str, str], str]:
        """Parse an HTTP request from the stream.

        Returns:
            Tuple of (request_line, headers_dict, body_string).
            request_line is None if the connection was closed.
        """
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=30.0)
        except (asyncio.TimeoutError, ConnectionError):
            return None, {}, ""

        request_line = line.decode("utf-8").strip()
        if not request_line:
            return None, {}, ""

        headers: dict[str, str] = {}
        while True:
            header = (await reader.readline()).decode("utf-8").strip()
            if not header:
                break
            if ":" in header:
                key, value = header.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        body = ""
        content_length = int(headers.get("content-length", "0") or "0")
        if content_length > 0:
            body = (await reader.readexactly(content_length)).decode("utf-8")

        return request_line, headers, body

    def _authorized(self, headers: dict[str, str]) -> bool:
        if not self._auth_token:
            return True
        return headers.get("authorization", "") == f"Bearer {self._auth_token}"

    async def _send_json(
        self, writer: asyncio.StreamWriter, status: HTTPStatus, payload: Any
    ) -> None:
        body = json.dumps(payload)
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body.encode('utf-8'))}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    # -----------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------

    async def _route(
        self, method: str, path: str, query: dict[str, list[str]], body: str
    ) -> tuple[HTTPStatus, Any]:
        if method == "POST" and path == "/api/engine/command":
            return await self._handle_command(body)
        if method == "GET" and path == "/api/engine/state":
            return self._handle_state()
        if method == "GET" and path == "/api/engine/history":
            return self._handle_history(query)
        return HTTPStatus.NOT_FOUND, {"error": f"Not found: {method} {path}"}

    async def _handle_command(self, body: str) -> tuple[HTTPStatus, Any]:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return HTTPStatus.BAD_REQUEST, {"error": "Invalid JSON body"}
        if not isinstance(data, dict):
            return HTTPStatus.BAD_REQUEST, {"error": "Command must be a JSON object"}

        try:
            command = Command.from_dict(data)
        except ValueError:
            return HTTPStatus.BAD_REQUEST, {
                "error": f"Unknown command type: {data.get('type')!r}"
            }

        result = await self._transport.send_command(command)
        if not result.ok:
            return HTTPStatus.CONFLICT, result.to_dict()
        return HTTPStatus.OK, result.to_dict()

    def _handle_state(self) -> tuple[HTTPStatus, Any]:
        engine = self._transport.engine
        item = engine.current_item
        plan = engine.current_plan
        return HTTPStatus.OK, {
            "state": engine.state.value,
            "item": item.to_dict() if item else None,
            "plan": plan.to_dict() if plan else None,
            "branch": engine.current_branch,
            "stats": engine.get_stats().to_dict(),
        }

    def _handle_history(self, query: dict[str, list[str]]) -> tuple[HTTPStatus, Any]:
        item_number: int | None = None
        if "item" in query:
            try:
                item_number = int(query["item"][0])
            except ValueError:
                return HTTPStatus.BAD_REQUEST, {"error": "'item' must be an integer"}
        records = self._transport.engine.audit_log.events(item_number)
        return HTTPStatus.OK, {"events": [r.to_dict() for r in records]}

    # -----------------------------------------------------------------
    # Event stream
    # -----------------------------------------------------------------

    async def _stream_events(self, writer: asyncio.StreamWriter) -> None:
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def forward(category: EventCategory):
            return lambda payload: queue.put_nowait((category, payload))

        transport = self._transport
        unsubscribers: list[Unsubscribe] = [
            transport.on_state_update(forward(EventCategory.STATE_UPDATE)),
            transport.on_log(forward(EventCategory.LOG)),
            transport.on_approval_request(forward(EventCategory.APPROVAL_REQUEST)),
            transport.on_event(forward(EventCategory.EVENT)),
        ]
        self._streams.add(queue)
        try:
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: text/event-stream\r\n"
                b"Cache-Control: no-cache\r\n"
                b"Connection: close\r\n"
                b"\r\n"
            )
            await writer.drain()

            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self._keepalive)
                except asyncio.TimeoutError:
                    writer.write(b": keepalive\n\n")
                    await writer.drain()
                    continue
                if item is None:
                    break
                category, payload = item
                writer.write(encode_frame(category, payload).encode("utf-8"))
                await writer.drain()
        except ConnectionError:
            logger.debug("Event stream client disconnected")
        finally:
            self._streams.discard(queue)
            for unsubscribe in unsubscribers:
                unsubscribe()
