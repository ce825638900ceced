"""Networked transport.

Talks to an :class:`~issuepilot.transports.server.EngineServer` in another
process. Commands are ``POST``ed with retry; events arrive on a
server-sent-events stream that reconnects on its own until the transport
is disposed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import httpx

from issuepilot.errors import ConnectionFailedError, IssuePilotError, error_from_status
from issuepilot.retry import ReconnectBackoff, RetryPolicy, retry_async
from issuepilot.transports.base import BaseTransport, Command, CommandResult
from issuepilot.transports.wire import SSEFrameParser, decode_frame

logger = logging.getLogger(__name__)

COMMAND_PATH = "/api/engine/command"
EVENTS_PATH = "/api/engine/events"

DEFAULT_COMMAND_POLICY = RetryPolicy(max_retries=3, base_delay_seconds=1.0, max_delay_seconds=8.0)


class RemoteTransport(BaseTransport):
    """Transport for an engine behind an HTTP server.

    Construction does not touch the network; call :meth:`connect` to open
    the event stream.

    Args:
        server_url: Base URL of the engine server.
        auth_token: Bearer token sent with every request.
        client: HTTP client to use. One is created (and closed on
            :meth:`dispose`) when omitted.
        retry_policy: Backoff for commands. Server errors (5xx, 408, 429)
            and network failures are retried; other 4xx are not.
        reconnect_backoff: Delay schedule between stream reconnects.
    """

    def __init__(
        self,
        server_url: str,
        auth_token: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        reconnect_backoff: ReconnectBackoff | None = None,
    ) -> None:
        super().__init__()
        self._server_url = server_url.rstrip("/")
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self._retry_policy = retry_policy or DEFAULT_COMMAND_POLICY
        self._reconnect = reconnect_backoff or ReconnectBackoff()
        self._closed = asyncio.Event()
        self._stream_task: asyncio.Task[None] | None = None
        self._connected = False

    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def connected(self) -> bool:
        """Whether the event stream is currently open."""
        return self._connected

    @property
    def reconnect_backoff(self) -> ReconnectBackoff:
        return self._reconnect

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._auth_token}"}

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    async def send_command(self, command: Command) -> CommandResult:
        """POST *command*, retrying server-class and network failures.

        Returns a failed :class:`CommandResult` (never raises) for HTTP
        and network errors, carrying the last failure's message.

        Raises:
            TransportDisposedError: After :meth:`dispose`.
        """
        self._assert_not_disposed()
        url = self._server_url + COMMAND_PATH

        async def attempt() -> None:
            try:
                response = await self._client.post(
                    url, json=command.to_dict(), headers=self._headers()
                )
            except httpx.TransportError as exc:
                raise ConnectionFailedError(
                    f"Engine command '{command.type.value}' failed: {exc}"
                ) from exc
            if not response.is_success:
                raise error_from_status(
                    response.status_code,
                    f"Engine command '{command.type.value}' failed "
                    f"({response.status_code}): {response.text}",
                )

        try:
            await retry_async(attempt, self._retry_policy, cancel_event=self._closed)
        except IssuePilotError as exc:
            return CommandResult(ok=False, error=str(exc))
        return CommandResult(ok=True)

    # -----------------------------------------------------------------
    # Event stream
    # -----------------------------------------------------------------

    def connect(self) -> None:
        """Open the event stream in the background. No-op if already open."""
        self._assert_not_disposed()
        if self._stream_task is None or self._stream_task.done():
            self._stream_task = asyncio.create_task(self._stream_loop())

    async def _stream_loop(self) -> None:
        while not self._disposed:
            try:
                await self._consume_stream()
                logger.info("Event stream ended, reconnecting")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Event stream failed: %s", exc)
            finally:
                self._connected = False

            if self._disposed:
                break
            delay = self._reconnect.next_delay()
            logger.debug("Reconnecting event stream in %.1fs", delay)
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            break

    async def _consume_stream(self) -> None:
        parser = SSEFrameParser()
        async with self._client.stream(
            "GET",
            self._server_url + EVENTS_PATH,
            headers={**self._headers(), "Accept": "text/event-stream"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as response:
            if not response.is_success:
                await response.aread()
                raise error_from_status(
                    response.status_code,
                    f"Event stream rejected ({response.status_code}): {response.text}",
                )
            self._connected = True
            self._reconnect.reset()
            logger.info("Event stream connected to %s", self._server_url)

            async for chunk in response.aiter_text():
                for frame in parser.feed(chunk):
                    decoded = decode_frame(frame)
                    if decoded is not None:
                        self._emit(*decoded)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def dispose(self) -> None:
        """Close the stream, abandon command retries and drop listeners.

        Safe to call more than once.
        """
        if self._disposed:
            return
        self._disposed = True
        self._closed.set()
        self._registry.clear()

        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._owns_client:
            await self._client.aclose()
