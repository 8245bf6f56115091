"""Persistent WebSocket transport with id correlation and reconnection."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import WSCloseCode, WSMsgType

from .protocol import (
    INVALID_REQUEST,
    InvalidResponseError,
    RequestId,
    RpcError,
    RpcTimeoutError,
    RpcTransportError,
    is_notification,
    is_valid_response,
)
from .transport import Transport

if TYPE_CHECKING:
    from .client import AbortSignal

logger = logging.getLogger(__name__)

# Close reason that asks the other side to reconnect after a clean close
RECONNECT_REASON = "reconnect"

DEFAULT_TIMEOUT = 60.0
DEFAULT_RECONNECT_DELAY = 1.0


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class PendingCall:
    request_id: RequestId
    future: asyncio.Future[Any]


class WebSocketTransport(Transport):
    """Transport that multiplexes calls over one long-lived WebSocket.

    Responses are matched to calls by ``id``, so they may arrive in any
    order. Each call is bounded by ``timeout`` seconds (``0`` disables it).
    After an unclean close, or a clean close with reason ``"reconnect"``,
    the transport reconnects after ``reconnect_delay`` seconds (``0``
    disables reconnection).

    Args:
        url: ``ws://`` or ``wss://`` endpoint.
        timeout: Per-call timeout in seconds.
        reconnect_delay: Delay before reconnecting, in seconds.
        headers: Extra headers for the opening handshake.
        on_open: Called with the ``ClientWebSocketResponse`` whenever a
            connection opens.
        on_message_error: Receives malformed, invalid or unmatched inbound
            messages as exceptions. They are logged when no hook is set.
        session: Optional ``aiohttp.ClientSession`` to connect with.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float | None = DEFAULT_TIMEOUT,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        headers: Mapping[str, str] | None = None,
        on_open: Callable[[aiohttp.ClientWebSocketResponse], Any] | None = None,
        on_message_error: Callable[[Exception], Any] | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout or 0
        self._reconnect_delay = reconnect_delay
        self._headers = dict(headers or {})
        self._on_open = on_open
        self._on_message_error = on_message_error
        self._session = session
        self._owns_session = session is None

        self._state = ConnectionState.IDLE
        self._pending: dict[RequestId, PendingCall] = {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ready: asyncio.Future[aiohttp.ClientWebSocketResponse] | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._local_close_reason: str | None = None
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    # -- Transport interface ------------------------------------------------

    async def connect(self) -> None:
        """Open the connection now instead of on the first send."""
        await self._connection()

    async def send(self, request: Any, signal: AbortSignal | None = None) -> Any:
        """Send *request* and wait for the response with the same ``id``.

        Raises:
            RpcError: If a call with the same ``id`` is still in flight.
            RpcTimeoutError: If no response arrives within the timeout.
            RpcTransportError: If the connection cannot be used.
        """
        if signal is not None:
            signal.raise_if_aborted()

        if is_notification(request):
            ws = await self._connection()
            await self._send_json(ws, request)
            return None

        request_id = request.get("id")
        if request_id in self._pending:
            msg = f"Duplicate request id: {request_id!r}"
            raise RpcError(msg, INVALID_REQUEST)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingCall(request_id, future)
        try:
            if self._timeout > 0:
                return await asyncio.wait_for(self._roundtrip(request, future), self._timeout)
            return await self._roundtrip(request, future)
        except asyncio.TimeoutError:
            logger.warning("Request %r to %s timed out after %ss", request_id, self._url, self._timeout)
            raise RpcTimeoutError() from None
        finally:
            pending = self._pending.get(request_id)
            if pending is not None and pending.future is future:
                del self._pending[request_id]
            if not future.done():
                future.cancel()

    async def close(self, reason: str = "") -> None:
        """Close the connection.

        With ``reason="reconnect"`` only the current socket is closed and
        the transport reconnects. Otherwise the transport is shut down:
        scheduled reconnects are cancelled and pending calls fail.
        """
        reconnect = reason == RECONNECT_REASON
        if not reconnect:
            self._closed = True
            if self._reconnect_handle is not None:
                self._reconnect_handle.cancel()
                self._reconnect_handle = None

        ws = self._ws
        if ws is not None and not ws.closed:
            self._local_close_reason = reason
            await ws.close(code=WSCloseCode.OK, message=reason.encode())

        if reconnect:
            return

        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        if self._ready is not None:
            self._fail_ready(self._ready, RpcTransportError("Transport is closed"))
            self._ready = None
        self._fail_pending("Connection closed")
        self._state = ConnectionState.CLOSED

        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("WebSocketTransport closed: %s", self._url)

    # -- Connection lifecycle -----------------------------------------------

    async def _connection(self) -> aiohttp.ClientWebSocketResponse:
        if self._closed:
            msg = "Transport is closed"
            raise RpcTransportError(msg)
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            self._start(self._ready)
        return await asyncio.shield(self._ready)

    def _start(self, ready: asyncio.Future[aiohttp.ClientWebSocketResponse]) -> None:
        self._reconnect_handle = None
        if self._closed:
            return
        self._state = ConnectionState.CONNECTING
        self._reader = asyncio.get_running_loop().create_task(self._run(ready))

    def _schedule_reconnect(self) -> None:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        self._ready = ready
        self._reconnect_handle = loop.call_later(self._reconnect_delay, self._start, ready)
        logger.info("Reconnecting to %s in %ss", self._url, self._reconnect_delay)

    def _should_reconnect(self, clean: bool, reason: str) -> bool:
        """Reconnect after an unclean close or a close flagged ``"reconnect"``."""
        if self._closed or self._reconnect_delay <= 0:
            return False
        return not clean or reason == RECONNECT_REASON

    async def _run(self, ready: asyncio.Future[aiohttp.ClientWebSocketResponse]) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            ws = await self._session.ws_connect(self._url, headers=self._headers)
        except (aiohttp.ClientError, OSError) as exc:
            logger.warning("WebSocket connection to %s failed: %s", self._url, exc)
            self._state = ConnectionState.CLOSED
            self._fail_ready(ready, RpcTransportError(f"WebSocket connection to {self._url} failed: {exc}"))
            if self._ready is ready:
                self._ready = None
            if self._should_reconnect(clean=False, reason=""):
                self._schedule_reconnect()
            return

        self._ws = ws
        self._local_close_reason = None
        self._state = ConnectionState.OPEN
        logger.info("WebSocket connected: %s", self._url)
        if self._on_open is not None:
            try:
                self._on_open(ws)
            except Exception:
                logger.exception("on_open hook failed")
        if not ready.done():
            ready.set_result(ws)

        try:
            clean, reason = await self._read(ws)
        finally:
            self._ws = None
            self._state = ConnectionState.CLOSED
            if self._ready is ready:
                self._ready = None

        logger.info("WebSocket to %s closed (clean=%s, reason=%r)", self._url, clean, reason)
        if self._should_reconnect(clean, reason):
            self._schedule_reconnect()
        else:
            self._fail_pending("Connection closed")

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> tuple[bool, str]:
        """Pump inbound messages until the socket closes; return (clean, reason)."""
        while True:
            msg = await ws.receive()
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                self._handle_message(msg.data)
            elif msg.type == WSMsgType.CLOSE:
                return True, msg.extra or ""
            elif msg.type in (WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
                break

        # without a close frame only a locally initiated close is clean
        if self._local_close_reason is not None:
            return True, self._local_close_reason
        if ws.exception() is not None:
            logger.warning("WebSocket to %s failed: %s", self._url, ws.exception())
        return False, ""

    # -- Messages -----------------------------------------------------------

    async def _roundtrip(self, request: dict[str, Any], future: asyncio.Future[Any]) -> Any:
        ws = await self._connection()
        await self._send_json(ws, request)
        return await future

    async def _send_json(self, ws: aiohttp.ClientWebSocketResponse, request: Any) -> None:
        payload = json.dumps(request)
        logger.debug("WS send %s: %s", self._url, payload)
        try:
            await ws.send_str(payload)
        except (ConnectionError, RuntimeError) as exc:
            msg = f"WebSocket send to {self._url} failed: {exc}"
            raise RpcTransportError(msg) from exc

    def _handle_message(self, data: str | bytes) -> None:
        try:
            response = json.loads(data)
        except ValueError as exc:
            self._report(exc)
            return

        if not is_valid_response(response):
            self._report(InvalidResponseError(data=response))
            return

        request_id = response.get("id")
        if request_id is None:
            logger.debug("Dropping response without id from %s", self._url)
            return

        pending = self._pending.pop(request_id, None)
        if pending is None:
            self._report(RpcError(f"Request not found for id: {request_id}"))
            return
        if not pending.future.done():
            pending.future.set_result(response)

    def _report(self, exc: Exception) -> None:
        if self._on_message_error is None:
            logger.warning("Dropping inbound message from %s: %s", self._url, exc)
            return
        try:
            self._on_message_error(exc)
        except Exception:
            logger.exception("on_message_error hook failed")

    def _fail_pending(self, message: str) -> None:
        pending, self._pending = self._pending, {}
        for call in pending.values():
            if not call.future.done():
                call.future.set_exception(RpcTransportError(message))

    @staticmethod
    def _fail_ready(ready: asyncio.Future[Any], exc: Exception) -> None:
        if not ready.done():
            ready.set_exception(exc)
            # nobody may be waiting; mark the exception as retrieved
            ready.exception()
