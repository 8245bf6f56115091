"""Client side: turn method calls into JSON-RPC requests and unwrap replies."""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Generator
from typing import Any

from .protocol import RequestId, RpcAbortedError, build_request, parse_response
from .transcoder import IDENTITY_TRANSCODER, Transcoder
from .transport import HeadersCallback, HTTPTransport, Transport

logger = logging.getLogger(__name__)

TransportCallable = Callable[[Any, "AbortSignal"], Awaitable[Any]]


def _is_reserved(name: str) -> bool:
    return not name or name.startswith(("_", "$"))


def time_based_ids() -> Callable[[], int]:
    """Return an id generator counting up from the current time in milliseconds."""
    return functools.partial(next, itertools.count(time.time_ns() // 1_000_000))


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class AbortSignal:
    """Cancellation token handed to the transport with every call."""

    def __init__(self) -> None:
        self._aborted = False
        self._listeners: list[Callable[[], Any]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener()

    def add_listener(self, listener: Callable[[], Any]) -> None:
        """Call *listener* on abort, or right away if already aborted."""
        if self._aborted:
            listener()
        else:
            self._listeners.append(listener)

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise RpcAbortedError()


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # a call nobody awaits must not log "exception was never retrieved"
    if not task.cancelled() and task.exception() is not None:
        logger.debug("RPC call failed: %r", task.exception())


class RpcCall:
    """Handle for one in-flight call.

    Await it for the result; call :meth:`abort` to cancel it. An aborted call
    raises :class:`RpcAbortedError` when awaited.
    """

    def __init__(
        self,
        method: str,
        request_id: RequestId,
        task: asyncio.Task[Any],
        signal: AbortSignal,
    ) -> None:
        self.method = method
        self.id = request_id
        self.signal = signal
        self._task = task
        signal.add_listener(task.cancel)
        task.add_done_callback(_retrieve_exception)

    def abort(self) -> None:
        self.signal.abort()

    def done(self) -> bool:
        return self._task.done()

    async def _result(self) -> Any:
        try:
            return await self._task
        except asyncio.CancelledError:
            if self.signal.aborted and self._task.cancelled():
                raise RpcAbortedError() from None
            raise

    def __await__(self) -> Generator[Any, None, Any]:
        return self._result().__await__()

    def __repr__(self) -> str:
        return f"<RpcCall {self.method} id={self.id!r} done={self.done()}>"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RemoteMethod:
    """Callable stand-in for a remote method; attribute access nests names."""

    def __init__(self, client: RpcClient, name: str) -> None:
        self._client = client
        self._name = name

    def __call__(self, *args: Any) -> RpcCall:
        return self._client.call(self._name, *args)

    def __getattr__(self, name: str) -> RemoteMethod:
        if _is_reserved(name):
            raise AttributeError(name)
        return RemoteMethod(self._client, f"{self._name}.{name}")

    def __repr__(self) -> str:
        return f"<RemoteMethod {self._name}>"


class RpcClient:
    """JSON-RPC 2.0 client.

    Any attribute that is not part of the control surface below is a remote
    method::

        client = RpcClient(url="http://localhost:8080/api")
        greeting = await client.hello("World")

    Names starting with ``_`` or ``$`` are reserved and never sent. Use
    :meth:`call` for remote names that clash with a control member.

    Args:
        transport: A :class:`Transport` or an async callable
            ``(request, signal) -> response``.
        url: Build an :class:`HTTPTransport` for this URL when no transport
            is given.
        transcoder: Applied to every request and response envelope.
        id_generator: Returns a fresh request id per call.
        get_headers: Sync or async callable supplying extra HTTP headers,
            invoked before every request (only with ``url``).
        timeout: Total HTTP request timeout in seconds (only with ``url``).
    """

    def __init__(
        self,
        transport: Transport | TransportCallable | None = None,
        *,
        url: str | None = None,
        transcoder: Transcoder | None = None,
        id_generator: Callable[[], RequestId] | None = None,
        get_headers: HeadersCallback | None = None,
        timeout: float | None = None,
    ) -> None:
        if transport is None:
            if url is None:
                msg = "RpcClient requires either a transport or a url"
                raise ValueError(msg)
            transport = HTTPTransport(url, get_headers=get_headers, timeout=timeout)
        elif not isinstance(transport, Transport) and not callable(transport):
            msg = f"Unsupported transport: {transport!r}"
            raise TypeError(msg)

        self.transport = transport
        self.transcoder = transcoder or IDENTITY_TRANSCODER
        self._next_id = id_generator or time_based_ids()

    def __getattr__(self, name: str) -> RemoteMethod:
        if _is_reserved(name):
            raise AttributeError(name)
        return RemoteMethod(self, name)

    # -- Control surface ----------------------------------------------------

    def call(self, method: str, *args: Any) -> RpcCall:
        """Start a call to *method* and return its handle."""
        signal = AbortSignal()
        request_id = self._next_id()
        task = asyncio.get_running_loop().create_task(
            self._invoke(method, args, request_id, signal),
        )
        return RpcCall(method, request_id, task, signal)

    async def notify(self, method: str, *args: Any) -> None:
        """Send a notification: no id, and any response is ignored."""
        request = build_request(method, args)
        await self._send(self.transcoder.serialize(request), AbortSignal())

    def abort(self, call: RpcCall) -> None:
        """Abort an in-flight call returned by this client."""
        call.abort()

    async def close(self) -> None:
        if isinstance(self.transport, Transport):
            await self.transport.close()

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- Internals ----------------------------------------------------------

    async def _send(self, payload: Any, signal: AbortSignal) -> Any:
        if isinstance(self.transport, Transport):
            return await self.transport.send(payload, signal)
        return await self.transport(payload, signal)

    async def _invoke(
        self,
        method: str,
        args: tuple[Any, ...],
        request_id: RequestId,
        signal: AbortSignal,
    ) -> Any:
        request = build_request(method, args, request_id=request_id)
        logger.debug("Calling %s (id=%s)", method, request_id)
        raw = await self._send(self.transcoder.serialize(request), signal)
        return parse_response(self.transcoder.deserialize(raw))
