"""aiohttp adapters that feed inbound requests to :func:`handle_rpc`."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import WSMsgType, web

from .server import RpcHandlerOptions, handle_rpc

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
ServiceFactory = Callable[[web.Request], Any]


def _service_resolver(service: Any, factory: ServiceFactory | None) -> ServiceFactory:
    if (service is None) == (factory is None):
        msg = "Pass exactly one of 'service' or 'factory'"
        raise ValueError(msg)
    if factory is not None:
        return factory
    return lambda _request: service


def rpc_handler(
    service: Any = None,
    *,
    factory: ServiceFactory | None = None,
    options: RpcHandlerOptions | None = None,
) -> Handler:
    """Return an aiohttp handler answering JSON-RPC POST requests.

    Args:
        service: Service shared by all requests.
        factory: Builds a service per request, e.g. to read its headers.
        options: Passed through to :func:`handle_rpc`.
    """
    resolve = _service_resolver(service, factory)

    async def _handle(request: web.Request) -> web.Response:
        body = await request.text()
        reply = await handle_rpc(body, resolve(request), options)
        return web.Response(text=reply, content_type="application/json")

    return _handle


def rpc_websocket_handler(
    service: Any = None,
    *,
    factory: ServiceFactory | None = None,
    options: RpcHandlerOptions | None = None,
) -> Handler:
    """Return an aiohttp handler serving JSON-RPC over a WebSocket.

    Every text message is handled in its own task, so replies go out in
    completion order and clients must correlate them by ``id``.
    """
    resolve = _service_resolver(service, factory)

    async def _handle(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        svc = resolve(request)
        tasks: set[asyncio.Task[None]] = set()

        async def _reply(data: str) -> None:
            reply = await handle_rpc(data, svc, options)
            if ws.closed:
                logger.debug("Dropping reply, WebSocket already closed")
                return
            try:
                await ws.send_str(reply)
            except ConnectionError as exc:
                logger.warning("Failed to send JSON-RPC reply: %s", exc)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    task = asyncio.create_task(_reply(msg.data))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            for task in tasks:
                task.cancel()

        return ws

    return _handle


def add_rpc_routes(
    app: web.Application,
    path: str,
    service: Any = None,
    *,
    factory: ServiceFactory | None = None,
    ws_path: str | None = None,
    options: RpcHandlerOptions | None = None,
) -> None:
    """Mount a POST route at *path* and, optionally, a WebSocket route at *ws_path*."""
    app.router.add_post(path, rpc_handler(service, factory=factory, options=options))
    if ws_path is not None:
        app.router.add_get(ws_path, rpc_websocket_handler(service, factory=factory, options=options))
