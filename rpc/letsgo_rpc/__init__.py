"""JSON-RPC 2.0 for LetsGo.

Provides a client that turns attribute calls into JSON-RPC requests over
HTTP or a persistent WebSocket, and a server-side handler that dispatches
requests to a service object, with aiohttp adapters for both transports.
"""

from __future__ import annotations

from .client import AbortSignal, RemoteMethod, RpcCall, RpcClient
from .protocol import (
    JSONRPC_VERSION,
    UNSET,
    InvalidResponseError,
    RpcAbortedError,
    RpcError,
    RpcTimeoutError,
    RpcTransportError,
    build_request,
    extract_request_id,
    is_valid_request,
    is_valid_response,
    parse_response,
)
from .server import MethodRegistry, RpcHandlerOptions, handle_rpc
from .transcoder import IDENTITY_TRANSCODER, TAGGED_JSON_TRANSCODER, Transcoder
from .transport import HTTPTransport, Transport
from .websocket import ConnectionState, WebSocketTransport

__all__ = [
    "AbortSignal",
    "ConnectionState",
    "HTTPTransport",
    "IDENTITY_TRANSCODER",
    "InvalidResponseError",
    "JSONRPC_VERSION",
    "MethodRegistry",
    "RemoteMethod",
    "RpcAbortedError",
    "RpcCall",
    "RpcClient",
    "RpcError",
    "RpcHandlerOptions",
    "RpcTimeoutError",
    "RpcTransportError",
    "TAGGED_JSON_TRANSCODER",
    "Transcoder",
    "Transport",
    "UNSET",
    "WebSocketTransport",
    "build_request",
    "extract_request_id",
    "handle_rpc",
    "is_valid_request",
    "is_valid_response",
    "parse_response",
]
