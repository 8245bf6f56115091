"""Server side: validate an inbound envelope, dispatch it, format the reply."""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .protocol import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    UNSET,
    error_response,
    extract_request_id,
    is_valid_request,
    success_response,
)
from .transcoder import IDENTITY_TRANSCODER, Transcoder

logger = logging.getLogger(__name__)

RpcMethod = Callable[..., Any]


def _is_public(name: str) -> bool:
    return bool(name) and not name.startswith(("_", "$"))


# ---------------------------------------------------------------------------
# Method registry
# ---------------------------------------------------------------------------


class MethodRegistry:
    """Explicit mapping of RPC method name to handler.

    Build one with :meth:`from_service` from a service object or a mapping,
    or register handlers by hand::

        registry = MethodRegistry()

        @registry.register
        def hello(name: str) -> str:
            return f"Hello {name}!"
    """

    def __init__(self, methods: Mapping[str, RpcMethod] | None = None) -> None:
        self._methods: dict[str, RpcMethod] = {}
        for name, method in (methods or {}).items():
            self.register(method, name=name)

    @classmethod
    def from_service(cls, service: Any) -> MethodRegistry:
        """Collect the public callables of *service*.

        Members inherited from ``object``, private names (``_`` or ``$``
        prefix), properties and nested classes are never exposed.
        """
        if isinstance(service, MethodRegistry):
            return service

        registry = cls()
        if isinstance(service, Mapping):
            for name, member in service.items():
                if isinstance(name, str) and _is_public(name) and callable(member):
                    registry._methods[name] = member
            return registry

        for name in _member_names(service):
            static = inspect.getattr_static(service, name, None)
            if isinstance(static, (property, type)):
                continue
            member = getattr(service, name, None)
            if callable(member) and not isinstance(member, type):
                registry._methods[name] = member
        return registry

    def register(self, method: RpcMethod | None = None, *, name: str | None = None) -> Any:
        """Register *method* under *name* (defaults to ``method.__name__``).

        Usable directly or as a decorator, with or without ``name=``.
        """

        def _add(fn: RpcMethod) -> RpcMethod:
            if not callable(fn):
                msg = f"RPC method {name or fn!r} is not callable"
                raise TypeError(msg)
            key = name or fn.__name__
            if not _is_public(key):
                msg = f"RPC method name {key!r} is reserved"
                raise ValueError(msg)
            self._methods[key] = fn
            return fn

        if method is None:
            return _add
        return _add(method)

    def get(self, name: str) -> RpcMethod | None:
        return self._methods.get(name)

    def names(self) -> list[str]:
        return sorted(self._methods)

    def __contains__(self, name: object) -> bool:
        return name in self._methods

    def __len__(self) -> int:
        return len(self._methods)


def _member_names(service: Any) -> Iterator[str]:
    seen: set[str] = set()
    namespaces = [getattr(service, "__dict__", {})]
    namespaces += [vars(klass) for klass in type(service).__mro__ if klass is not object]
    for namespace in namespaces:
        for name in namespace:
            if isinstance(name, str) and _is_public(name) and name not in seen:
                seen.add(name)
                yield name


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def default_error_code(err: Any) -> int:
    code = getattr(err, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return SERVER_ERROR


def default_error_message(err: Any) -> str:
    message = getattr(err, "message", None)
    if isinstance(message, str):
        return message
    if isinstance(err, BaseException):
        return str(err)
    return ""


def default_error_data(err: Any) -> Any:
    """Return a JSON deep copy of ``err.data``; unrepresentable leaves become null."""
    data = getattr(err, "data", None)
    if data is None:
        return UNSET
    try:
        return json.loads(json.dumps(data, skipkeys=True, default=lambda _: None))
    except (TypeError, ValueError):
        # circular structures
        return UNSET


@dataclass
class RpcHandlerOptions:
    """Hooks that customize :func:`handle_rpc`.

    Attributes:
        transcoder: Applied to the inbound and outbound envelope.
        on_error: Called with the raw exception before it is mapped.
        get_error_code: Overrides the error ``code`` derivation.
        get_error_message: Overrides the error ``message`` derivation,
            e.g. to mask internal details.
        get_error_data: Overrides the error ``data`` derivation. Return
            ``None`` to leave ``data`` out.
    """

    transcoder: Transcoder = field(default=IDENTITY_TRANSCODER)
    on_error: Callable[[Exception], None] | None = None
    get_error_code: Callable[[Exception], int] = default_error_code
    get_error_message: Callable[[Exception], str] = default_error_message
    get_error_data: Callable[[Exception], Any] = default_error_data


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def handle_rpc(
    request: Any,
    service: Any,
    options: RpcHandlerOptions | None = None,
) -> Any:
    """Handle one JSON-RPC request and return the response envelope.

    Args:
        request: The decoded request body, or the raw wire string/bytes. In
            the latter case the response is returned as a JSON string.
        service: A :class:`MethodRegistry`, a mapping of name to callable,
            or any object whose public methods are exposed.
        options: Optional transcoder and error-mapping hooks.

    Never raises for a failing request or method; every failure becomes an
    error envelope.
    """
    options = options or RpcHandlerOptions()
    wire = isinstance(request, (str, bytes, bytearray))
    if wire:
        try:
            request = json.loads(request)
        except (ValueError, RecursionError):
            logger.warning("Rejecting unparseable JSON-RPC request")
            return _encode(error_response(None, PARSE_ERROR, "Parse error"), options, wire=True)

    response = await _dispatch(request, service, options)
    return _encode(response, options, wire=wire)


async def _dispatch(raw: Any, service: Any, options: RpcHandlerOptions) -> dict[str, Any]:
    try:
        request = options.transcoder.deserialize(raw)
    except Exception:
        logger.warning("Failed to deserialize JSON-RPC request", exc_info=True)
        return error_response(extract_request_id(raw), INVALID_REQUEST, "Invalid Request")

    request_id = extract_request_id(request)
    if not is_valid_request(request):
        return error_response(request_id, INVALID_REQUEST, "Invalid Request")

    method_name = request["method"]
    method = MethodRegistry.from_service(service).get(method_name)
    if method is None:
        return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method_name}")

    try:
        result = method(*request.get("params", ()))
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        logger.warning("RPC method %s raised %s: %s", method_name, type(exc).__name__, exc)
        return _error_envelope(request_id, exc, options)

    return success_response(request_id, result)


def _error_envelope(request_id: Any, exc: Exception, options: RpcHandlerOptions) -> dict[str, Any]:
    try:
        if options.on_error is not None:
            options.on_error(exc)
        code = options.get_error_code(exc)
        message = options.get_error_message(exc)
        data = options.get_error_data(exc)
    except Exception:
        logger.exception("Error mapping failed for %r", exc)
        return error_response(request_id, INTERNAL_ERROR, "Internal error")
    return error_response(request_id, code, message, UNSET if data is None else data)


def _encode(response: dict[str, Any], options: RpcHandlerOptions, *, wire: bool) -> Any:
    try:
        encoded = options.transcoder.serialize(response)
        return json.dumps(encoded) if wire else encoded
    except Exception:
        logger.exception("Failed to serialize JSON-RPC response")
        fallback = error_response(response.get("id"), INTERNAL_ERROR, "Internal error")
        return json.dumps(fallback) if wire else fallback
