"""JSON-RPC 2.0 wire model: envelopes, validity checks and error types."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Union

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JSONRPC_VERSION = "2.0"

# Standard error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Implementation-defined codes (-32000 .. -32099)
SERVER_ERROR = -32000
TRANSPORT_ERROR = -32099

RequestId = Union[str, int, float, None]


class _Unset:
    """Marker for an omitted optional argument."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Error reported by a JSON-RPC peer or raised for a local protocol failure.

    Service methods may raise it to control the ``code`` and ``data`` of the
    error response.
    """

    def __init__(self, message: str, code: int = SERVER_ERROR, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (
            type(self) is type(other)
            and self.code == other.code
            and self.message == other.message
            and self.data == other.data
        )

    __hash__ = Exception.__hash__


class RpcTransportError(RpcError):
    """The exchange itself failed (connection error, non-success HTTP status)."""

    def __init__(self, message: str, code: int = TRANSPORT_ERROR, data: Any = None) -> None:
        super().__init__(message, code, data)


class RpcTimeoutError(RpcError):
    """No response arrived within the configured timeout."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message, SERVER_ERROR)


class RpcAbortedError(RpcError):
    """The call was aborted by the caller."""

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message, SERVER_ERROR)


class InvalidResponseError(RpcError, TypeError):
    """A message that is not a valid JSON-RPC 2.0 response envelope."""

    def __init__(self, message: str = "Invalid response", data: Any = None) -> None:
        super().__init__(message, INTERNAL_ERROR, data)


# ---------------------------------------------------------------------------
# Validity predicates
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_id(value: Any) -> bool:
    return value is None or isinstance(value, str) or _is_number(value)


def is_valid_request(data: Any) -> bool:
    """Return True if *data* is a JSON-RPC 2.0 request or notification."""
    if not isinstance(data, dict):
        return False
    if data.get("jsonrpc") != JSONRPC_VERSION:
        return False
    if not isinstance(data.get("method"), str):
        return False
    if "id" in data and not _is_id(data["id"]):
        return False
    return "params" not in data or isinstance(data["params"], list)


def is_valid_response(data: Any) -> bool:
    """Return True if *data* is a success or error response envelope."""
    if not isinstance(data, dict):
        return False
    if data.get("jsonrpc") != JSONRPC_VERSION:
        return False
    if not _is_id(data.get("id")):
        return False

    has_result = "result" in data
    has_error = "error" in data
    if has_result == has_error:
        return False
    if has_error:
        error = data["error"]
        return (
            isinstance(error, dict)
            and isinstance(error.get("code"), int)
            and not isinstance(error.get("code"), bool)
            and isinstance(error.get("message"), str)
        )
    return True


def extract_request_id(data: Any) -> str | int | float | None:
    """Return the request ``id`` if it is a string or number, else ``None``.

    Safe on arbitrary input so that a malformed request can still be
    answered with a correlated error response.
    """
    if isinstance(data, dict):
        request_id = data.get("id")
        if isinstance(request_id, str) or _is_number(request_id):
            return request_id
    return None


def is_notification(data: Any) -> bool:
    return isinstance(data, dict) and "id" not in data


# ---------------------------------------------------------------------------
# Request / Response helpers
# ---------------------------------------------------------------------------


def strip_trailing_unset(values: Sequence[Any]) -> list[Any]:
    """Drop trailing UNSET entries; an UNSET in the middle becomes ``None``."""
    params = list(values)
    while params and params[-1] is UNSET:
        params.pop()
    return [None if value is UNSET else value for value in params]


def build_request(
    method: str,
    params: Sequence[Any] | None = None,
    *,
    request_id: RequestId = UNSET,
) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 request envelope.

    Args:
        method: Remote method name.
        params: Positional arguments. Trailing UNSET entries are stripped and
            ``params`` is left out when nothing remains.
        request_id: Request id. Leave it out to build a notification.

    Returns:
        A dict ready for ``json.dumps()``.
    """
    request: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if request_id is not UNSET:
        request["id"] = request_id
    request["method"] = method
    stripped = strip_trailing_unset(params or ())
    if stripped:
        request["params"] = stripped
    return request


def success_response(request_id: RequestId, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = UNSET,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not UNSET:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def parse_response(data: Any) -> Any:
    """Validate a JSON-RPC 2.0 response and return the result payload.

    Raises:
        InvalidResponseError: If *data* is not a valid response envelope.
        RpcError: If the response carries an ``error`` member.
    """
    if not is_valid_response(data):
        raise InvalidResponseError(data=data)

    if "error" in data:
        err = data["error"]
        raise RpcError(err["message"], code=err["code"], data=err.get("data"))

    return data["result"]
