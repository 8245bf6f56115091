"""Transport layer: ABC and the HTTP request/response transport."""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import aiohttp

from .protocol import InvalidResponseError, RpcTransportError, is_notification

if TYPE_CHECKING:
    from .client import AbortSignal

logger = logging.getLogger(__name__)

HeadersCallback = Callable[[], "Mapping[str, str] | Awaitable[Mapping[str, str] | None] | None"]


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class Transport(ABC):
    """Abstract base class for JSON-RPC transports.

    A transport moves one serialized request envelope to the peer and
    returns the serialized response envelope. It knows nothing about the
    meaning of the envelope beyond the top-level ``id``.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the transport for sending."""

    @abstractmethod
    async def send(self, request: Any, signal: AbortSignal | None = None) -> Any:
        """Send *request* and return the raw response envelope.

        Returns ``None`` for notifications.

        Raises:
            RpcTransportError: If the exchange itself fails.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the transport is currently connected."""

    async def __aenter__(self) -> Transport:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def resolve_headers(get_headers: HeadersCallback | None) -> dict[str, str]:
    """Invoke a sync or async headers callback and return its mapping."""
    if get_headers is None:
        return {}
    headers = get_headers()
    if inspect.isawaitable(headers):
        headers = await headers
    return dict(headers or {})


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


class HTTPTransport(Transport):
    """Transport that POSTs each JSON-RPC request to an HTTP endpoint.

    The response envelope is parsed from the HTTP response body. A
    non-success status is a transport failure and raises
    :class:`RpcTransportError` carrying the status code, which keeps it
    apart from an ``error`` member inside a valid response.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        get_headers: HeadersCallback | None = None,
        timeout: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._headers = dict(headers or {})
        self._get_headers = get_headers
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._connected = False

    @property
    def url(self) -> str:
        return self._url

    # -- Transport interface ------------------------------------------------

    async def connect(self) -> None:
        """Open the shared client session. HTTP keeps no persistent connection."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        self._connected = True
        logger.info("HTTPTransport ready: %s", self._url)

    async def send(self, request: Any, signal: AbortSignal | None = None) -> Any:
        """POST a JSON-RPC request and return the decoded response body."""
        if signal is not None:
            signal.raise_if_aborted()
        if not self._connected:
            await self.connect()
        assert self._session is not None

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            **self._headers,
            **(await resolve_headers(self._get_headers)),
        }
        body = json.dumps(request)
        logger.debug("POST %s: %s", self._url, body)

        try:
            async with self._session.post(self._url, data=body, headers=headers) as resp:
                if resp.status < 200 or resp.status >= 300:
                    text = await resp.text()
                    raise RpcTransportError(
                        resp.reason or f"HTTP {resp.status}",
                        code=resp.status,
                        data=text[:200],
                    )
                if is_notification(request):
                    return None
                text = await resp.text()
        except (aiohttp.ClientError, OSError) as exc:
            msg = f"HTTP request to {self._url} failed: {exc}"
            raise RpcTransportError(msg) from exc

        try:
            return json.loads(text)
        except ValueError as exc:
            raise InvalidResponseError(data=text[:200]) from exc

    async def close(self) -> None:
        """Close the session if this transport created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self._connected = False
        logger.info("HTTPTransport closed")

    @property
    def is_connected(self) -> bool:
        return self._connected
