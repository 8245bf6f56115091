"""Shared fixtures for letsgo-rpc tests.

Provides sys.path setup so ``letsgo_rpc`` is importable without installing,
the sample services the tests dispatch to, and aiohttp test-server helpers.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import sys
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Import path setup: add the package parent dir so bare imports work
# ---------------------------------------------------------------------------

_REPO_ROOT = Path(__file__).resolve().parent.parent
_PACKAGE_DIR = str(_REPO_ROOT / "rpc")
if _PACKAGE_DIR not in sys.path:
    sys.path.insert(0, _PACKAGE_DIR)

from aiohttp import web  # noqa: E402

from letsgo_rpc import TAGGED_JSON_TRANSCODER, RpcError, RpcHandlerOptions  # noqa: E402
from letsgo_rpc.web import add_rpc_routes  # noqa: E402


# ---------------------------------------------------------------------------
# Sample services
# ---------------------------------------------------------------------------


class Service:
    """Service exposed by the test servers."""

    def hello(self, name: str) -> str:
        return f"Hello {name}!"

    def greet(self, hello: str, name: str = "world") -> str:
        return f"{hello} {name}!"

    def sorry(self, name: str, data: Any = None) -> str:
        err = ValueError(f"Sorry {name}.")
        if data:
            err.data = data  # type: ignore[attr-defined]
        raise err

    def fail_with_code(self, code: int) -> None:
        raise RpcError("Custom failure", code=code)

    async def sleep(self, seconds: float) -> str:
        await asyncio.sleep(seconds)
        return "Operation completed"

    def echo_header(self, name: str) -> Any:
        raise RuntimeError("This service can't access request headers")

    def _private(self) -> str:
        return "secret"


class RequestAwareService(Service):
    """A Service with access to the request headers."""

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}

    def echo_header(self, name: str) -> Any:
        return self._headers.get(name.lower())


class ComplexService:
    """Returns and accepts values that plain JSON cannot carry."""

    def start_of_epoch(self) -> dt.datetime:
        return dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)

    def day_of_week(self, date: dt.date) -> str:
        return date.strftime("%A")

    def unique(self, items: list[str]) -> set[str]:
        return set(items)


MASKED_OPTIONS = RpcHandlerOptions(
    get_error_message=lambda _err: "Something went wrong",
    get_error_code=lambda _err: 100,
)


def build_app() -> web.Application:
    """aiohttp app mirroring a typical deployment of the handlers."""

    @web.middleware
    async def prefer_status(request: web.Request, handler: Any) -> web.StreamResponse:
        status = request.headers.get("Prefer-Status")
        if status:
            return web.Response(status=int(status))
        return await handler(request)

    app = web.Application(middlewares=[prefer_status])
    add_rpc_routes(app, "/api", Service())
    add_rpc_routes(app, "/error-masked-api", Service(), ws_path="/ws", options=MASKED_OPTIONS)
    add_rpc_routes(
        app,
        "/request-aware-api",
        factory=lambda request: RequestAwareService(dict(request.headers)),
    )
    add_rpc_routes(
        app,
        "/complex-api",
        ComplexService(),
        options=RpcHandlerOptions(transcoder=TAGGED_JSON_TRANSCODER),
    )
    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def service() -> Service:
    """Return a fresh Service for each test."""
    return Service()


@pytest.fixture()
def app() -> web.Application:
    return build_app()
