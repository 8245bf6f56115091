"""Tests for the server-side dispatcher."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any
from unittest.mock import MagicMock

import pytest

from conftest import ComplexService, Service
from letsgo_rpc.protocol import RpcError, is_valid_response
from letsgo_rpc.server import MethodRegistry, RpcHandlerOptions, handle_rpc
from letsgo_rpc.transcoder import TAGGED_JSON_TRANSCODER, Transcoder


def _request(method: str, *params: Any, request_id: Any = 1) -> dict[str, Any]:
    req: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params:
        req["params"] = list(params)
    return req


# ---------------------------------------------------------------------------
# handle_rpc: success and protocol errors
# ---------------------------------------------------------------------------


class TestHandleRpc:
    """Validation, dispatch and response formatting."""

    @pytest.mark.asyncio
    async def test_hello_world(self) -> None:
        res = await handle_rpc(
            {"jsonrpc": "2.0", "method": "hello", "params": ["World"], "id": 1},
            {"hello": lambda name: f"Hello {name}!"},
        )
        assert res == {"jsonrpc": "2.0", "id": 1, "result": "Hello World!"}

    @pytest.mark.asyncio
    async def test_method_not_found(self, service: Service) -> None:
        res = await handle_rpc({"jsonrpc": "2.0", "method": "nonexistent", "id": 2}, service)
        assert res == {
            "jsonrpc": "2.0",
            "id": 2,
            "error": {"code": -32601, "message": "Method not found: nonexistent"},
        }

    @pytest.mark.asyncio
    async def test_missing_version_is_invalid(self, service: Service) -> None:
        res = await handle_rpc({"method": "hello", "params": ["World"]}, service)
        assert res == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32600, "message": "Invalid Request"},
        }

    @pytest.mark.asyncio
    async def test_invalid_request_keeps_id(self, service: Service) -> None:
        res = await handle_rpc({"jsonrpc": "1.0", "id": "abc", "method": "hello"}, service)
        assert res["id"] == "abc"
        assert res["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_missing_method_has_null_id(self, service: Service) -> None:
        res = await handle_rpc({"jsonrpc": "2.0", "id": {"bad": 1}}, service)
        assert res["id"] is None
        assert res["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_params_absent_calls_without_args(self) -> None:
        res = await handle_rpc(_request("ping"), {"ping": lambda: "pong"})
        assert res["result"] == "pong"

    @pytest.mark.asyncio
    async def test_default_argument_used(self, service: Service) -> None:
        res = await handle_rpc(_request("greet", "Hi"), service)
        assert res["result"] == "Hi world!"

    @pytest.mark.asyncio
    async def test_async_method_awaited(self, service: Service) -> None:
        res = await handle_rpc(_request("sleep", 0), service)
        assert res["result"] == "Operation completed"

    @pytest.mark.asyncio
    async def test_notification_is_answered_with_null_id(self, service: Service) -> None:
        res = await handle_rpc({"jsonrpc": "2.0", "method": "hello", "params": ["x"]}, service)
        assert res == {"jsonrpc": "2.0", "id": None, "result": "Hello x!"}

    @pytest.mark.asyncio
    async def test_every_response_is_valid(self, service: Service) -> None:
        requests = [
            _request("hello", "a"),
            _request("missing"),
            {"method": "hello"},
            _request("sorry", "Dave"),
            "garbage",
        ]
        for req in requests:
            res = await handle_rpc(req, service)
            if isinstance(res, str):
                res = json.loads(res)
            assert is_valid_response(res), res


# ---------------------------------------------------------------------------
# handle_rpc: method resolution
# ---------------------------------------------------------------------------


class TestMethodResolution:
    """Only public members of the service are dispatchable."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["__init__", "_private", "__class__", "$abort"])
    async def test_private_members_not_found(self, service: Service, method: str) -> None:
        res = await handle_rpc(_request(method), service)
        assert res["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_object_members_not_found(self) -> None:
        class Bare:
            pass

        for method in ("__str__", "__repr__", "__eq__"):
            res = await handle_rpc(_request(method), Bare())
            assert res["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_non_callable_member_not_found(self) -> None:
        res = await handle_rpc(_request("version"), {"version": "1.0"})
        assert res["error"]["code"] == -32601

    def test_registry_from_service(self, service: Service) -> None:
        registry = MethodRegistry.from_service(service)
        assert "hello" in registry
        assert "_private" not in registry
        assert "echo_header" in registry

    def test_registry_skips_properties(self) -> None:
        class WithProperty:
            @property
            def explode(self) -> Any:
                raise AssertionError("property must not be evaluated")

            def ok(self) -> bool:
                return True

        registry = MethodRegistry.from_service(WithProperty())
        assert registry.names() == ["ok"]

    def test_registry_decorator(self) -> None:
        registry = MethodRegistry()

        @registry.register
        def add(a: int, b: int) -> int:
            return a + b

        @registry.register(name="math.mul")
        def mul(a: int, b: int) -> int:
            return a * b

        assert registry.names() == ["add", "math.mul"]
        assert registry.get("add") is add
        assert len(registry) == 2

    def test_registry_rejects_reserved_names(self) -> None:
        registry = MethodRegistry()
        with pytest.raises(ValueError, match="reserved"):
            registry.register(lambda: None, name="_hidden")

    def test_registry_rejects_non_callables(self) -> None:
        with pytest.raises(TypeError, match="not callable"):
            MethodRegistry().register("nope", name="x")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_dotted_names_via_registry(self) -> None:
        registry = MethodRegistry({"math.add": lambda a, b: a + b})
        res = await handle_rpc(_request("math.add", 2, 3), registry)
        assert res["result"] == 5


# ---------------------------------------------------------------------------
# handle_rpc: application errors
# ---------------------------------------------------------------------------


class TestApplicationErrors:
    """Exceptions raised by service methods become error envelopes."""

    @pytest.mark.asyncio
    async def test_plain_exception(self, service: Service) -> None:
        res = await handle_rpc(_request("sorry", "Dave"), service)
        assert res["error"] == {"code": -32000, "message": "Sorry Dave."}

    @pytest.mark.asyncio
    async def test_exception_code_used(self, service: Service) -> None:
        res = await handle_rpc(_request("fail_with_code", 42), service)
        assert res["error"]["code"] == 42
        assert res["error"]["message"] == "Custom failure"

    @pytest.mark.asyncio
    async def test_error_data_passed(self, service: Service) -> None:
        res = await handle_rpc(_request("sorry", "Dave", {"foo": "bar"}), service)
        assert res["error"]["data"] == {"foo": "bar"}

    @pytest.mark.asyncio
    async def test_error_data_is_json_copy(self) -> None:
        data = {"when": dt.date(2024, 1, 1), "items": (1, 2), "ok": True}

        def boom() -> None:
            raise RpcError("boom", data=data)

        res = await handle_rpc(_request("boom"), {"boom": boom})
        assert res["error"]["data"] == {"when": None, "items": [1, 2], "ok": True}

    @pytest.mark.asyncio
    async def test_wrong_arity_is_application_error(self, service: Service) -> None:
        res = await handle_rpc(_request("hello"), service)
        assert res["error"]["code"] == -32000

    @pytest.mark.asyncio
    async def test_on_error_receives_raw_exception(self, service: Service) -> None:
        on_error = MagicMock()
        await handle_rpc(_request("sorry", "Dave"), service, RpcHandlerOptions(on_error=on_error))
        on_error.assert_called_once()
        assert isinstance(on_error.call_args[0][0], ValueError)

    @pytest.mark.asyncio
    async def test_masked_errors(self, service: Service) -> None:
        options = RpcHandlerOptions(
            get_error_code=lambda _err: 100,
            get_error_message=lambda _err: "Something went wrong",
            get_error_data=lambda _err: None,
        )
        res = await handle_rpc(_request("sorry", "Dave", {"secret": 1}), service, options)
        assert res["error"] == {"code": 100, "message": "Something went wrong"}

    @pytest.mark.asyncio
    async def test_failing_error_hook_is_internal_error(self, service: Service) -> None:
        def broken(_err: Exception) -> int:
            raise RuntimeError("hook failed")

        res = await handle_rpc(
            _request("sorry", "Dave"), service, RpcHandlerOptions(get_error_code=broken),
        )
        assert res["error"] == {"code": -32603, "message": "Internal error"}


# ---------------------------------------------------------------------------
# handle_rpc: wire strings and transcoders
# ---------------------------------------------------------------------------


class TestWireAndTranscoding:
    """Raw string bodies and envelope transcoders."""

    @pytest.mark.asyncio
    async def test_string_in_string_out(self, service: Service) -> None:
        raw = json.dumps(_request("hello", "wire"))
        res = await handle_rpc(raw, service)
        assert isinstance(res, str)
        assert json.loads(res)["result"] == "Hello wire!"

    @pytest.mark.asyncio
    async def test_parse_error(self, service: Service) -> None:
        res = json.loads(await handle_rpc('{"invalid json":', service))
        assert res == {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}

    @pytest.mark.asyncio
    async def test_unserializable_result_is_internal_error(self) -> None:
        res = json.loads(await handle_rpc(json.dumps(_request("now")), {"now": dt.datetime.now}))
        assert res["id"] == 1
        assert res["error"]["code"] == -32603

    @pytest.mark.asyncio
    async def test_too_deeply_nested_body_is_parse_error(self, service: Service) -> None:
        body = "[" * 200_000 + "]" * 200_000
        res = json.loads(await handle_rpc(body, service))
        assert res == {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}

    @pytest.mark.asyncio
    async def test_self_referential_result_is_internal_error(self) -> None:
        cyclic: list[Any] = []
        cyclic.append(cyclic)
        options = RpcHandlerOptions(transcoder=TAGGED_JSON_TRANSCODER)
        res = await handle_rpc(_request("loop"), {"loop": lambda: cyclic}, options)
        assert res == {"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "Internal error"}}

    @pytest.mark.asyncio
    async def test_failing_custom_transcoder_is_internal_error(self) -> None:
        def explode(_envelope: Any) -> Any:
            raise KeyError("boom")

        options = RpcHandlerOptions(transcoder=Transcoder(serialize=explode))
        res = json.loads(await handle_rpc(json.dumps(_request("ping")), {"ping": lambda: "pong"}, options))
        assert res["id"] == 1
        assert res["error"]["code"] == -32603

    @pytest.mark.asyncio
    async def test_tagged_transcoder(self) -> None:
        options = RpcHandlerOptions(transcoder=TAGGED_JSON_TRANSCODER)
        req = TAGGED_JSON_TRANSCODER.serialize(_request("day_of_week", dt.date(2024, 1, 1)))
        res = await handle_rpc(req, ComplexService(), options)
        assert res == {"jsonrpc": "2.0", "id": 1, "result": "Monday"}

    @pytest.mark.asyncio
    async def test_tagged_transcoder_result(self) -> None:
        options = RpcHandlerOptions(transcoder=TAGGED_JSON_TRANSCODER)
        res = await handle_rpc(_request("start_of_epoch"), ComplexService(), options)
        decoded = TAGGED_JSON_TRANSCODER.deserialize(res)
        assert decoded["result"] == dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)

    @pytest.mark.asyncio
    async def test_undecodable_request_is_invalid(self) -> None:
        options = RpcHandlerOptions(transcoder=TAGGED_JSON_TRANSCODER)
        req = {"jsonrpc": "2.0", "id": 9, "method": "x", "params": [{"__rpc_type__": "martian"}]}
        res = await handle_rpc(req, ComplexService(), options)
        assert res["id"] == 9
        assert res["error"]["code"] == -32600
