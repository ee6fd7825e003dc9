"""Test request building, dispatch and response folding."""
import asyncio

import pytest

from ruleflow.errors import ConfigurationError, TransportError
from ruleflow.runtime.api_orchestrator import (
    ApiOrchestrator,
    StaticTransport,
    append_query,
    apply_source_transform,
    sanitize_payload,
)
from ruleflow.runtime.schema import ApiMapping
from ruleflow.runtime.state import StepScope


ORDER_DATA = {"customer": {"id": "c-1", "name": "Ada"}, "orderTotal": 1200}


@pytest.fixture
def orchestrator(frozen_clock):
    return ApiOrchestrator(clock=frozen_clock)


@pytest.fixture
def mapping(orders_mapping):
    return ApiMapping.from_dict(orders_mapping)


class TestBuildRequest:
    """Tests for request construction."""

    def test_body_query_and_headers(self, orchestrator, mapping, context):
        request = orchestrator.build_request(mapping, StepScope(context, ORDER_DATA))
        assert request["body"] == {
            "customer": {"id": "c-1", "name": "Ada"},
            "total": 1200,
            "note": "PRIORITY",
        }
        assert request["query"] == {"locale": "en-US"}
        assert request["headers"] == {"x-tenant": "tenant-1"}

    def test_missing_sources_are_omitted(self, orchestrator, mapping, context):
        request = orchestrator.build_request(mapping, StepScope(context, {}))
        assert request["body"] == {"note": "PRIORITY"}

    def test_default_value(self, orchestrator, context):
        mapping = ApiMapping.from_dict({
            "apiId": "a", "method": "POST", "endpoint": "https://x",
            "requestMap": {"body": {"qty": {"from": "data.qty", "default": 1}}},
        })
        assert orchestrator.build_request(mapping, StepScope(context, {}))["body"] == {"qty": 1}

    def test_call_form_transform(self, orchestrator, context):
        mapping = ApiMapping.from_dict({
            "apiId": "a", "method": "POST", "endpoint": "https://x",
            "requestMap": {"body": {"c": {"from": "context.country", "transform": "lower($)"}}},
        })
        assert orchestrator.build_request(mapping, StepScope(context, {}))["body"] == {"c": "us"}

    def test_unknown_transform_rejected(self):
        with pytest.raises(ConfigurationError):
            ApiMapping.from_dict({
                "apiId": "a", "method": "POST", "endpoint": "https://x",
                "requestMap": {"body": {"c": {"from": "data.c", "transform": "reverse"}}},
            })

    def test_unsafe_keys_are_stripped(self, orchestrator, mapping, context):
        data = {"customer": {"id": "c-1", "__proto__": {"admin": True}}, "orderTotal": 1}
        request = orchestrator.build_request(mapping, StepScope(context, data))
        assert request["body"]["customer"] == {"id": "c-1"}


class TestHelpers:

    def test_sanitize_nested(self):
        assert sanitize_payload({"a": [{"constructor": 1, "b": 2}], "prototype": 3}) == {"a": [{"b": 2}]}

    def test_append_query(self):
        assert append_query("https://x/y", {"a": "1 2", "b": True}) == "https://x/y?a=1+2&b=true"
        assert append_query("https://x/y?z=0", {"a": 1}) == "https://x/y?z=0&a=1"
        assert append_query("https://x/y", {}) == "https://x/y"

    @pytest.mark.parametrize("value,transform,expected", [
        ("abc", "upper", "ABC"),
        ("ABC", "lower", "abc"),
        (12, "string", "12"),
        ("12.5", "number", 12.5),
        ("7", "number", 7),
        ("x", "number", None),
        ({"a": 1}, "json", '{"a":1}'),
    ])
    def test_source_transforms(self, value, transform, expected):
        assert apply_source_transform(value, transform) == expected


class TestDispatch:
    """Tests for dispatching through a transport."""

    def test_success_folds_response(self, orchestrator, mapping, context, order_response):
        transport = StaticTransport.from_dict(order_response)
        result = orchestrator.dispatch(mapping, context, ORDER_DATA, transport)
        assert result.ok
        assert result.data["orderId"] == "o-100"
        assert result.context.extra["traceId"] == "t-1"
        assert result.trace.response == {"status": 201, "body": {"orderId": "o-100", "traceId": "t-1"}}
        assert "orderId" not in ORDER_DATA

    def test_transport_sees_url_and_body(self, orchestrator, mapping, context):
        transport = StaticTransport()
        orchestrator.dispatch(mapping, context, ORDER_DATA, transport)
        call = transport.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://api.example.com/orders?locale=en-US"
        assert call["request"]["headers"] == {"x-tenant": "tenant-1"}
        assert call["request"]["body"]["note"] == "PRIORITY"

    def test_get_sends_no_body(self, orchestrator, context):
        mapping = ApiMapping.from_dict({
            "apiId": "lookup", "method": "GET", "endpoint": "https://x/lookup",
            "requestMap": {"body": {"id": {"from": "data.id"}}},
        })
        transport = StaticTransport()
        result = orchestrator.dispatch(mapping, context, {"id": 5}, transport)
        assert "body" not in transport.calls[0]["request"]
        assert result.trace.request["body"] == {"id": 5}

    def test_error_status_skips_response_map(self, orchestrator, mapping, context):
        transport = StaticTransport(status=503, body={"orderId": "nope"})
        result = orchestrator.dispatch(mapping, context, ORDER_DATA, transport)
        assert not result.ok
        assert result.trace.error.code == "503"
        assert "orderId" not in result.data

    def test_transport_exception_is_recorded(self, orchestrator, mapping, context):
        def transport(method, url, request):
            raise TransportError("connection refused", status=502)

        result = orchestrator.dispatch(mapping, context, ORDER_DATA, transport)
        assert result.trace.error.kind == "transport"
        assert result.trace.error.message == "connection refused"
        assert result.trace.error.code == "502"
        assert result.data == ORDER_DATA

    def test_response_without_status(self, orchestrator, mapping, context):
        result = orchestrator.dispatch(mapping, context, ORDER_DATA, lambda m, u, r: {"body": {}})
        assert "without a status" in result.trace.error.message

    def test_absent_response_field_is_skipped(self, orchestrator, mapping, context):
        result = orchestrator.dispatch(mapping, context, ORDER_DATA, StaticTransport(body={}))
        assert result.ok
        assert "orderId" not in result.data

    def test_unfoldable_response_leaves_scope_untouched(self, orchestrator, context):
        mapping = ApiMapping.from_dict({
            "apiId": "profile", "method": "GET", "endpoint": "https://x/profile",
            "responseMap": {"data": {"profileId": "response.id"}, "context": {"roles": "response.roles"}},
        })
        transport = StaticTransport(body={"id": "p-1", "roles": "admin"})
        result = orchestrator.dispatch(mapping, context, ORDER_DATA, transport)
        assert not result.ok
        assert result.trace.error.kind == "response"
        assert result.trace.error.message.startswith("context.roles")
        assert result.trace.response["body"] == {"id": "p-1", "roles": "admin"}
        assert "profileId" not in result.data
        assert result.context == context

    def test_async_dispatch(self, orchestrator, mapping, context, order_response):
        async def transport(method, url, request):
            return order_response

        result = asyncio.run(orchestrator.dispatch_async(mapping, context, ORDER_DATA, transport))
        assert result.data["orderId"] == "o-100"
        assert result.trace.started_at == "2024-01-01T00:00:00Z"
