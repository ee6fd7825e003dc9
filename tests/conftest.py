"""Test fixtures for the ruleflow test suite."""
import pytest
import json
import sys
from pathlib import Path
from typing import Dict, Any, List

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from ruleflow.runtime.executor import ExecutionConfig, Executor
from ruleflow.runtime.state import ExecutionContext
from ruleflow.runtime.trace import FrozenClock


@pytest.fixture
def context_dict() -> Dict[str, Any]:
    """Execution context in its camelCase wire form."""
    return {
        "tenantId": "tenant-1",
        "userId": "user-1",
        "role": "admin",
        "roles": ["admin"],
        "country": "US",
        "locale": "en-US",
        "timezone": "America/New_York",
        "device": "desktop",
        "permissions": ["orders:write"],
        "featureFlags": {"newCheckout": True},
    }


@pytest.fixture
def context(context_dict: Dict[str, Any]) -> ExecutionContext:
    return ExecutionContext.from_dict(context_dict)


@pytest.fixture
def frozen_clock() -> FrozenClock:
    return FrozenClock("2024-01-01T00:00:00Z")


@pytest.fixture
def discount_rule() -> Dict[str, Any]:
    """Orders over 1000 get a 10% discount."""
    return {
        "ruleId": "big-order-discount",
        "priority": 10,
        "when": {"op": "gt", "left": {"path": "data.orderTotal"}, "right": {"value": 1000}},
        "actions": [{"type": "setField", "path": "data.discount", "value": 0.1}],
    }


@pytest.fixture
def simple_flow() -> Dict[str, Any]:
    """Two-state flow: start --next--> review."""
    return {
        "version": "1.0.0",
        "flowId": "checkout",
        "initialState": "start",
        "states": {
            "start": {"uiPageId": "p1", "on": {"next": {"target": "review"}}},
            "review": {"uiPageId": "p2", "on": {}},
        },
    }


@pytest.fixture
def orders_mapping() -> Dict[str, Any]:
    """API mapping that submits an order and reads back its id."""
    return {
        "version": "1.0.0",
        "apiId": "orders",
        "method": "POST",
        "endpoint": "https://api.example.com/orders",
        "requestMap": {
            "body": {
                "customer": {"from": "data.customer"},
                "total": {"from": "data.orderTotal"},
                "note": {"from": "literal:priority", "transform": "upper"},
            },
            "query": {"locale": {"from": "context.locale"}},
            "headers": {"x-tenant": {"from": "context.tenantId"}},
        },
        "responseMap": {
            "data": {"orderId": "response.orderId"},
            "context": {"traceId": "response.traceId"},
        },
    }


@pytest.fixture
def checkout_bundle(discount_rule, orders_mapping) -> Dict[str, Any]:
    """Flow that evaluates rules and submits an order on 'submit'."""
    return {
        "flow": {
            "version": "1.0.0",
            "flowId": "checkout",
            "initialState": "cart",
            "states": {
                "cart": {
                    "uiPageId": "cart-page",
                    "on": {
                        "submit": {
                            "target": "confirm",
                            "guard": {"op": "exists", "left": {"path": "data.customer"}},
                            "actions": ["evaluateRules", "markSubmitted", "callApi"],
                            "apiId": "orders",
                        },
                        "cancel": {"target": "cancelled"},
                    },
                },
                "confirm": {"uiPageId": "confirm-page", "on": {}},
                "cancelled": {"uiPageId": "cancelled-page", "on": {}},
            },
            "actions": {
                "markSubmitted": {"type": "setField", "path": "data.status", "value": "submitted"},
            },
        },
        "rules": {"version": "1.0.0", "rules": [discount_rule]},
        "apiMappings": {"orders": orders_mapping},
    }


@pytest.fixture
def order_response() -> Dict[str, Any]:
    return {"status": 201, "body": {"orderId": "o-100", "traceId": "t-1"}}


@pytest.fixture
def executor(checkout_bundle, frozen_clock) -> Executor:
    return Executor(
        checkout_bundle["flow"],
        checkout_bundle["rules"],
        checkout_bundle["apiMappings"],
        config=ExecutionConfig(correlation_id="corr-1"),
        clock=frozen_clock,
    )


@pytest.fixture
def bundle_path(tmp_path, checkout_bundle) -> str:
    path = tmp_path / "bundle.json"
    with open(path, "w") as f:
        json.dump(checkout_bundle, f)
    return str(path)
