"""Test the step gates: kill switch, event filter and access control."""
import pytest

from ruleflow.errors import AccessDeniedError, ConfigurationError, ExecutionBlockedError
from ruleflow.runtime.api_orchestrator import StaticTransport
from ruleflow.runtime.executor import ExecutionConfig, Executor
from ruleflow.runtime.gates import (
    AccessControl,
    KillSwitch,
    StepInput,
    sanitize_step_input,
    sanitize_string,
    sanitize_value,
)


ORDER_DATA = {"customer": {"id": "c-1"}, "orderTotal": 1200}


def _executor(bundle, **config):
    return Executor(bundle["flow"], bundle["rules"], bundle["apiMappings"], config=ExecutionConfig(**config))


class TestKillSwitch:

    def test_inactive_passes(self):
        KillSwitch().check()

    def test_reason_is_trimmed(self):
        with pytest.raises(ExecutionBlockedError, match="^Execution blocked by kill switch: incident 42$"):
            KillSwitch(active=True, reason="  incident 42 ").check()

    def test_blank_reason(self):
        with pytest.raises(ExecutionBlockedError, match="^Execution blocked by kill switch$"):
            KillSwitch(active=True, reason="   ").check()

    def test_from_environment(self):
        config = ExecutionConfig.from_env({"RULEFLOW_KILL_SWITCH": "1", "RULEFLOW_KILL_SWITCH_REASON": "deploy"})
        assert config.kill_switch == KillSwitch(active=True, reason="deploy")

    def test_blocks_step_before_flow(self, checkout_bundle, context):
        executor = _executor(checkout_bundle, kill_switch={"active": True})
        transport = StaticTransport()
        with pytest.raises(ExecutionBlockedError):
            executor.execute_step("cart", "submit", context, ORDER_DATA, transport=transport)
        assert transport.calls == []


class TestEventFilter:

    def test_sanitize_string(self):
        assert sanitize_string(" sub\x00mit\n ", 128) == "submit"
        assert sanitize_string("abcdef", 3) == "abc"

    def test_sanitize_value_limits(self):
        assert len(sanitize_value(list(range(300)))) == 256
        nested = {"a": {"b": {"c": {"d": {"e": {"f": {"g": {"h": {"i": {"j": {"k": {"l": {"m": {"n": 1}}}}}}}}}}}}}}
        cut = sanitize_value(nested)
        for key in "abcdefghijkl":
            cut = cut[key]
        assert cut == {"m": None}

    def test_default_filter(self, context):
        step = sanitize_step_input(StepInput(
            event="submit\t",
            data={"name": " Ada\x07 ", "": 1, "__proto__": {"admin": True}, "tags": ("a", "b")},
            context=context.evolve(country=" US\x00"),
        ))
        assert step.event == "submit"
        assert step.data == {"name": "Ada", "tags": ["a", "b"]}
        assert step.context.country == "US"

    def test_step_uses_filtered_input(self, executor, context, order_response):
        data = dict(ORDER_DATA, note="rush\x00")
        result = executor.execute_step("cart", " submit\n", context, data, transport=StaticTransport.from_dict(order_response))
        assert result.next_state_id == "confirm"
        assert result.updated_data["note"] == "rush"
        assert data["note"] == "rush\x00"

    def test_filter_disabled(self, checkout_bundle, context):
        executor = _executor(checkout_bundle, event_filter=None)
        result = executor.execute_step("cart", " submit\n", context, ORDER_DATA)
        assert result.reason == "no_transition"

    def test_custom_filter(self, checkout_bundle, context):
        executor = _executor(checkout_bundle, event_filter=lambda step: step._replace(event="cancel"))
        assert executor.execute_step("cart", "submit", context, {}).next_state_id == "cancelled"


class TestAccessControl:

    def test_from_dict(self):
        access = AccessControl.from_dict({
            "tenantId": "tenant-1",
            "allowedEvents": ["submit"],
            "requiredRolesByApiId": {"orders": ["admin"], "audit": []},
        })
        assert access.allowed_events == frozenset({"submit"})
        assert access.allowed_ui_page_ids is None
        assert access.required_roles_by_api_id == {"orders": frozenset({"admin"})}

    def test_from_dict_rejects_bare_string(self):
        with pytest.raises(ConfigurationError):
            AccessControl.from_dict({"allowedEvents": "submit"})

    @pytest.mark.parametrize("policy, kwargs, message", [
        ({"tenantId": "tenant-2"}, {}, "tenant mismatch (tenant-1)."),
        ({"allowedEvents": ["cancel"]}, {"event": "submit"}, 'event "submit" is not allowed.'),
        ({"allowedUiPageIds": ["cart-page"]}, {"ui_page_id": "confirm-page"}, 'ui page "confirm-page" is not allowed.'),
        ({"allowedApiIds": ["lookup"]}, {"api_id": "orders"}, 'api "orders" is not allowed.'),
        ({"requiredRolesByUiPageId": {"confirm-page": ["approver"]}}, {"ui_page_id": "confirm-page"},
         'missing role for ui page "confirm-page".'),
        ({"requiredRolesByApiId": {"orders": ["approver"]}}, {"api_id": "orders"}, 'missing role for api "orders".'),
    ])
    def test_denials(self, context, policy, kwargs, message):
        with pytest.raises(AccessDeniedError) as exc_info:
            AccessControl.from_dict(policy).enforce(context, **kwargs)
        assert str(exc_info.value) == f"Access denied: {message}"

    def test_primary_role_satisfies_requirement(self, context):
        access = AccessControl.from_dict({"requiredRolesByApiId": {"orders": ["admin", "approver"]}})
        access.enforce(context.evolve(roles=frozenset()), api_id="orders")

    def test_empty_lists_impose_nothing(self, context):
        AccessControl.from_dict({"allowedEvents": [], "allowedApiIds": []}).enforce(context, event="x", api_id="y")

    def test_step_checks_target_page_and_api(self, checkout_bundle, context):
        executor = _executor(checkout_bundle, access_control={"requiredRolesByApiId": {"orders": ["approver"]}})
        transport = StaticTransport()
        with pytest.raises(AccessDeniedError, match='api "orders"'):
            executor.execute_step("cart", "submit", context, ORDER_DATA, transport=transport)
        assert transport.calls == []

    def test_step_allowed(self, checkout_bundle, context, order_response):
        executor = _executor(checkout_bundle, access_control={
            "tenantId": "tenant-1",
            "allowedEvents": ["submit", "cancel"],
            "allowedUiPageIds": ["confirm-page", "cancelled-page"],
            "requiredRolesByApiId": {"orders": ["admin"]},
        })
        result = executor.execute_step(
            "cart", "submit", context, ORDER_DATA, transport=StaticTransport.from_dict(order_response)
        )
        assert result.next_state_id == "confirm"
