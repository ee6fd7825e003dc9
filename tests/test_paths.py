"""Test path resolution (get/set/remove) and its safety rules."""
import pytest

from ruleflow.runtime.paths import (
    MISSING,
    get_path,
    has_path,
    json_equal,
    remove_path,
    set_path,
    strip_missing,
    tokenize_path,
)
from ruleflow.runtime.state import ExecutionContext, StepScope, split_target


class TestTokenize:
    """Tests for path tokenization."""

    def test_dotted_and_indexed(self):
        assert tokenize_path("data.orders[2].total") == ("data", "orders", 2, "total")

    def test_numeric_dot_segment_is_index(self):
        assert tokenize_path("items.0.sku") == tokenize_path("items[0].sku")

    def test_empty_segments_ignored(self):
        assert tokenize_path("a..b") == ("a", "b")


class TestGetPath:
    """Tests for get_path."""

    def test_nested_read(self):
        root = {"customer": {"name": "Acme"}, "items": [{"sku": "A1"}, {"sku": "B2"}]}
        assert get_path(root, "customer.name") == "Acme"
        assert get_path(root, "items[1].sku") == "B2"

    def test_missing_key(self):
        assert get_path({"a": 1}, "b") is MISSING
        assert not has_path({"a": 1}, "b")

    def test_none_is_a_value(self):
        assert get_path({"a": None}, "a") is None
        assert has_path({"a": None}, "a")

    def test_index_on_non_list_fails_gracefully(self):
        assert get_path({"items": {"0": "x"}}, "items[0]") is MISSING

    def test_index_out_of_range(self):
        assert get_path({"items": [1]}, "items[5]") is MISSING

    def test_through_scalar(self):
        assert get_path({"a": 5}, "a.b") is MISSING

    def test_empty_path_returns_root(self):
        root = {"a": 1}
        assert get_path(root, "") is root

    @pytest.mark.parametrize("path", ["a.__proto__.polluted", "constructor.prototype", "__proto__"])
    def test_unsafe_segments_do_not_resolve(self, path):
        root = {"a": {"__proto__": {"polluted": True}}, "constructor": {"prototype": 1}, "__proto__": 2}
        assert get_path(root, path) is MISSING


class TestSetPath:
    """Tests for copy-on-write set_path."""

    def test_returns_new_root_and_keeps_original(self):
        original = {"customer": {"name": "Acme"}, "other": {"x": 1}}
        updated = set_path(original, "customer.name", "Globex")
        assert updated["customer"]["name"] == "Globex"
        assert original["customer"]["name"] == "Acme"
        # untouched branches are shared
        assert updated["other"] is original["other"]

    def test_creates_intermediate_containers(self):
        updated = set_path({}, "a.b[1].c", 3)
        assert updated == {"a": {"b": [None, {"c": 3}]}}

    def test_replaces_none_intermediate(self):
        assert set_path({"a": None}, "a.b", 1) == {"a": {"b": 1}}

    def test_index_into_non_list_is_noop(self):
        root = {"a": {"k": 1}}
        assert set_path(root, "a[0]", 5) is root

    def test_unsafe_path_is_noop(self):
        root = {}
        assert set_path(root, "constructor.prototype.x", 1) is root
        assert root == {}
        assert not hasattr(object, "x")

    def test_list_write_copies_list(self):
        original = {"items": [1, 2, 3]}
        updated = set_path(original, "items[1]", 20)
        assert updated["items"] == [1, 20, 3]
        assert original["items"] == [1, 2, 3]


class TestRemovePath:
    """Tests for remove_path."""

    def test_remove_key(self):
        original = {"a": {"b": 1, "c": 2}}
        updated = remove_path(original, "a.b")
        assert updated == {"a": {"c": 2}}
        assert original == {"a": {"b": 1, "c": 2}}

    def test_remove_splices_list(self):
        assert remove_path({"items": ["x", "y", "z"]}, "items[1]") == {"items": ["x", "z"]}

    def test_remove_missing_is_noop(self):
        root = {"a": 1}
        assert remove_path(root, "b.c") is root


class TestJsonEqual:
    """Tests for structural JSON equality."""

    def test_bool_never_equals_number(self):
        assert not json_equal(True, 1)
        assert not json_equal(0, False)

    def test_int_equals_float(self):
        assert json_equal(1, 1.0)

    def test_nested(self):
        assert json_equal({"a": [1, {"b": "x"}]}, {"a": [1.0, {"b": "x"}]})
        assert not json_equal({"a": [1]}, {"a": [1, 2]})

    def test_missing_only_equals_missing(self):
        assert json_equal(MISSING, MISSING)
        assert not json_equal(MISSING, None)

    def test_strip_missing(self):
        assert strip_missing({"a": MISSING, "b": [MISSING, 1]}) == {"b": [None, 1]}


class TestStepScope:
    """Tests for the {data, context} view."""

    def test_split_target(self):
        assert split_target("context.locale") == ("context", "locale")
        assert split_target("data.total") == ("data", "total")
        assert split_target("total") == ("data", "total")

    def test_reads_context_and_data(self, context):
        scope = StepScope(context, {"total": 5})
        assert scope.read("context.tenantId") == "tenant-1"
        assert scope.read("data.total") == 5
        assert scope.read("total") == 5

    def test_writes_never_touch_inputs(self, context):
        data = {"total": 5}
        scope = StepScope(context, data)
        scope.write("data.total", 6)
        scope.write("context.locale", "fr-FR")
        assert data == {"total": 5}
        assert context.locale == "en-US"
        assert scope.data["total"] == 6
        assert scope.context.locale == "fr-FR"

    def test_context_extension_keys_are_kept(self, context):
        scope = StepScope(context, {})
        scope.write("context.traceId", "t-1")
        assert scope.context.extra["traceId"] == "t-1"
        assert scope.read("context.traceId") == "t-1"


class TestExecutionContext:
    """Tests for ExecutionContext wire handling."""

    def test_round_trip_fields(self, context_dict):
        ctx = ExecutionContext.from_dict(context_dict)
        assert ctx.roles == frozenset({"admin"})
        assert ctx.flag("newCheckout")
        assert ctx.has_permission("orders:write")
        assert ctx.to_dict()["tenantId"] == "tenant-1"

    def test_unknown_device_rejected(self, context_dict):
        from ruleflow.errors import ConfigurationError

        context_dict["device"] = "watch"
        with pytest.raises(ConfigurationError):
            ExecutionContext.from_dict(context_dict)

    def test_all_roles_includes_primary(self):
        ctx = ExecutionContext.from_dict({"role": "agent", "roles": ["viewer"]})
        assert ctx.all_roles() == frozenset({"agent", "viewer"})
