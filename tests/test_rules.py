"""Test the rules engine: scope, ordering, actions and trace."""
import pytest

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.paths import MISSING
from ruleflow.runtime.rules import RulesEngine, evaluate_rules, scope_matches
from ruleflow.runtime.schema import RuleScope, RuleSet
from ruleflow.runtime.state import ExecutionContext


def _rule(rule_id, when, actions=None, priority=0, scope=None):
    rule = {"ruleId": rule_id, "priority": priority, "when": when, "actions": actions or []}
    if scope is not None:
        rule["scope"] = scope
    return rule


ALWAYS = {"all": []}


def _set(path, value):
    return {"type": "setField", "path": path, "value": value}


@pytest.fixture
def engine(frozen_clock):
    return RulesEngine(clock=frozen_clock)


class TestDiscountScenario:
    """The order-total discount rule."""

    def test_matches_and_sets_discount(self, engine, context, discount_rule):
        result = engine.evaluate(RuleSet.from_dict([discount_rule]), context, {"orderTotal": 1200})
        assert result.data["discount"] == 0.1
        assert result.trace.rules_matched == ["big-order-discount"]
        assert len(result.trace.action_diffs) == 1
        diff = result.trace.action_diffs[0]
        assert (diff.target, diff.path, diff.before, diff.after) == ("data", "discount", MISSING, 0.1)

    def test_no_match_leaves_data_unchanged(self, engine, context, discount_rule):
        data = {"orderTotal": 500}
        result = engine.evaluate(RuleSet.from_dict([discount_rule]), context, data)
        assert result.trace.rules_matched == []
        assert result.trace.action_diffs == []
        assert result.data == {"orderTotal": 500}
        assert result.trace.rules_considered == ["big-order-discount"]

    def test_input_data_is_not_mutated(self, engine, context, discount_rule):
        data = {"orderTotal": 1200}
        engine.evaluate(RuleSet.from_dict([discount_rule]), context, data)
        assert data == {"orderTotal": 1200}


class TestOrdering:
    """Tests for priority ordering."""

    def test_higher_priority_writes_last(self, engine, context):
        rules = RuleSet.from_dict([
            _rule("high", ALWAYS, [_set("data.winner", "high")], priority=100),
            _rule("low", ALWAYS, [_set("data.winner", "low")], priority=10),
        ])
        result = engine.evaluate(rules, context, {})
        assert result.trace.rules_considered == ["low", "high"]
        assert result.data["winner"] == "high"

    def test_ties_keep_declaration_order(self, engine, context):
        rules = RuleSet.from_dict([_rule(f"r{i}", ALWAYS, priority=5) for i in range(4)])
        assert engine.evaluate(rules, context, {}).trace.rules_considered == ["r0", "r1", "r2", "r3"]

    def test_later_rules_see_earlier_writes(self, engine, context):
        rules = RuleSet.from_dict([
            _rule("first", ALWAYS, [_set("data.flag", True)], priority=1),
            _rule("second", {"op": "eq", "left": {"path": "data.flag"}, "right": {"value": True}},
                  [_set("data.seen", True)], priority=2),
        ])
        assert engine.evaluate(rules, context, {}).data["seen"] is True


class TestScope:
    """Tests for rule scope filtering."""

    def test_country_scope_excludes_rule(self, engine):
        context = ExecutionContext.from_dict({"country": "US"})
        rules = RuleSet.from_dict([_rule("fr-only", ALWAYS, [_set("data.x", 1)], scope={"countries": ["FR"]})])
        result = engine.evaluate(rules, context, {})
        assert "fr-only" not in result.trace.rules_matched
        assert "fr-only" not in result.trace.rules_considered
        assert result.data == {}

    def test_country_scope_admits_rule(self, engine):
        context = ExecutionContext.from_dict({"country": "FR"})
        rules = RuleSet.from_dict([_rule("fr-only", ALWAYS, scope={"countries": ["FR"]})])
        assert engine.evaluate(rules, context, {}).trace.rules_matched == ["fr-only"]

    def test_roles_match_on_overlap(self):
        context = ExecutionContext.from_dict({"role": "agent", "roles": ["viewer"]})
        assert scope_matches(RuleScope(roles=frozenset({"agent"})), context)
        assert scope_matches(RuleScope(roles=frozenset({"viewer", "x"})), context)
        assert not scope_matches(RuleScope(roles=frozenset({"admin"})), context)

    def test_org_scope_requires_value(self):
        assert not scope_matches(RuleScope(orgs=frozenset({"org-1"})), ExecutionContext())
        assert scope_matches(RuleScope(orgs=frozenset({"org-1"})), ExecutionContext(org_id="org-1"))

    def test_empty_list_is_open(self):
        scope = RuleScope.from_dict({"countries": []}, "scope")
        assert scope.countries is None


class TestActions:
    """Tests for each action type."""

    def _run(self, engine, context, actions, data=None):
        return engine.evaluate(RuleSet.from_dict([_rule("r", ALWAYS, actions)]), context, data or {})

    def test_set_context(self, engine, context):
        result = self._run(engine, context, [{"type": "setContext", "path": "locale", "value": "fr-FR"}])
        assert result.context.locale == "fr-FR"
        assert context.locale == "en-US"
        assert result.trace.action_diffs[0].target == "context"

    def test_add_item(self, engine, context):
        result = self._run(engine, context, [{"type": "addItem", "path": "data.tags", "value": "vip"}],
                           {"tags": ["new"]})
        assert result.data["tags"] == ["new", "vip"]

    def test_add_item_creates_list(self, engine, context):
        result = self._run(engine, context, [{"type": "addItem", "path": "data.tags", "value": "vip"}])
        assert result.data["tags"] == ["vip"]

    def test_remove_field(self, engine, context):
        result = self._run(engine, context, [{"type": "removeField", "path": "data.tmp"}], {"tmp": 1, "keep": 2})
        assert result.data == {"keep": 2}
        assert result.trace.action_diffs[0].after is MISSING

    def test_map_field(self, engine, context):
        result = self._run(engine, context, [{"type": "mapField", "from": "context.country", "to": "data.country"}])
        assert result.data["country"] == "US"

    def test_map_field_skips_missing_source(self, engine, context):
        result = self._run(engine, context, [{"type": "mapField", "from": "data.nope", "to": "data.copy"}])
        assert "copy" not in result.data
        assert result.trace.action_diffs == []

    def test_emit_event_does_not_mutate(self, engine, context):
        result = self._run(engine, context, [{"type": "emitEvent", "event": "flagged", "payload": {"n": 1}}],
                           {"a": 1})
        assert result.data == {"a": 1}
        assert result.trace.events == [{"ruleId": "r", "event": "flagged", "payload": {"n": 1}}]

    def test_written_values_are_copies(self, engine, context):
        rules = RuleSet.from_dict([_rule("r", ALWAYS, [_set("data.obj", {"k": [1]})])])
        result = engine.evaluate(rules, context, {})
        result.data["obj"]["k"].append(2)
        assert rules.rules[0].actions[0].value == {"k": [1]}


class TestThrowError:
    """Tests for throwError halting."""

    def test_halts_and_keeps_prior_mutations(self, engine, context):
        rules = RuleSet.from_dict([
            _rule("first", ALWAYS, [_set("data.a", 1)], priority=1),
            _rule("stop", ALWAYS, [
                _set("data.b", 2),
                {"type": "throwError", "message": "Blocked", "code": "E_BLOCK"},
                _set("data.c", 3),
            ], priority=2),
            _rule("after", ALWAYS, [_set("data.d", 4)], priority=3),
        ])
        result = engine.evaluate(rules, context, {})
        assert result.data == {"a": 1, "b": 2}
        assert result.trace.halted
        assert "after" not in result.trace.rules_considered
        error = result.trace.errors[0]
        assert (error.kind, error.code, error.rule_id, error.message) == ("rule", "E_BLOCK", "stop", "Blocked")

    def test_predicate_mode_never_runs_actions(self, engine, context):
        rules = RuleSet.from_dict([
            _rule("stop", ALWAYS, [{"type": "throwError", "message": "x"}], priority=1),
            _rule("set", ALWAYS, [_set("data.a", 1)], priority=2),
        ])
        result = engine.evaluate(rules, context, {}, mode="predicate")
        assert result.trace.rules_matched == ["stop", "set"]
        assert result.data == {}
        assert result.trace.errors == []
        assert result.trace.mode == "predicate"


class TestLimitsAndErrors:
    """Tests for limits and error capture."""

    def test_max_rules(self, frozen_clock, context):
        engine = RulesEngine(max_rules=2, clock=frozen_clock)
        rules = RuleSet.from_dict([_rule(f"r{i}", ALWAYS) for i in range(5)])
        result = engine.evaluate(rules, context, {})
        assert result.trace.rules_considered == ["r0", "r1"]
        assert result.trace.errors[0].kind == "limit"

    def test_bad_context_write_is_recorded_and_processing_continues(self, engine, context):
        rules = RuleSet.from_dict([
            _rule("bad", ALWAYS, [
                {"type": "setContext", "path": "roles", "value": "not-a-list"},
                _set("data.skipped", True),
            ], priority=1),
            _rule("good", ALWAYS, [_set("data.ok", True)], priority=2),
        ])
        result = engine.evaluate(rules, context, {})
        assert result.data == {"ok": True}
        assert result.trace.errors[0].kind == "evaluation"
        assert result.trace.errors[0].rule_id == "bad"

    def test_unknown_mode(self, engine, context):
        with pytest.raises(ConfigurationError):
            engine.evaluate(RuleSet.from_dict([]), context, {}, mode="dry-run")

    def test_only_rule_ids(self, engine, context):
        rules = RuleSet.from_dict([_rule("a", ALWAYS), _rule("b", ALWAYS)])
        result = engine.evaluate(rules, context, {}, only_rule_ids=["b"])
        assert result.trace.rules_considered == ["b"]


class TestConvenience:
    """Tests for evaluate_rules with raw JSON."""

    def test_raw_inputs(self, context_dict, discount_rule, frozen_clock):
        result = evaluate_rules({"version": "1", "rules": [discount_rule]}, context_dict,
                                {"orderTotal": 2000}, clock=frozen_clock)
        assert result.matched == ["big-order-discount"]
        assert result.trace.to_dict()["startedAt"] == "2024-01-01T00:00:00Z"

    def test_trace_dict_shape(self, engine, context, discount_rule):
        trace = engine.evaluate(RuleSet.from_dict([discount_rule]), context, {"orderTotal": 1200}).trace.to_dict()
        assert trace["conditionResults"] == {"big-order-discount": True}
        assert trace["readsByRuleId"] == {"big-order-discount": [{"path": "data.orderTotal", "value": 1200}]}
        assert trace["actionDiffs"][0]["after"] == 0.1
        assert "before" not in trace["actionDiffs"][0]
