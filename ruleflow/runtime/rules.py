"""
Ruleflow Rules Engine

Evaluates a RuleSet against (context, data) and, in apply mode, executes the
actions of every matched rule.

Key classes:
- RulesEngine: scope filter, priority ordering, evaluation and action application
- RulesResult: updated data/context plus the RulesTrace

Processing order:
1. Drop rules whose scope does not admit the context
2. Stable sort by ascending priority (declaration order breaks ties)
3. Evaluate each rule's ``when``, recording reads and an explain tree
4. In apply mode run the matched rule's actions in order, recording a diff
   per mutated path

A ``throwError`` action stops all further rule processing; mutations made
before it are kept. Any other failure while applying an action is recorded
and the rest of that rule's actions are skipped.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ruleflow.errors import ConfigurationError, RuleActionError
from ruleflow.runtime.evaluator import DEFAULT_MAX_DEPTH, ConditionEvaluator
from ruleflow.runtime.paths import MISSING
from ruleflow.runtime.schema import (
    AddItem,
    EmitEvent,
    MapField,
    RemoveField,
    Rule,
    RuleAction,
    RuleScope,
    RuleSet,
    SetContext,
    SetField,
    ThrowError,
)
from ruleflow.runtime.state import ExecutionContext, StepScope, split_target
from ruleflow.runtime.trace import ActionDiff, RulesTrace, SystemClock, TraceContext, TraceError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RULES = 1000
MODES = ("apply", "predicate")


@dataclass
class RulesResult:
    """Result of one rules pass."""
    data: Dict[str, Any]
    context: ExecutionContext
    trace: RulesTrace

    @property
    def matched(self) -> List[str]:
        return list(self.trace.rules_matched)

    @property
    def errors(self) -> List[TraceError]:
        return list(self.trace.errors)


def scope_matches(scope: Optional[RuleScope], context: ExecutionContext) -> bool:
    """True when every populated allow-list admits the context."""
    if scope is None:
        return True
    if scope.countries is not None and context.country not in scope.countries:
        return False
    if scope.roles is not None and not (scope.roles & context.all_roles()):
        return False
    if scope.tenants is not None and context.tenant_id not in scope.tenants:
        return False
    if scope.orgs is not None and context.org_id not in scope.orgs:
        return False
    if scope.programs is not None and context.program_id not in scope.programs:
        return False
    if scope.issuers is not None and context.issuer_id not in scope.issuers:
        return False
    return True


def order_rules(rules: Iterable[Rule]) -> List[Rule]:
    # sorted() is stable, so equal priorities keep declaration order
    return sorted(rules, key=lambda rule: rule.priority)


def _context_path(path: str) -> str:
    return path if path == "context" or path.startswith("context.") else f"context.{path}"


class RulesEngine:
    """
    Deterministic rules evaluator.

    The engine holds only limits and a clock. All per-call state lives in
    the StepScope and RulesTrace passed through ``run``, so one engine may
    serve any number of steps.
    """

    def __init__(
        self,
        max_rules: int = DEFAULT_MAX_RULES,
        max_depth: int = DEFAULT_MAX_DEPTH,
        clock: Optional[SystemClock] = None,
    ):
        self.max_rules = max_rules
        self.max_depth = max_depth
        self.clock = clock or SystemClock()

    def new_trace(self, mode: str = "apply", trace_context: Optional[TraceContext] = None) -> RulesTrace:
        return RulesTrace(started_at=self.clock.now(), mode=mode, context=trace_context or TraceContext())

    def evaluate(
        self,
        rule_set: RuleSet,
        context: ExecutionContext,
        data: Mapping[str, Any],
        mode: str = "apply",
        only_rule_ids: Optional[Sequence[str]] = None,
        trace_context: Optional[TraceContext] = None,
    ) -> RulesResult:
        """
        Evaluate a rule set.

        Args:
            rule_set: Parsed rule set (a raw dict or list is parsed first)
            context: Execution context, never modified
            data: Step data, never modified
            mode: "apply" runs actions, "predicate" only evaluates conditions
            only_rule_ids: Restrict the pass to these rules
            trace_context: Correlation block copied into the trace

        Returns:
            RulesResult with the new data/context and the trace
        """
        if mode not in MODES:
            raise ConfigurationError(f"unknown rules mode '{mode}'", "mode")
        if not isinstance(rule_set, RuleSet):
            rule_set = RuleSet.from_dict(rule_set)

        scope = StepScope(context, data)
        trace = self.new_trace(mode, trace_context)
        started = self.clock.perf()
        self.run(rule_set, scope, trace, mode=mode, only_rule_ids=only_rule_ids)
        trace.duration_ms = self.clock.elapsed_ms(started)
        return RulesResult(data=scope.data, context=scope.context, trace=trace)

    def run(
        self,
        rule_set: RuleSet,
        scope: StepScope,
        trace: RulesTrace,
        mode: str = "apply",
        only_rule_ids: Optional[Sequence[str]] = None,
    ) -> None:
        """Run one pass against an existing scope, appending to ``trace``."""
        rules = [rule for rule in rule_set.rules if scope_matches(rule.scope, scope.context)]
        if only_rule_ids is not None:
            wanted = set(only_rule_ids)
            rules = [rule for rule in rules if rule.rule_id in wanted]
        rules = order_rules(rules)

        if len(rules) > self.max_rules:
            trace.errors.append(TraceError(kind="limit", message=f"Max rules exceeded: {self.max_rules}"))
            rules = rules[:self.max_rules]

        evaluator = ConditionEvaluator(scope, max_depth=self.max_depth)
        for rule in rules:
            if self._run_rule(rule, evaluator, scope, trace, mode):
                logger.debug(f"rule {rule.rule_id} halted rule processing")
                break

    def _run_rule(
        self,
        rule: Rule,
        evaluator: ConditionEvaluator,
        scope: StepScope,
        trace: RulesTrace,
        mode: str,
    ) -> bool:
        """Evaluate one rule; returns True when processing must halt."""
        outcome = evaluator.evaluate(rule.when)
        trace.rules_considered.append(rule.rule_id)
        trace.condition_results[rule.rule_id] = outcome.result
        trace.condition_explains[rule.rule_id] = outcome.explain
        trace.reads_by_rule_id[rule.rule_id] = outcome.reads
        if outcome.error:
            trace.errors.append(TraceError(kind="evaluation", message=outcome.error, rule_id=rule.rule_id))

        logger.debug(f"rule {rule.rule_id} (priority {rule.priority}): {outcome.result}")
        if not outcome.result:
            return False
        trace.rules_matched.append(rule.rule_id)
        if mode != "apply":
            return False
        return self.apply_actions(((rule.rule_id, action) for action in rule.actions), scope, trace)

    def apply_actions(
        self,
        actions: Iterable[Tuple[str, RuleAction]],
        scope: StepScope,
        trace: RulesTrace,
    ) -> bool:
        """
        Apply ``(owner_id, action)`` pairs in order.

        Used for matched rules and for flow-level named actions. Returns True
        when a throwError stopped processing.
        """
        skip_owner = None
        for owner_id, action in actions:
            if owner_id == skip_owner:
                continue
            try:
                self._apply(owner_id, action, scope, trace)
            except RuleActionError as exc:
                trace.errors.append(TraceError(kind="rule", message=exc.message, code=exc.code, rule_id=owner_id))
                return True
            except (ConfigurationError, TypeError, ValueError) as exc:
                logger.debug(f"action {action.type} of {owner_id} failed: {exc}")
                trace.errors.append(TraceError(kind="evaluation", message=str(exc), rule_id=owner_id))
                skip_owner = owner_id
                continue
            trace.actions_applied.append({"ruleId": owner_id, "action": action.to_dict()})
        return False

    def _apply(self, owner_id: str, action: RuleAction, scope: StepScope, trace: RulesTrace) -> None:
        if isinstance(action, SetField):
            self._write(owner_id, action, action.path, copy.deepcopy(action.value), scope, trace)
        elif isinstance(action, SetContext):
            self._write(owner_id, action, _context_path(action.path), copy.deepcopy(action.value), scope, trace)
        elif isinstance(action, AddItem):
            current = scope.read(action.path)
            item = copy.deepcopy(action.value)
            updated = list(current) + [item] if isinstance(current, list) else [item]
            self._write(owner_id, action, action.path, updated, scope, trace)
        elif isinstance(action, RemoveField):
            before = scope.read(action.path)
            scope.remove(action.path)
            self._diff(owner_id, action, action.path, before, scope, trace)
        elif isinstance(action, MapField):
            value = scope.read(action.from_path)
            if value is not MISSING:
                self._write(owner_id, action, action.to_path, copy.deepcopy(value), scope, trace)
        elif isinstance(action, EmitEvent):
            event: Dict[str, Any] = {"ruleId": owner_id, "event": action.event}
            if action.payload is not None:
                event["payload"] = copy.deepcopy(action.payload)
            trace.events.append(event)
        elif isinstance(action, ThrowError):
            raise RuleActionError(action.message, code=action.code, rule_id=owner_id)
        else:
            raise TypeError(f"Unhandled action type: {type(action).__name__}")

    def _write(
        self,
        owner_id: str,
        action: RuleAction,
        path: str,
        value: Any,
        scope: StepScope,
        trace: RulesTrace,
    ) -> None:
        before = scope.read(path)
        scope.write(path, value)
        self._diff(owner_id, action, path, before, scope, trace)

    def _diff(
        self,
        owner_id: str,
        action: RuleAction,
        path: str,
        before: Any,
        scope: StepScope,
        trace: RulesTrace,
    ) -> None:
        target, inner = split_target(path)
        trace.action_diffs.append(ActionDiff(
            rule_id=owner_id,
            action=action.to_dict(),
            target=target,
            path=inner,
            before=copy.deepcopy(before),
            after=copy.deepcopy(scope.read(path)),
        ))


def evaluate_rules(
    rule_set: Any,
    context: Any,
    data: Mapping[str, Any],
    mode: str = "apply",
    max_rules: int = DEFAULT_MAX_RULES,
    max_depth: int = DEFAULT_MAX_DEPTH,
    clock: Optional[SystemClock] = None,
) -> RulesResult:
    """Convenience wrapper accepting raw JSON for the rule set and context."""
    if not isinstance(context, ExecutionContext):
        context = ExecutionContext.from_dict(context)
    engine = RulesEngine(max_rules=max_rules, max_depth=max_depth, clock=clock)
    return engine.evaluate(RuleSet.from_dict(rule_set), context, data, mode=mode)
