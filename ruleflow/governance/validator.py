"""
Ruleflow Bundle Validator

Structural checks a configuration bundle must pass before the runtime will
execute it:
- each raw document matches its JSON Schema
- every transition target and the initial state resolve
- rule ids are unique
- date literals are ISO dates/date-times (or epoch numbers)
- dateBetween right operands are two-element ranges
- transition action names and apiIds resolve
- no path uses an unsafe segment

Violations are collected into a ValidationReport; ``validate_bundle`` raises
ConfigurationError when the report is not clean.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.dates import coerce_date_range, coerce_plus_days, is_date_literal
from ruleflow.runtime.paths import is_unsafe_key, tokenize_path
from ruleflow.runtime.schema import (
    AddItem,
    ApiMapping,
    CompareCondition,
    Condition,
    DATE_OPS,
    FlowSchema,
    GroupCondition,
    MapField,
    NotCondition,
    Operand,
    RemoveField,
    RuleAction,
    RuleSet,
    SetContext,
    SetField,
    parse_api_mappings,
)
from ruleflow.schemas import schema_errors

BUILTIN_ACTIONS = ("evaluateRules", "callApi")


@dataclass
class ValidationIssue:
    path: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ValidationReport:
    """Outcome of validating a bundle."""
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def add(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(path, message))

    def raise_if_invalid(self) -> None:
        if self.issues:
            first = self.issues[0]
            extra = f" (+{len(self.issues) - 1} more)" if len(self.issues) > 1 else ""
            raise ConfigurationError(first.message + extra, first.path)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "issues": [issue.to_dict() for issue in self.issues]}


def _unsafe(path: str) -> bool:
    return any(is_unsafe_key(token) for token in tokenize_path(path))


def _walk(condition: Condition, where: str) -> Iterator[tuple]:
    yield condition, where
    if isinstance(condition, GroupCondition):
        for i, child in enumerate(condition.children):
            yield from _walk(child, f"{where}.{condition.op}[{i}]")
    elif isinstance(condition, NotCondition):
        yield from _walk(condition.child, f"{where}.not")


def _is_literal(operand: Optional[Operand]) -> bool:
    if operand is None or operand.is_path:
        return False
    value = operand.value
    return not (isinstance(value, dict) and ("$path" in value or "$transform" in value))


def check_condition(condition: Condition, where: str, report: ValidationReport) -> None:
    for node, node_where in _walk(condition, where):
        if not isinstance(node, CompareCondition):
            continue
        for side, operand in (("left", node.left), ("right", node.right)):
            if operand is not None and operand.is_path and _unsafe(operand.path):
                report.add(f"{node_where}.{side}", f"unsafe path '{operand.path}'")
        if node.op not in DATE_OPS:
            continue
        if _is_literal(node.left) and not is_date_literal(node.left.value):
            report.add(f"{node_where}.left", f"invalid date literal {node.left.value!r}")
        if not _is_literal(node.right):
            continue
        right = node.right.value
        if node.op == "dateBetween":
            if not isinstance(right, list) or len(right) != 2 or coerce_date_range(right) is None:
                report.add(f"{node_where}.right", "dateBetween needs a [start, end] range of dates")
        elif node.op == "plusDays":
            if coerce_plus_days(right) is None:
                report.add(f"{node_where}.right", "plusDays needs [date, days] or {date, days}")
        elif not is_date_literal(right):
            report.add(f"{node_where}.right", f"invalid date literal {right!r}")


def check_action(action: RuleAction, where: str, report: ValidationReport) -> None:
    if isinstance(action, (SetField, SetContext, AddItem, RemoveField)):
        paths = [action.path]
    elif isinstance(action, MapField):
        paths = [action.from_path, action.to_path]
    else:
        paths = []
    for path in paths:
        if _unsafe(path):
            report.add(where, f"unsafe path '{path}'")


def check_rule_set(rule_set: RuleSet, report: ValidationReport) -> None:
    seen = set()
    for rule in rule_set.rules:
        where = f"rules[{rule.rule_id}]"
        if rule.rule_id in seen:
            report.add(where, f"duplicate ruleId '{rule.rule_id}'")
        seen.add(rule.rule_id)
        check_condition(rule.when, f"{where}.when", report)
        for i, action in enumerate(rule.actions):
            check_action(action, f"{where}.actions[{i}]", report)


def check_flow(
    flow: FlowSchema,
    rule_set: Optional[RuleSet],
    api_mappings: Optional[Mapping[str, ApiMapping]],
    report: ValidationReport,
) -> None:
    base = f"flow[{flow.flow_id}]"
    if flow.initial_state not in flow.states:
        report.add(f"{base}.initialState", f"unknown state '{flow.initial_state}'")

    rule_ids = set(rule_set.rule_ids()) if rule_set is not None else set()
    for name, action in flow.actions.items():
        if name in BUILTIN_ACTIONS:
            report.add(f"{base}.actions.{name}", f"'{name}' is reserved")
        check_action(action, f"{base}.actions.{name}", report)

    for state_id, state in flow.states.items():
        for event, transition in state.on.items():
            where = f"{base}.states.{state_id}.on.{event}"
            if transition.target not in flow.states:
                report.add(f"{where}.target", f"unknown state '{transition.target}'")
            if transition.guard is not None:
                check_condition(transition.guard, f"{where}.guard", report)
            for name in transition.actions:
                if name not in BUILTIN_ACTIONS and name not in flow.actions and name not in rule_ids:
                    report.add(f"{where}.actions", f"unknown action '{name}'")
            if transition.api_id is not None and transition.api_id not in (api_mappings or {}):
                report.add(f"{where}.apiId", f"unknown apiId '{transition.api_id}'")


def check_api_mappings(api_mappings: Mapping[str, ApiMapping], report: ValidationReport) -> None:
    for api_id, mapping in api_mappings.items():
        where = f"apiMappings[{api_id}]"
        for part, sources in (("body", mapping.body), ("query", mapping.query), ("headers", mapping.headers)):
            for key, source in sources.items():
                if not source.source.startswith("literal:") and _unsafe(source.source):
                    report.add(f"{where}.requestMap.{part}.{key}", f"unsafe path '{source.source}'")
        for part, targets in (("data", mapping.response_data), ("context", mapping.response_context)):
            for target, path in targets.items():
                if _unsafe(target) or _unsafe(path):
                    report.add(f"{where}.responseMap.{part}.{target}", "unsafe path")


def validate_rule_set(rules: Any) -> ValidationReport:
    report = ValidationReport()
    check_rule_set(RuleSet.from_dict(rules), report)
    return report


def validate_api_mappings(api_mappings: Any) -> ValidationReport:
    report = ValidationReport()
    check_api_mappings(parse_api_mappings(api_mappings), report)
    return report


def validate_flow(flow: Any, rules: Any = None, api_mappings: Any = None) -> ValidationReport:
    report = ValidationReport()
    rule_set = RuleSet.from_dict(rules) if rules is not None else None
    mappings = parse_api_mappings(api_mappings) if api_mappings is not None else None
    check_flow(FlowSchema.from_dict(flow), rule_set, mappings, report)
    return report


def schema_issues(flow: Any, rules: Any = None, api_mappings: Any = None) -> ValidationReport:
    """JSON Schema violations of the raw documents; parsed documents are skipped."""
    report = ValidationReport()
    documents = (
        (flow, "flow", "flow", FlowSchema),
        (rules, "ruleSet", "ruleSet", RuleSet),
        (api_mappings, "apiMappings", "apiMappings", None),
    )
    for document, definition, where, parsed_type in documents:
        if document is None or (parsed_type is not None and isinstance(document, parsed_type)):
            continue
        if isinstance(document, Mapping) and any(isinstance(m, ApiMapping) for m in document.values()):
            continue
        for path, message in schema_errors(document, definition, where):
            report.add(path, message)
    return report


def collect_issues(flow: Any, rules: Any = None, api_mappings: Any = None) -> ValidationReport:
    """
    Validate a whole bundle without raising for structural violations.

    Raw documents are checked against their JSON Schemas first; when any of
    them fails, the report carries only those violations since the typed
    checks need parsed documents.
    """
    report = schema_issues(flow, rules, api_mappings)
    if not report.ok:
        return report

    flow = FlowSchema.from_dict(flow)
    rule_set = RuleSet.from_dict(rules if rules is not None else [])
    mappings = parse_api_mappings(api_mappings)

    check_flow(flow, rule_set, mappings, report)
    check_rule_set(rule_set, report)
    check_api_mappings(mappings, report)
    return report


def validate_bundle(flow: Any, rules: Any = None, api_mappings: Any = None) -> ValidationReport:
    """Validate a bundle and raise ConfigurationError on the first violation."""
    report = collect_issues(flow, rules, api_mappings)
    report.raise_if_invalid()
    return report
