"""
Ruleflow Trace Model

Structured record of what one orchestration step read, matched, mutated and
called. Traces are the audit surface: every error inside them is a
TraceError, never a raw exception, and ``digest()`` hashes the canonical JSON
form with wall-clock fields removed so two runs of the same step can be
compared byte for byte.

Key classes:
- FlowTrace, RulesTrace, ApiTrace, RuntimeTrace
- RuleRead, ActionDiff, ConditionExplain, ExplainOperand, TraceError
- SystemClock, FrozenClock
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ruleflow.runtime.paths import MISSING, strip_missing

VOLATILE_KEYS = frozenset({"startedAt", "durationMs"})


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None and MISSING entries."""
    return {k: v for k, v in payload.items() if v is not None and v is not MISSING}


def _without_volatile(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _without_volatile(v) for k, v in value.items() if k not in VOLATILE_KEYS}
    if isinstance(value, list):
        return [_without_volatile(item) for item in value]
    return value


def canonical_json(payload: Any) -> str:
    return json.dumps(strip_missing(payload), sort_keys=True, separators=(",", ":"), default=str)


def compute_digest(payload: Any, include_volatile: bool = False) -> str:
    """sha256 over canonical JSON; startedAt/durationMs are excluded by default."""
    if not include_volatile:
        payload = _without_volatile(strip_missing(payload))
    canon = canonical_json(payload)
    return "sha256:" + hashlib.sha256(canon.encode("utf-8")).hexdigest()


class SystemClock:
    """Wall clock used for startedAt / durationMs."""

    def now(self) -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def perf(self) -> float:
        return time.perf_counter()

    def elapsed_ms(self, started: float) -> float:
        return round((self.perf() - started) * 1000, 3)


class FrozenClock(SystemClock):
    """Clock pinned to a fixed instant; every duration is zero."""

    def __init__(self, at: str = "1970-01-01T00:00:00Z"):
        self.at = at

    def now(self) -> str:
        return self.at

    def perf(self) -> float:
        return 0.0


@dataclass
class TraceError:
    """Structured error: kind + message + optional code."""
    kind: str  # "rule" | "evaluation" | "limit" | "transport" | "response"
    message: str
    code: Optional[str] = None
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "ruleId": self.rule_id,
        })


@dataclass
class RuleRead:
    path: str
    value: Any = MISSING

    def to_dict(self) -> Dict[str, Any]:
        return _compact({"path": self.path, "value": self.value})


@dataclass
class ExplainOperand:
    kind: str  # "path" | "value"
    value: Any = MISSING
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({"kind": self.kind, "path": self.path, "value": self.value})


@dataclass
class ConditionExplain:
    """Evaluated condition tree; short-circuited children are absent."""
    kind: str  # "all" | "any" | "not" | "compare"
    result: bool
    op: Optional[str] = None
    left: Optional[ExplainOperand] = None
    right: Optional[ExplainOperand] = None
    children: List["ConditionExplain"] = field(default_factory=list)
    child: Optional["ConditionExplain"] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "result": self.result}
        if self.kind in ("all", "any"):
            payload["children"] = [c.to_dict() for c in self.children]
        elif self.kind == "not" and self.child is not None:
            payload["child"] = self.child.to_dict()
        elif self.kind == "compare":
            payload["op"] = self.op
            if self.left is not None:
                payload["left"] = self.left.to_dict()
            if self.right is not None:
                payload["right"] = self.right.to_dict()
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class ActionDiff:
    rule_id: str
    action: Dict[str, Any]
    target: str  # "data" | "context"
    path: str
    before: Any = MISSING
    after: Any = MISSING

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "ruleId": self.rule_id,
            "action": self.action,
            "target": self.target,
            "path": self.path,
            "before": self.before,
            "after": self.after,
        })


@dataclass
class TraceContext:
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    version_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "correlationId": self.correlation_id,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "versionId": self.version_id,
        })


@dataclass
class FlowTrace:
    started_at: str
    event: str
    from_state_id: str
    to_state_id: str
    ui_page_id: str
    reason: str  # "ok" | "no_transition" | "guard_failed"
    actions_to_run: List[str] = field(default_factory=list)
    guard_result: Optional[bool] = None
    guard_explain: Optional[ConditionExplain] = None
    api_id: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "event": self.event,
            "fromStateId": self.from_state_id,
            "toStateId": self.to_state_id,
            "uiPageId": self.ui_page_id,
            "reason": self.reason,
            "actionsToRun": list(self.actions_to_run),
        }
        payload.update(_compact({
            "guardResult": self.guard_result,
            "guardExplain": self.guard_explain.to_dict() if self.guard_explain else None,
            "apiId": self.api_id,
            "errorMessage": self.error_message,
        }))
        return payload


@dataclass
class RulesTrace:
    started_at: str
    mode: str = "apply"
    rules_considered: List[str] = field(default_factory=list)
    rules_matched: List[str] = field(default_factory=list)
    condition_results: Dict[str, bool] = field(default_factory=dict)
    condition_explains: Dict[str, ConditionExplain] = field(default_factory=dict)
    reads_by_rule_id: Dict[str, List[RuleRead]] = field(default_factory=dict)
    action_diffs: List[ActionDiff] = field(default_factory=list)
    actions_applied: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[TraceError] = field(default_factory=list)
    context: TraceContext = field(default_factory=TraceContext)
    duration_ms: float = 0.0

    @property
    def halted(self) -> bool:
        return any(error.kind == "rule" for error in self.errors)

    def diffs_for(self, rule_id: str) -> List[ActionDiff]:
        return [diff for diff in self.action_diffs if diff.rule_id == rule_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "mode": self.mode,
            "rulesConsidered": list(self.rules_considered),
            "rulesMatched": list(self.rules_matched),
            "conditionResults": dict(self.condition_results),
            "conditionExplains": {k: v.to_dict() for k, v in self.condition_explains.items()},
            "readsByRuleId": {k: [r.to_dict() for r in v] for k, v in self.reads_by_rule_id.items()},
            "actionDiffs": [d.to_dict() for d in self.action_diffs],
            "actionsApplied": list(self.actions_applied),
            "events": list(self.events),
            "errors": [e.to_dict() for e in self.errors],
            "context": self.context.to_dict(),
        }


@dataclass
class ApiTrace:
    started_at: str
    api_id: str
    method: str
    endpoint: str
    request: Dict[str, Any] = field(default_factory=dict)
    response: Optional[Dict[str, Any]] = None
    error: Optional[TraceError] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "apiId": self.api_id,
            "method": self.method,
            "endpoint": self.endpoint,
            "request": self.request,
        }
        payload.update(_compact({
            "response": self.response,
            "error": self.error.to_dict() if self.error else None,
        }))
        return payload


@dataclass
class RuntimeTrace:
    started_at: str
    flow: FlowTrace
    rules: Optional[RulesTrace] = None
    api: Optional[ApiTrace] = None
    context: TraceContext = field(default_factory=TraceContext)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "flow": self.flow.to_dict(),
            "context": self.context.to_dict(),
        }
        if self.rules is not None:
            payload["rules"] = self.rules.to_dict()
        if self.api is not None:
            payload["api"] = self.api.to_dict()
        return payload

    def digest(self) -> str:
        return compute_digest(self.to_dict())


def format_rules_trace(trace: RulesTrace) -> str:
    return (
        f"RulesTrace: {len(trace.rules_matched)}/{len(trace.rules_considered)} matched "
        f"in {trace.duration_ms:g}ms"
    )


def format_runtime_trace(trace: RuntimeTrace) -> str:
    rules = f"{len(trace.rules.rules_matched)} rules matched" if trace.rules else "rules skipped"
    api = f"api {trace.api.api_id}" if trace.api else "api skipped"
    return f"RuntimeTrace: {trace.flow.reason} in {trace.duration_ms:g}ms ({rules}, {api})"


def _render(value: Any) -> str:
    if value is MISSING:
        return "undefined"
    return json.dumps(strip_missing(value), sort_keys=True, default=str)


def explain_rules_trace(rules: RulesTrace) -> List[str]:
    lines = [
        f"rules ({rules.mode}): {len(rules.rules_matched)} of "
        f"{len(rules.rules_considered)} considered matched"
    ]
    seen = set()
    for rule_id in rules.rules_considered:
        if rule_id in seen:
            continue
        seen.add(rule_id)
        matched = rule_id in rules.rules_matched
        reads = ", ".join(
            f"{read.path}={_render(read.value)}" for read in rules.reads_by_rule_id.get(rule_id, [])
        )
        lines.append(f"  {'+' if matched else '-'} {rule_id}" + (f" [reads: {reads}]" if reads else ""))
        for diff in rules.diffs_for(rule_id):
            lines.append(f"      {diff.target}.{diff.path}: {_render(diff.before)} -> {_render(diff.after)}")
    # flow-level actions have diffs but were never "considered" as rules
    for diff in rules.action_diffs:
        if diff.rule_id not in seen:
            lines.append(
                f"  * {diff.rule_id}: {diff.target}.{diff.path}: "
                f"{_render(diff.before)} -> {_render(diff.after)}"
            )
    for event in rules.events:
        lines.append(f"  event emitted: {event.get('event')} (by {event.get('ruleId')})")
    for error in rules.errors:
        code = f" [{error.code}]" if error.code else ""
        lines.append(f"  error ({error.kind}){code}: {error.message}")
    return lines


def explain_runtime_trace(trace: RuntimeTrace) -> List[str]:
    """
    Render a trace as human-readable lines answering "what happened and why".
    """
    flow = trace.flow
    lines = [f"event '{flow.event}' in state '{flow.from_state_id}': {flow.reason}"]
    if flow.reason == "ok":
        lines.append(f"  -> moved to '{flow.to_state_id}' (page '{flow.ui_page_id}')")
        if flow.actions_to_run:
            lines.append(f"  actions: {', '.join(flow.actions_to_run)}")
    elif flow.reason == "guard_failed":
        lines.append(f"  guard rejected transition; staying on page '{flow.ui_page_id}'")
    if flow.error_message:
        lines.append(f"  note: {flow.error_message}")

    if trace.rules is not None:
        lines.extend(explain_rules_trace(trace.rules))

    api = trace.api
    if api is not None:
        if api.error is not None:
            lines.append(f"api {api.api_id} {api.method} {api.endpoint}: failed - {api.error.message}")
        else:
            status = api.response.get("status") if api.response else None
            lines.append(f"api {api.api_id} {api.method} {api.endpoint}: status {status}")
    return lines
