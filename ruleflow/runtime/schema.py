"""
Ruleflow Schema Model

Typed, immutable views over the configuration documents a step consumes:
rule sets, flow schemas and API mappings. Documents arrive as plain JSON
(dicts/lists), are checked against the bundled JSON Schemas and then parsed
once into closed tagged unions so the two dispatch points (condition
evaluation, action application) can match exhaustively.

Key classes:
- Condition: GroupCondition | NotCondition | CompareCondition
- RuleAction: SetField | SetContext | AddItem | RemoveField | MapField | EmitEvent | ThrowError
- Rule, RuleScope, RuleSet
- FlowSchema, FlowState, Transition
- ApiMapping, MappingSource
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from ruleflow.errors import ConfigurationError
from ruleflow.schemas import check_document

DATE_OPS = frozenset({
    "dateEq", "dateBefore", "dateAfter", "dateBetween",
    "before", "after", "on", "plusDays",
})

_TRANSFORM_CALL = re.compile(r"^([a-z]+)\(\$\)$")


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Operand:
    """Condition leaf input: a path read at evaluation time or a literal."""
    path: Optional[str] = None
    value: Any = None

    @property
    def is_path(self) -> bool:
        return self.path is not None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Operand":
        if "path" in payload:
            return cls(path=payload["path"])
        return cls(value=payload["value"])

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path} if self.is_path else {"value": self.value}


@dataclass(frozen=True)
class GroupCondition:
    op: str  # "all" | "any"
    children: Tuple["Condition", ...] = ()

    kind = "group"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "group", "op": self.op, "children": [c.to_dict() for c in self.children]}


@dataclass(frozen=True)
class NotCondition:
    child: "Condition"

    kind = "not"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "not", "child": self.child.to_dict()}


@dataclass(frozen=True)
class CompareCondition:
    op: str
    left: Operand
    right: Optional[Operand] = None

    kind = "compare"

    def to_dict(self) -> Dict[str, Any]:
        payload = {"kind": "compare", "op": self.op, "left": self.left.to_dict()}
        if self.right is not None:
            payload["right"] = self.right.to_dict()
        return payload


Condition = Union[GroupCondition, NotCondition, CompareCondition]


def parse_condition(payload: Any, where: str = "condition") -> Condition:
    """
    Parse a condition tree.

    Accepts the tagged form (``{"kind": "group", "op": "all", "children": [...]}``)
    and the short forms ``{"all": [...]}``, ``{"any": [...]}``, ``{"not": {...}}``
    and ``{"op": ..., "left": ..., "right": ...}``.
    """
    check_document(payload, "condition", where)
    return _condition(payload)


def _condition(payload: Mapping[str, Any]) -> Condition:
    kind = payload.get("kind")

    if kind == "group":
        return GroupCondition(
            op=payload["op"],
            children=tuple(_condition(child) for child in payload.get("children", [])),
        )
    if kind is None and ("all" in payload or "any" in payload):
        op = "all" if "all" in payload else "any"
        return GroupCondition(op=op, children=tuple(_condition(child) for child in payload[op]))

    if kind == "not":
        return NotCondition(child=_condition(payload["child"]))
    if kind is None and "not" in payload:
        return NotCondition(child=_condition(payload["not"]))

    right = payload.get("right")
    return CompareCondition(
        op=payload["op"],
        left=Operand.from_dict(payload["left"]),
        right=Operand.from_dict(right) if right is not None else None,
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SetField:
    path: str
    value: Any
    type = "setField"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path, "value": self.value}


@dataclass(frozen=True)
class SetContext:
    path: str
    value: Any
    type = "setContext"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path, "value": self.value}


@dataclass(frozen=True)
class AddItem:
    path: str
    value: Any
    type = "addItem"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path, "value": self.value}


@dataclass(frozen=True)
class RemoveField:
    path: str
    type = "removeField"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path}


@dataclass(frozen=True)
class MapField:
    from_path: str
    to_path: str
    type = "mapField"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.from_path, "to": self.to_path}


@dataclass(frozen=True)
class EmitEvent:
    event: str
    payload: Any = None
    type = "emitEvent"

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type, "event": self.event}
        if self.payload is not None:
            result["payload"] = self.payload
        return result


@dataclass(frozen=True)
class ThrowError:
    message: str
    code: Optional[str] = None
    type = "throwError"

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type, "message": self.message}
        if self.code is not None:
            result["code"] = self.code
        return result


RuleAction = Union[SetField, SetContext, AddItem, RemoveField, MapField, EmitEvent, ThrowError]


def parse_action(payload: Any, where: str = "action") -> RuleAction:
    check_document(payload, "action", where)
    return _action(payload)


def _action(payload: Mapping[str, Any]) -> RuleAction:
    action_type = payload["type"]

    if action_type == "setField":
        return SetField(path=payload["path"], value=payload["value"])
    if action_type == "setContext":
        return SetContext(path=payload["path"], value=payload["value"])
    if action_type == "addItem":
        return AddItem(path=payload["path"], value=payload["value"])
    if action_type == "removeField":
        return RemoveField(path=payload["path"])
    if action_type == "mapField":
        return MapField(from_path=payload["from"], to_path=payload["to"])
    if action_type == "emitEvent":
        return EmitEvent(event=payload["event"], payload=payload.get("payload"))
    code = payload.get("code")
    return ThrowError(message=payload["message"], code=None if code is None else str(code))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

SCOPE_KEYS = ("countries", "roles", "tenants", "orgs", "programs", "issuers")


@dataclass(frozen=True)
class RuleScope:
    """Allow-lists; an absent list imposes no constraint."""
    countries: Optional[FrozenSet[str]] = None
    roles: Optional[FrozenSet[str]] = None
    tenants: Optional[FrozenSet[str]] = None
    orgs: Optional[FrozenSet[str]] = None
    programs: Optional[FrozenSet[str]] = None
    issuers: Optional[FrozenSet[str]] = None

    @classmethod
    def from_dict(cls, payload: Any, where: str = "scope") -> "RuleScope":
        check_document(payload, "scope", where)
        return cls._build(payload or {})

    @classmethod
    def _build(cls, payload: Mapping[str, Any]) -> "RuleScope":
        kwargs = {}
        for key in SCOPE_KEYS:
            # An empty list behaves like an absent one
            values = payload.get(key)
            if values:
                kwargs[key] = frozenset(str(v) for v in values)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: sorted(getattr(self, key))
            for key in SCOPE_KEYS
            if getattr(self, key) is not None
        }


@dataclass(frozen=True)
class Rule:
    rule_id: str
    when: Condition
    actions: Tuple[RuleAction, ...] = ()
    priority: float = 0
    description: Optional[str] = None
    scope: Optional[RuleScope] = None

    @classmethod
    def from_dict(cls, payload: Any, where: str = "rule") -> "Rule":
        check_document(payload, "rule", where)
        return cls._build(payload)

    @classmethod
    def _build(cls, payload: Mapping[str, Any]) -> "Rule":
        scope = payload.get("scope")
        return cls(
            rule_id=payload["ruleId"],
            when=_condition(payload["when"]),
            actions=tuple(_action(a) for a in payload.get("actions", [])),
            priority=payload.get("priority", 0),
            description=payload.get("description"),
            scope=RuleScope._build(scope) if scope is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ruleId": self.rule_id,
            "priority": self.priority,
            "when": self.when.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }
        if self.description is not None:
            payload["description"] = self.description
        if self.scope is not None:
            payload["scope"] = self.scope.to_dict()
        return payload


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: Tuple[Rule, ...] = ()

    @classmethod
    def from_dict(cls, payload: Any) -> "RuleSet":
        """Accepts ``{"version", "rules"}`` or a bare list of rules."""
        if isinstance(payload, RuleSet):
            return payload
        check_document(payload, "ruleSet", "ruleSet")
        if isinstance(payload, list):
            payload = {"version": "runtime", "rules": payload}
        return cls(
            version=str(payload.get("version", "runtime")),
            rules=tuple(Rule._build(r) for r in payload.get("rules", [])),
        )

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def rule_ids(self) -> List[str]:
        return [rule.rule_id for rule in self.rules]

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "rules": [r.to_dict() for r in self.rules]}


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transition:
    target: str
    guard: Optional[Condition] = None
    actions: Tuple[str, ...] = ()
    api_id: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Transition":
        guard = payload.get("guard")
        return cls(
            target=payload["target"],
            guard=_condition(guard) if guard is not None else None,
            actions=tuple(payload.get("actions") or ()),
            api_id=payload.get("apiId"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"target": self.target}
        if self.guard is not None:
            payload["guard"] = self.guard.to_dict()
        if self.actions:
            payload["actions"] = list(self.actions)
        if self.api_id is not None:
            payload["apiId"] = self.api_id
        return payload


@dataclass(frozen=True)
class FlowState:
    ui_page_id: str
    on: Mapping[str, Transition] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FlowState":
        return cls(
            ui_page_id=payload["uiPageId"],
            on={event: Transition.from_dict(t) for event, t in payload.get("on", {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"uiPageId": self.ui_page_id, "on": {e: t.to_dict() for e, t in self.on.items()}}


@dataclass(frozen=True)
class FlowSchema:
    flow_id: str
    initial_state: str
    states: Mapping[str, FlowState]
    version: str = "1.0.0"
    actions: Mapping[str, RuleAction] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "FlowSchema":
        if isinstance(payload, FlowSchema):
            return payload
        check_document(payload, "flow", "flow")
        return cls(
            flow_id=str(payload.get("flowId", "flow")),
            initial_state=payload["initialState"],
            states={sid: FlowState.from_dict(s) for sid, s in payload["states"].items()},
            version=str(payload.get("version", "1.0.0")),
            actions={name: _action(a) for name, a in payload.get("actions", {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "version": self.version,
            "flowId": self.flow_id,
            "initialState": self.initial_state,
            "states": {sid: s.to_dict() for sid, s in self.states.items()},
        }
        if self.actions:
            payload["actions"] = {name: a.to_dict() for name, a in self.actions.items()}
        return payload


# ---------------------------------------------------------------------------
# API mappings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MappingSource:
    """Where a request field comes from: a data./context. path or ``literal:<text>``."""
    source: str
    default: Any = None
    transform: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "MappingSource":
        if isinstance(payload, str):
            return cls(source=payload)
        transform = payload.get("transform")
        if transform is not None:
            # "upper($)" is the call form of "upper"
            transform = transform.strip()
            match = _TRANSFORM_CALL.match(transform)
            transform = match.group(1) if match else transform
        return cls(source=payload["from"], default=payload.get("default"), transform=transform)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"from": self.source}
        if self.default is not None:
            payload["default"] = self.default
        if self.transform is not None:
            payload["transform"] = self.transform
        return payload


def _source_map(payload: Optional[Mapping[str, Any]]) -> Mapping[str, MappingSource]:
    return {key: MappingSource.from_dict(src) for key, src in (payload or {}).items()}


@dataclass(frozen=True)
class ApiMapping:
    api_id: str
    method: str
    endpoint: str
    body: Mapping[str, MappingSource] = field(default_factory=dict)
    query: Mapping[str, MappingSource] = field(default_factory=dict)
    headers: Mapping[str, MappingSource] = field(default_factory=dict)
    response_data: Mapping[str, str] = field(default_factory=dict)
    response_context: Mapping[str, str] = field(default_factory=dict)
    version: str = "1.0.0"

    @classmethod
    def from_dict(cls, payload: Any) -> "ApiMapping":
        """
        Parse an API mapping.

        ``requestMap``/``responseMap`` may also be given as ``requestTransform``
        / ``responseTransform``. A flat ``requestTransform`` (key -> source)
        maps into the request body.
        """
        if isinstance(payload, ApiMapping):
            return payload
        check_document(payload, "apiMapping", "apiMapping")
        return cls._build(payload)

    @classmethod
    def _build(cls, payload: Mapping[str, Any]) -> "ApiMapping":
        request_map = payload.get("requestMap", payload.get("requestTransform")) or {}
        if request_map and not set(request_map) <= {"body", "query", "headers"}:
            request_map = {"body": request_map}
        response_map = payload.get("responseMap", payload.get("responseTransform")) or {}
        if response_map and not set(response_map) <= {"data", "context"}:
            response_map = {"data": response_map}

        return cls(
            api_id=payload["apiId"],
            method=payload["method"].upper(),
            endpoint=payload["endpoint"],
            body=_source_map(request_map.get("body")),
            query=_source_map(request_map.get("query")),
            headers=_source_map(request_map.get("headers")),
            response_data=dict(response_map.get("data") or {}),
            response_context=dict(response_map.get("context") or {}),
            version=str(payload.get("version", "1.0.0")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "apiId": self.api_id,
            "method": self.method,
            "endpoint": self.endpoint,
            "requestMap": {
                "body": {k: v.to_dict() for k, v in self.body.items()},
                "query": {k: v.to_dict() for k, v in self.query.items()},
                "headers": {k: v.to_dict() for k, v in self.headers.items()},
            },
            "responseMap": {"data": dict(self.response_data), "context": dict(self.response_context)},
        }


def parse_api_mappings(payload: Any) -> Dict[str, ApiMapping]:
    """Accepts ``{apiId: mapping}`` or a list of mappings."""
    if isinstance(payload, Mapping) and payload and all(isinstance(m, ApiMapping) for m in payload.values()):
        return dict(payload)
    check_document(payload, "apiMappings", "apiMappings")
    if payload is None:
        return {}
    if isinstance(payload, list):
        mappings = [ApiMapping._build(m) for m in payload]
        return {m.api_id: m for m in mappings}
    result: Dict[str, ApiMapping] = {}
    for key, raw in payload.items():
        mapping = ApiMapping._build(dict(raw, apiId=raw.get("apiId", key)))
        if mapping.api_id != key:
            raise ConfigurationError(f"mapping key '{key}' does not match apiId '{mapping.api_id}'", "apiMappings")
        result[key] = mapping
    return result
