"""
Ruleflow Step Gates

Hard gates checked around the flow transition of every step. A failing gate
aborts the step with an exception; nothing is traced.

- Kill switch: blocks every step while active
- Event filter: cleans the incoming event, data and context before the flow sees them
- Access control: tenant, event, page and API allow-lists plus per-page and
  per-API role requirements

Key classes:
- KillSwitch: active flag plus optional reason
- AccessControl: allow-lists and role requirements
- StepInput: (event, data, context) as handed to an event filter
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional

from ruleflow.errors import AccessDeniedError, ConfigurationError, ExecutionBlockedError
from ruleflow.runtime.paths import is_unsafe_key
from ruleflow.runtime.state import ExecutionContext

MAX_EVENT_LENGTH = 128
MAX_STRING_LENGTH = 4096
MAX_ARRAY_ITEMS = 256
MAX_SANITIZE_DEPTH = 12

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class KillSwitch:
    active: bool = False
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "KillSwitch":
        if not payload:
            return cls()
        return cls(active=bool(payload.get("active")), reason=payload.get("reason"))

    def check(self) -> None:
        if self.active:
            raise ExecutionBlockedError((self.reason or "").strip() or None)


class StepInput(NamedTuple):
    event: str
    data: Dict[str, Any]
    context: ExecutionContext


EventFilter = Callable[[StepInput], StepInput]


def sanitize_string(value: str, max_length: int) -> str:
    """Drop control characters, trim, then truncate."""
    return _CONTROL_CHARS.sub("", value).strip()[:max_length]


def sanitize_value(value: Any, depth: int = 0) -> Any:
    if depth > MAX_SANITIZE_DEPTH:
        return None
    if isinstance(value, str):
        return sanitize_string(value, MAX_STRING_LENGTH)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, depth + 1) for item in value[:MAX_ARRAY_ITEMS]]
    if isinstance(value, Mapping):
        return sanitize_object(value, depth + 1)
    return value


def sanitize_object(value: Mapping[str, Any], depth: int = 0) -> Dict[str, Any]:
    """Copy of ``value`` without empty or unsafe keys; nested values are sanitized."""
    return {
        key: sanitize_value(item, depth)
        for key, item in value.items()
        if key and not is_unsafe_key(key)
    }


def sanitize_step_input(step: StepInput) -> StepInput:
    """Default event filter."""
    context = sanitize_object(step.context.to_dict())
    return StepInput(
        event=sanitize_string(step.event, MAX_EVENT_LENGTH),
        data=sanitize_object(step.data),
        context=ExecutionContext.from_dict(context),
    )


def _names(values: Any, where: str) -> Optional[frozenset]:
    if values is None:
        return None
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ConfigurationError("expected a list of names", where)
    return frozenset(str(v) for v in values) or None


def _role_table(table: Any, where: str) -> Dict[str, frozenset]:
    if table is None:
        return {}
    if not isinstance(table, Mapping):
        raise ConfigurationError("expected an object of role lists", where)
    result = {}
    for key, roles in table.items():
        names = _names(roles, f"{where}.{key}")
        if names:
            result[key] = names
    return result


@dataclass(frozen=True)
class AccessControl:
    """
    Who may drive a step. Empty or absent lists impose no constraint.

    A role requirement is met when the context's primary role or any of its
    roles is in the required list.
    """
    tenant_id: Optional[str] = None
    allowed_events: Optional[frozenset] = None
    allowed_ui_page_ids: Optional[frozenset] = None
    allowed_api_ids: Optional[frozenset] = None
    required_roles_by_ui_page_id: Mapping[str, frozenset] = field(default_factory=dict)
    required_roles_by_api_id: Mapping[str, frozenset] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AccessControl":
        """Build from the camelCase form (``allowedEvents``, ``requiredRolesByApiId``...)."""
        if not isinstance(payload, Mapping):
            raise ConfigurationError("access control must be an object", "accessControl")
        return cls(
            tenant_id=payload.get("tenantId") or None,
            allowed_events=_names(payload.get("allowedEvents"), "accessControl.allowedEvents"),
            allowed_ui_page_ids=_names(payload.get("allowedUiPageIds"), "accessControl.allowedUiPageIds"),
            allowed_api_ids=_names(payload.get("allowedApiIds"), "accessControl.allowedApiIds"),
            required_roles_by_ui_page_id=_role_table(
                payload.get("requiredRolesByUiPageId"), "accessControl.requiredRolesByUiPageId"
            ),
            required_roles_by_api_id=_role_table(
                payload.get("requiredRolesByApiId"), "accessControl.requiredRolesByApiId"
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        def listed(values: Optional[frozenset]) -> Optional[List[str]]:
            return sorted(values) if values else None

        return {
            "tenantId": self.tenant_id,
            "allowedEvents": listed(self.allowed_events),
            "allowedUiPageIds": listed(self.allowed_ui_page_ids),
            "allowedApiIds": listed(self.allowed_api_ids),
            "requiredRolesByUiPageId": {k: sorted(v) for k, v in self.required_roles_by_ui_page_id.items()},
            "requiredRolesByApiId": {k: sorted(v) for k, v in self.required_roles_by_api_id.items()},
        }

    def enforce(
        self,
        context: ExecutionContext,
        event: Optional[str] = None,
        ui_page_id: Optional[str] = None,
        api_id: Optional[str] = None,
    ) -> None:
        """Raise AccessDeniedError on the first violated constraint."""
        if self.tenant_id and context.tenant_id != self.tenant_id:
            raise AccessDeniedError(f"tenant mismatch ({context.tenant_id}).")
        if event and self.allowed_events and event not in self.allowed_events:
            raise AccessDeniedError(f'event "{event}" is not allowed.')
        if ui_page_id and self.allowed_ui_page_ids and ui_page_id not in self.allowed_ui_page_ids:
            raise AccessDeniedError(f'ui page "{ui_page_id}" is not allowed.')
        if api_id and self.allowed_api_ids and api_id not in self.allowed_api_ids:
            raise AccessDeniedError(f'api "{api_id}" is not allowed.')

        roles = context.all_roles()
        if ui_page_id:
            required = self.required_roles_by_ui_page_id.get(ui_page_id)
            if required and not required & roles:
                raise AccessDeniedError(f'missing role for ui page "{ui_page_id}".')
        if api_id:
            required = self.required_roles_by_api_id.get(api_id)
            if required and not required & roles:
                raise AccessDeniedError(f'missing role for api "{api_id}".')


__all__ = [
    "AccessControl",
    "EventFilter",
    "KillSwitch",
    "StepInput",
    "sanitize_object",
    "sanitize_step_input",
    "sanitize_string",
    "sanitize_value",
]
