"""
Ruleflow Runtime State

Per-step inputs that the runtime reads but never mutates in place.

Key classes:
- ExecutionContext: immutable per-step metadata (tenant, user, roles, locale, ...)
- StepScope: the {data, context} root that path expressions resolve against
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.paths import get_path, set_path, remove_path

DEVICES = ("desktop", "tablet", "mobile")

# wire key -> attribute name
_WIRE_FIELDS = {
    "tenantId": "tenant_id",
    "userId": "user_id",
    "role": "role",
    "roles": "roles",
    "country": "country",
    "locale": "locale",
    "timezone": "timezone",
    "device": "device",
    "permissions": "permissions",
    "featureFlags": "feature_flags",
    "orgId": "org_id",
    "programId": "program_id",
    "issuerId": "issuer_id",
}


def _as_frozenset(value: Any, name: str) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"expected a list of strings, got {type(value).__name__}", name)
    return frozenset(str(item) for item in value)


@dataclass(frozen=True)
class ExecutionContext:
    """
    Immutable execution metadata for one orchestration step.

    A step never mutates the context it receives; setContext actions and
    context response maps produce a new instance.
    """
    tenant_id: str = ""
    user_id: str = ""
    role: str = ""
    roles: FrozenSet[str] = frozenset()
    country: str = ""
    locale: str = "en-US"
    timezone: str = "UTC"
    device: str = "desktop"
    permissions: FrozenSet[str] = frozenset()
    feature_flags: Mapping[str, bool] = field(default_factory=dict)
    org_id: Optional[str] = None
    program_id: Optional[str] = None
    issuer_id: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], strict: bool = True) -> "ExecutionContext":
        """
        Build a context from its camelCase wire form.

        Unknown keys are kept in ``extra`` so they stay addressable as
        ``context.<key>``. With ``strict`` an unknown device is rejected.
        """
        if not isinstance(payload, Mapping):
            raise ConfigurationError("execution context must be an object")

        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in payload.items():
            attr = _WIRE_FIELDS.get(key)
            if attr is None:
                extra[key] = value
            elif value is not None:
                kwargs[attr] = value

        kwargs["roles"] = _as_frozenset(kwargs.get("roles"), "context.roles")
        kwargs["permissions"] = _as_frozenset(kwargs.get("permissions"), "context.permissions")
        flags = kwargs.get("feature_flags") or {}
        if not isinstance(flags, Mapping):
            raise ConfigurationError("expected an object", "context.featureFlags")
        kwargs["feature_flags"] = {str(k): bool(v) for k, v in flags.items()}

        device = kwargs.get("device", "desktop")
        if strict and device not in DEVICES:
            raise ConfigurationError(f"unknown device '{device}'", "context.device")
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update({
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "role": self.role,
            "roles": sorted(self.roles),
            "country": self.country,
            "locale": self.locale,
            "timezone": self.timezone,
            "device": self.device,
            "permissions": sorted(self.permissions),
            "featureFlags": dict(sorted(self.feature_flags.items())),
        })
        for key, attr in (("orgId", "org_id"), ("programId", "program_id"), ("issuerId", "issuer_id")):
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload

    def all_roles(self) -> FrozenSet[str]:
        """Primary role plus the role set."""
        return self.roles | {self.role} if self.role else self.roles

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def flag(self, name: str) -> bool:
        return bool(self.feature_flags.get(name, False))

    def evolve(self, **changes: Any) -> "ExecutionContext":
        return dataclasses.replace(self, **changes)


def split_target(path: str) -> Tuple[str, str]:
    """
    Map a scoped path to (root, inner path).

    ``context.locale`` -> ("context", "locale"); ``data.x`` and bare ``x`` -> ("data", "x").
    """
    if path == "context" or path.startswith("context."):
        return "context", path[len("context."):]
    if path == "data" or path.startswith("data."):
        return "data", path[len("data."):]
    return "data", path


class StepScope:
    """
    Copy-on-write view over (context, data) used while a step runs.

    Each write swaps in a new root; the objects handed to the constructor
    are never modified, so callers keep their pre-step snapshot.
    """

    def __init__(self, context: ExecutionContext, data: Mapping[str, Any]):
        self._context = context
        self._context_dict = context.to_dict()
        self.data: Dict[str, Any] = data if isinstance(data, dict) else dict(data)

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def context_dict(self) -> Dict[str, Any]:
        return self._context_dict

    def read(self, path: str) -> Any:
        target, inner = split_target(path)
        root = self._context_dict if target == "context" else self.data
        return get_path(root, inner)

    def write(self, path: str, value: Any) -> None:
        target, inner = split_target(path)
        if not inner:
            return
        if target == "context":
            self._replace_context(set_path(self._context_dict, inner, value))
        else:
            self.data = set_path(self.data, inner, value)

    def remove(self, path: str) -> None:
        target, inner = split_target(path)
        if not inner:
            return
        if target == "context":
            self._replace_context(remove_path(self._context_dict, inner))
        else:
            self.data = remove_path(self.data, inner)

    def _replace_context(self, updated: Dict[str, Any]) -> None:
        if updated is self._context_dict:
            return
        self._context = ExecutionContext.from_dict(updated, strict=False)
        self._context_dict = self._context.to_dict()

    def checkpoint(self) -> Tuple[ExecutionContext, Dict[str, Any], Dict[str, Any]]:
        """Current roots; valid for ``restore`` since writes never mutate them."""
        return self._context, self._context_dict, self.data

    def restore(self, checkpoint: Tuple[ExecutionContext, Dict[str, Any], Dict[str, Any]]) -> None:
        self._context, self._context_dict, self.data = checkpoint

    def snapshot(self) -> Dict[str, Any]:
        return {"context": self._context_dict, "data": self.data}


__all__ = [
    "DEVICES",
    "ExecutionContext",
    "StepScope",
    "split_target",
]
