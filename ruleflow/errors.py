"""
Ruleflow error taxonomy.

Configuration errors are fatal and raised before any step logic runs.
Everything else is captured into a trace as a TraceError record.
"""

from __future__ import annotations

from typing import Optional


class RuleflowError(Exception):
    """Base class for all runtime errors."""


class ConfigurationError(RuleflowError):
    """A flow, rule set or API mapping violates a structural invariant."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message if path is None else f"{path}: {message}")
        self.message = message
        self.path = path


class RuleActionError(RuleflowError):
    """Raised by a throwError action; halts rule processing for the step."""

    def __init__(self, message: str, code: Optional[str] = None, rule_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.rule_id = rule_id


class ConditionDepthError(RuleflowError):
    """Condition tree nesting exceeded the configured maximum depth."""

    def __init__(self, max_depth: int):
        super().__init__(f"Max condition depth exceeded: {max_depth}")
        self.max_depth = max_depth


class TransportError(RuleflowError):
    """Raised by transports to signal a failed call."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ExecutionBlockedError(RuleflowError):
    """The kill switch is active; no step runs."""

    def __init__(self, reason: Optional[str] = None):
        message = "Execution blocked by kill switch"
        super().__init__(f"{message}: {reason}" if reason else message)
        self.reason = reason


class AccessDeniedError(RuleflowError):
    """The step's event, page or API is outside the caller's access policy."""

    def __init__(self, detail: str):
        super().__init__(f"Access denied: {detail}")
        self.detail = detail
