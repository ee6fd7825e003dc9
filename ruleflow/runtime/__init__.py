"""
Ruleflow Runtime Engine

This module provides the deterministic core for one orchestration step:
- Paths: safe dotted/indexed path reads and copy-on-write writes
- Evaluator: condition trees with read recording and explain output
- RulesEngine: scoped, priority-ordered rule evaluation and actions
- FlowEngine: state machine transitions with guards
- ApiOrchestrator: declarative request/response mapping over a transport
- Executor: flow + rules + API composed into a single traced step
- Gates: kill switch, event filter and access control around each step
"""

from ruleflow.runtime.api_orchestrator import ApiOrchestrator, ApiResult, StaticTransport
from ruleflow.runtime.evaluator import ConditionEvaluator, EvaluatorResult, evaluate_condition
from ruleflow.runtime.executor import ExecutionConfig, Executor, StepResult, execute_step
from ruleflow.runtime.flow import FlowEngine, TransitionResult
from ruleflow.runtime.gates import AccessControl, KillSwitch, sanitize_step_input
from ruleflow.runtime.paths import MISSING, get_path, remove_path, set_path
from ruleflow.runtime.rules import RulesEngine, RulesResult, evaluate_rules
from ruleflow.runtime.schema import ApiMapping, FlowSchema, Rule, RuleSet
from ruleflow.runtime.state import ExecutionContext, StepScope
from ruleflow.runtime.trace import (
    FrozenClock,
    RuntimeTrace,
    SystemClock,
    explain_runtime_trace,
    format_runtime_trace,
)

__all__ = [
    "AccessControl",
    "ApiMapping",
    "ApiOrchestrator",
    "ApiResult",
    "ConditionEvaluator",
    "EvaluatorResult",
    "ExecutionConfig",
    "ExecutionContext",
    "Executor",
    "FlowEngine",
    "FlowSchema",
    "FrozenClock",
    "KillSwitch",
    "MISSING",
    "Rule",
    "RuleSet",
    "RulesEngine",
    "RulesResult",
    "RuntimeTrace",
    "StaticTransport",
    "StepResult",
    "StepScope",
    "SystemClock",
    "TransitionResult",
    "evaluate_condition",
    "evaluate_rules",
    "execute_step",
    "explain_runtime_trace",
    "format_runtime_trace",
    "get_path",
    "remove_path",
    "sanitize_step_input",
    "set_path",
]
