"""
Ruleflow Step Executor

One orchestration step: flow transition, then the transition's actions
through the rules engine, then the optional API call, assembled into a
single RuntimeTrace.

Key classes:
- ExecutionConfig: Configuration for execution
- StepResult: Result of one step
- Executor: Main execution engine
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.api_orchestrator import ApiOrchestrator, AsyncTransport, Transport
from ruleflow.runtime.evaluator import DEFAULT_MAX_DEPTH
from ruleflow.runtime.flow import FlowEngine, TransitionResult
from ruleflow.runtime.gates import AccessControl, EventFilter, KillSwitch, StepInput, sanitize_step_input
from ruleflow.runtime.paths import strip_missing
from ruleflow.runtime.rules import DEFAULT_MAX_RULES, RulesEngine
from ruleflow.runtime.schema import ApiMapping, FlowSchema, RuleAction, RuleSet, parse_api_mappings
from ruleflow.runtime.state import ExecutionContext, StepScope
from ruleflow.runtime.trace import (
    ApiTrace,
    RulesTrace,
    RuntimeTrace,
    SystemClock,
    TraceContext,
    TraceError,
    compute_digest,
    format_runtime_trace,
)

logger = logging.getLogger(__name__)

EVALUATE_RULES = "evaluateRules"
CALL_API = "callApi"


def _env_flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"expected an integer, got '{raw}'", name)


@dataclass
class ExecutionConfig:
    """
    Configuration for step execution.

    ``event_filter`` runs on every step input before the flow sees it; set
    it to None to pass inputs through untouched. ``access_control`` may be
    given as an AccessControl or its camelCase dict form.
    """
    validate: bool = True
    log_traces: bool = False
    max_rules: int = DEFAULT_MAX_RULES
    max_depth: int = DEFAULT_MAX_DEPTH
    correlation_id: Optional[str] = None
    version_id: Optional[str] = None
    kill_switch: KillSwitch = field(default_factory=KillSwitch)
    access_control: Optional[AccessControl] = None
    event_filter: Optional[EventFilter] = sanitize_step_input

    def __post_init__(self):
        if isinstance(self.kill_switch, Mapping):
            self.kill_switch = KillSwitch.from_dict(self.kill_switch)
        if isinstance(self.access_control, Mapping):
            self.access_control = AccessControl.from_dict(self.access_control)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ExecutionConfig":
        """Read RULEFLOW_* variables; keyword overrides win over the environment."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            "validate": _env_flag(environ, "RULEFLOW_VALIDATE", True),
            "log_traces": _env_flag(environ, "RULEFLOW_TRACE", False),
            "max_rules": _env_int(environ, "RULEFLOW_MAX_RULES", DEFAULT_MAX_RULES),
            "max_depth": _env_int(environ, "RULEFLOW_MAX_DEPTH", DEFAULT_MAX_DEPTH),
            "kill_switch": KillSwitch(
                active=_env_flag(environ, "RULEFLOW_KILL_SWITCH", False),
                reason=environ.get("RULEFLOW_KILL_SWITCH_REASON") or None,
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class StepResult:
    """Result of one orchestration step."""
    next_state_id: str
    ui_page_id: str
    updated_context: ExecutionContext
    updated_data: Dict[str, Any]
    trace: RuntimeTrace
    errors: List[TraceError] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return self.trace.flow.reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nextStateId": self.next_state_id,
            "uiPageId": self.ui_page_id,
            "updatedContext": self.updated_context.to_dict(),
            "updatedData": strip_missing(self.updated_data),
            "trace": self.trace.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
        }

    def digest(self) -> str:
        """Digest of the whole result with wall-clock fields removed."""
        return compute_digest(self.to_dict())


# (kind, name, payload): kind is "all", "rule" or "action"
PlanItem = Tuple[str, str, Optional[RuleAction]]


class Executor:
    """
    Runs orchestration steps against one configuration bundle.

    The bundle (flow, rule set, API mappings) is parsed, and validated when
    ``config.validate`` is set, once at construction. Each step is then a
    pure function of (state, event, context, data) plus the transport's
    response.
    """

    def __init__(
        self,
        flow: Any,
        rules: Any = None,
        api_mappings: Any = None,
        config: Optional[ExecutionConfig] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.config = config or ExecutionConfig()
        self.clock = clock or SystemClock()
        self.flow = FlowSchema.from_dict(flow)
        self.rule_set = RuleSet.from_dict(rules if rules is not None else [])
        self.api_mappings: Dict[str, ApiMapping] = parse_api_mappings(api_mappings)

        self.flow_engine = FlowEngine(max_depth=self.config.max_depth, clock=self.clock)
        self.rules_engine = RulesEngine(
            max_rules=self.config.max_rules,
            max_depth=self.config.max_depth,
            clock=self.clock,
        )
        self.api_orchestrator = ApiOrchestrator(clock=self.clock)

        if self.config.validate:
            self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if the bundle is structurally invalid."""
        from ruleflow.governance.validator import validate_bundle

        validate_bundle(self.flow, self.rule_set, self.api_mappings)

    def execute_step(
        self,
        state_id: str,
        event: str,
        context: Any,
        data: Optional[Mapping[str, Any]] = None,
        transport: Optional[Transport] = None,
    ) -> StepResult:
        """
        Execute one step.

        Args:
            state_id: Current flow state
            event: Incoming event name
            context: ExecutionContext or its camelCase dict form
            data: Step data (not modified)
            transport: Callable used when the transition names an apiId

        Returns:
            StepResult with next state, updated context/data and trace
        """
        started_at, started, transition, scope, rules_trace, mapping = self._begin(state_id, event, context, data)
        api_trace = None
        if mapping is not None:
            if transport is None:
                api_trace = self._no_transport(mapping, scope)
            else:
                api_trace = self.api_orchestrator.run(mapping, scope, transport)
        return self._finish(started_at, started, transition, scope, rules_trace, api_trace)

    async def execute_step_async(
        self,
        state_id: str,
        event: str,
        context: Any,
        data: Optional[Mapping[str, Any]] = None,
        transport: Optional[AsyncTransport] = None,
    ) -> StepResult:
        """Same as ``execute_step`` with an awaitable transport."""
        started_at, started, transition, scope, rules_trace, mapping = self._begin(state_id, event, context, data)
        api_trace = None
        if mapping is not None:
            if transport is None:
                api_trace = self._no_transport(mapping, scope)
            else:
                api_trace = await self.api_orchestrator.run_async(mapping, scope, transport)
        return self._finish(started_at, started, transition, scope, rules_trace, api_trace)

    def plan_actions(self, names: List[str]) -> List[PlanItem]:
        """
        Resolve transition action names.

        Resolution order: ``evaluateRules`` (whole rule set), a flow-level
        named action, a rule id, ``callApi`` (marker only). Anything else is
        a configuration error.
        """
        plan: List[PlanItem] = []
        for name in names:
            if name == EVALUATE_RULES:
                plan.append(("all", name, None))
            elif name in self.flow.actions:
                plan.append(("action", name, self.flow.actions[name]))
            elif self.rule_set.get(name) is not None:
                plan.append(("rule", name, None))
            elif name == CALL_API:
                continue
            else:
                raise ConfigurationError(f"unknown action '{name}'", f"flow[{self.flow.flow_id}]")
        return plan

    def _trace_context(self, context: ExecutionContext) -> TraceContext:
        return TraceContext(
            correlation_id=self.config.correlation_id,
            tenant_id=context.tenant_id or None,
            user_id=context.user_id or None,
            version_id=self.config.version_id,
        )

    def _begin(
        self,
        state_id: str,
        event: str,
        context: Any,
        data: Optional[Mapping[str, Any]],
    ) -> Tuple[str, float, TransitionResult, StepScope, Optional[RulesTrace], Optional[ApiMapping]]:
        self.config.kill_switch.check()
        if not isinstance(context, ExecutionContext):
            context = ExecutionContext.from_dict(context or {})
        data = {} if data is None else data
        if self.config.event_filter is not None:
            event, data, context = self.config.event_filter(StepInput(event, dict(data), context))

        access = self.config.access_control
        if access is not None:
            access.enforce(context, event=event)

        started_at = self.clock.now()
        started = self.clock.perf()
        transition = self.flow_engine.transition(self.flow, state_id, event, context, data)
        if access is not None:
            access.enforce(context, ui_page_id=transition.ui_page_id, api_id=transition.api_id)
        scope = StepScope(context, data)
        if not transition.ok:
            return started_at, started, transition, scope, None, None

        plan = self.plan_actions(transition.actions_to_run)
        mapping = None
        if transition.api_id is not None:
            mapping = self.api_mappings.get(transition.api_id)
            if mapping is None:
                raise ConfigurationError(f"unknown apiId '{transition.api_id}'", f"flow[{self.flow.flow_id}]")

        rules_trace = None
        if plan:
            rules_trace = self._run_plan(plan, scope, self._trace_context(context))
            if rules_trace.halted:
                logger.debug("remaining step actions skipped after throwError")
        return started_at, started, transition, scope, rules_trace, mapping

    def _run_plan(self, plan: List[PlanItem], scope: StepScope, trace_context: TraceContext) -> RulesTrace:
        trace = self.rules_engine.new_trace("apply", trace_context)
        started = self.clock.perf()
        for kind, name, action in plan:
            if kind == "all":
                self.rules_engine.run(self.rule_set, scope, trace)
            elif kind == "rule":
                self.rules_engine.run(self.rule_set, scope, trace, only_rule_ids=[name])
            else:
                self.rules_engine.apply_actions([(name, action)], scope, trace)
            if trace.halted:
                break
        trace.duration_ms = self.clock.elapsed_ms(started)
        return trace

    def _no_transport(self, mapping: ApiMapping, scope: StepScope) -> ApiTrace:
        return ApiTrace(
            started_at=self.clock.now(),
            api_id=mapping.api_id,
            method=mapping.method,
            endpoint=mapping.endpoint,
            request=self.api_orchestrator.build_request(mapping, scope),
            error=TraceError(kind="transport", message="no transport configured"),
        )

    def _finish(
        self,
        started_at: str,
        started: float,
        transition: TransitionResult,
        scope: StepScope,
        rules_trace: Optional[RulesTrace],
        api_trace: Optional[ApiTrace],
    ) -> StepResult:
        trace = RuntimeTrace(
            started_at=started_at,
            flow=transition.trace,
            rules=rules_trace,
            api=api_trace,
            context=self._trace_context(scope.context),
        )
        trace.duration_ms = self.clock.elapsed_ms(started)

        errors: List[TraceError] = []
        if rules_trace is not None:
            errors.extend(rules_trace.errors)
        if api_trace is not None and api_trace.error is not None:
            errors.append(api_trace.error)

        if self.config.log_traces:
            logger.info(format_runtime_trace(trace))

        return StepResult(
            next_state_id=transition.next_state_id,
            ui_page_id=transition.ui_page_id,
            updated_context=scope.context,
            updated_data=scope.data,
            trace=trace,
            errors=errors,
        )


def execute_step(
    flow: Any,
    rules: Any,
    api_mappings: Any,
    state_id: str,
    event: str,
    context: Any,
    data: Optional[Mapping[str, Any]] = None,
    transport: Optional[Transport] = None,
    config: Optional[ExecutionConfig] = None,
    clock: Optional[SystemClock] = None,
) -> StepResult:
    """Single-call form: build an Executor for the bundle and run one step."""
    executor = Executor(flow, rules, api_mappings, config=config, clock=clock)
    return executor.execute_step(state_id, event, context, data, transport=transport)
