"""
Ruleflow Flow Engine

Advances a FlowSchema state machine by one event.

Key classes:
- FlowEngine: transition selection and guard evaluation
- TransitionResult: next state, page, actions to run and optional API id
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from ruleflow.errors import ConfigurationError
from ruleflow.runtime.evaluator import DEFAULT_MAX_DEPTH, ConditionEvaluator
from ruleflow.runtime.schema import FlowSchema
from ruleflow.runtime.state import ExecutionContext, StepScope
from ruleflow.runtime.trace import FlowTrace, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    next_state_id: str
    ui_page_id: str
    trace: FlowTrace
    actions_to_run: List[str] = field(default_factory=list)
    api_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.trace.reason == "ok"

    @property
    def reason(self) -> str:
        return self.trace.reason


class FlowEngine:
    """
    Flow state machine stepper.

    A missing current or target state is a configuration error and raises.
    A missing transition or a failed guard is an expected outcome reported
    through ``FlowTrace.reason`` with the state left unchanged.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, clock: Optional[SystemClock] = None):
        self.max_depth = max_depth
        self.clock = clock or SystemClock()

    def transition(
        self,
        flow: FlowSchema,
        state_id: str,
        event: str,
        context: ExecutionContext,
        data: Mapping[str, Any],
    ) -> TransitionResult:
        if not isinstance(flow, FlowSchema):
            flow = FlowSchema.from_dict(flow)

        started_at = self.clock.now()
        started = self.clock.perf()

        state = flow.states.get(state_id)
        if state is None:
            raise ConfigurationError(f"unknown state '{state_id}'", f"flow[{flow.flow_id}]")

        trace = FlowTrace(
            started_at=started_at,
            event=event,
            from_state_id=state_id,
            to_state_id=state_id,
            ui_page_id=state.ui_page_id,
            reason="no_transition",
        )
        result = TransitionResult(next_state_id=state_id, ui_page_id=state.ui_page_id, trace=trace)

        transition = state.on.get(event)
        if transition is None:
            logger.debug(f"flow {flow.flow_id}: no transition for '{event}' in '{state_id}'")
            trace.duration_ms = self.clock.elapsed_ms(started)
            return result

        if transition.guard is not None:
            evaluator = ConditionEvaluator(StepScope(context, data), max_depth=self.max_depth)
            outcome = evaluator.evaluate(transition.guard)
            trace.guard_result = outcome.result
            trace.guard_explain = outcome.explain
            if not outcome.result:
                trace.reason = "guard_failed"
                trace.error_message = outcome.error
                logger.debug(f"flow {flow.flow_id}: guard rejected '{event}' in '{state_id}'")
                trace.duration_ms = self.clock.elapsed_ms(started)
                return result

        target = flow.states.get(transition.target)
        if target is None:
            raise ConfigurationError(
                f"transition '{event}' targets unknown state '{transition.target}'",
                f"flow[{flow.flow_id}].states.{state_id}",
            )

        trace.reason = "ok"
        trace.to_state_id = transition.target
        trace.ui_page_id = target.ui_page_id
        trace.actions_to_run = list(transition.actions)
        trace.api_id = transition.api_id
        trace.duration_ms = self.clock.elapsed_ms(started)
        logger.debug(f"flow {flow.flow_id}: '{state_id}' --{event}--> '{transition.target}'")

        return TransitionResult(
            next_state_id=transition.target,
            ui_page_id=target.ui_page_id,
            trace=trace,
            actions_to_run=list(transition.actions),
            api_id=transition.api_id,
        )
