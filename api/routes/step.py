"""Step endpoint: run one orchestration step."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ruleflow.errors import RuleflowError
from ruleflow.runtime.api_orchestrator import StaticTransport
from ruleflow.runtime.executor import ExecutionConfig, Executor
from ruleflow.runtime.trace import FrozenClock, SystemClock, explain_runtime_trace

logger = logging.getLogger(__name__)

router = APIRouter()


class StepRequest(BaseModel):
    """Request body for one orchestration step."""
    flow: Dict[str, Any]
    rules: Optional[Any] = None
    api_mappings: Optional[Any] = None
    state_id: Optional[str] = None
    event: str
    context: Dict[str, Any] = {}
    data: Dict[str, Any] = {}
    api_response: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None
    frozen_clock: bool = False
    kill_switch: Optional[Dict[str, Any]] = None
    access_control: Optional[Dict[str, Any]] = None


class StepResponse(BaseModel):
    """Response body for one orchestration step."""
    next_state_id: str
    ui_page_id: str
    reason: str
    updated_context: Dict[str, Any]
    updated_data: Dict[str, Any]
    trace: Dict[str, Any]
    errors: List[Dict[str, Any]] = []
    explain: List[str] = []
    digest: str


@router.post("/step", response_model=StepResponse)
async def run_step(request: StepRequest):
    """Run one step with an optional stubbed API response."""
    try:
        config = ExecutionConfig.from_env(
            correlation_id=request.correlation_id,
            kill_switch=request.kill_switch,
            access_control=request.access_control,
        )
        clock = FrozenClock() if request.frozen_clock else SystemClock()
        executor = Executor(request.flow, request.rules, request.api_mappings, config=config, clock=clock)
        transport = StaticTransport.from_dict(request.api_response) if request.api_response is not None else None
        state_id = request.state_id or executor.flow.initial_state

        result = executor.execute_step(state_id, request.event, request.context, request.data, transport=transport)
        payload = result.to_dict()
        return StepResponse(
            next_state_id=result.next_state_id,
            ui_page_id=result.ui_page_id,
            reason=result.reason,
            updated_context=payload["updatedContext"],
            updated_data=payload["updatedData"],
            trace=payload["trace"],
            errors=payload["errors"],
            explain=explain_runtime_trace(result.trace),
            digest=result.digest(),
        )
    except RuleflowError:
        raise
    except Exception as e:
        logger.exception("step execution failed")
        raise HTTPException(status_code=500, detail=str(e))
