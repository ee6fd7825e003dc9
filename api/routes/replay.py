"""Replay endpoint for determinism verification."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ruleflow.errors import RuleflowError
from ruleflow.governance.replay import ReplayVerifier
from ruleflow.runtime.executor import ExecutionConfig, Executor

router = APIRouter()


class ReplayRequest(BaseModel):
    """Request for replay verification."""
    flow: Dict[str, Any]
    rules: Optional[Any] = None
    api_mappings: Optional[Any] = None
    record: Dict[str, Any]


class ReplayResponse(BaseModel):
    """Response for replay verification."""
    replay_pass: bool
    expected_digest: str
    observed_digest: str
    first_mismatch: Optional[Dict[str, Any]] = None


@router.post("/replay", response_model=ReplayResponse)
async def verify_replay(request: ReplayRequest):
    """Re-run a recorded step and compare its digest."""
    try:
        executor = Executor(request.flow, request.rules, request.api_mappings, config=ExecutionConfig.from_env())
        report = ReplayVerifier(executor).verify(request.record)
        return ReplayResponse(
            replay_pass=report.replay_pass,
            expected_digest=report.expected_digest,
            observed_digest=report.observed_digest,
            first_mismatch=report.first_mismatch,
        )
    except RuleflowError:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
