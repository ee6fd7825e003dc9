"""Validate endpoint for configuration bundles."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ruleflow.errors import ConfigurationError
from ruleflow.governance.validator import collect_issues

router = APIRouter()


class ValidateRequest(BaseModel):
    """Request body for bundle validation."""
    flow: Dict[str, Any]
    rules: Optional[Any] = None
    api_mappings: Optional[Any] = None


class ValidateResponse(BaseModel):
    """Response body for bundle validation."""
    valid: bool
    flow_id: Optional[str] = None
    state_count: int = 0
    rule_count: int = 0
    errors: List[str] = []


@router.post("/validate", response_model=ValidateResponse)
async def validate_bundle(request: ValidateRequest):
    """Validate a flow with its rules and API mappings."""
    try:
        report = collect_issues(request.flow, request.rules, request.api_mappings)
    except ConfigurationError as e:
        # Schema-valid documents that still cannot be parsed (e.g. apiId key mismatch)
        return ValidateResponse(valid=False, flow_id=request.flow.get("flowId"), errors=[str(e)])
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    rules = request.rules
    if isinstance(rules, dict):
        rules = rules.get("rules", [])
    return ValidateResponse(
        valid=report.ok,
        flow_id=request.flow.get("flowId"),
        state_count=len(request.flow.get("states", {})),
        rule_count=len(rules or []),
        errors=[str(issue) for issue in report.issues],
    )
