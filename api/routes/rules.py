"""Rules endpoint: evaluate a rule set without a flow (explain previews)."""

from typing import Any, Dict, List, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ruleflow.errors import RuleflowError
from ruleflow.governance.validator import validate_rule_set
from ruleflow.runtime.executor import ExecutionConfig
from ruleflow.runtime.paths import strip_missing
from ruleflow.runtime.rules import RulesEngine
from ruleflow.runtime.schema import RuleSet
from ruleflow.runtime.state import ExecutionContext
from ruleflow.runtime.trace import explain_rules_trace

router = APIRouter()


class EvaluateRulesRequest(BaseModel):
    rules: Any
    context: Dict[str, Any] = {}
    data: Dict[str, Any] = {}
    mode: Literal["apply", "predicate"] = "predicate"


class EvaluateRulesResponse(BaseModel):
    matched: List[str]
    data: Dict[str, Any]
    context: Dict[str, Any]
    trace: Dict[str, Any]
    explain: List[str] = []


@router.post("/rules/evaluate", response_model=EvaluateRulesResponse)
async def evaluate_rules(request: EvaluateRulesRequest):
    """Evaluate rules in predicate (default) or apply mode."""
    try:
        rule_set = RuleSet.from_dict(request.rules)
        validate_rule_set(rule_set).raise_if_invalid()
        context = ExecutionContext.from_dict(request.context)
        config = ExecutionConfig.from_env()
        engine = RulesEngine(max_rules=config.max_rules, max_depth=config.max_depth)
        result = engine.evaluate(rule_set, context, request.data, mode=request.mode)
        return EvaluateRulesResponse(
            matched=result.matched,
            data=strip_missing(result.data),
            context=result.context.to_dict(),
            trace=result.trace.to_dict(),
            explain=explain_rules_trace(result.trace),
        )
    except RuleflowError:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
