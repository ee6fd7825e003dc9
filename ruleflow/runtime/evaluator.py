"""
Ruleflow Condition Evaluator

Evaluates condition trees against a StepScope:
- all: true when every child is true, stops at the first false child
- any: true when some child is true, stops at the first true child
- not: negates its child
- compare: applies an operator to two operands

Every path operand read is recorded for the explain trace. Operands that
resolve to the wrong type make the comparison false; nothing in here raises
for runtime data, only ConditionDepthError for over-deep trees.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ruleflow.errors import ConditionDepthError
from ruleflow.runtime.dates import DEFAULT_LOCALE, coerce_date_ms, compare_dates, shift_days
from ruleflow.runtime.paths import MISSING, is_number, json_equal
from ruleflow.runtime.schema import (
    CompareCondition,
    Condition,
    DATE_OPS,
    GroupCondition,
    NotCondition,
    Operand,
)
from ruleflow.runtime.state import StepScope
from ruleflow.runtime.trace import ConditionExplain, ExplainOperand, RuleRead

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
MAX_TRANSFORM_ARGS = 8


@dataclass
class EvaluatorResult:
    """Outcome of evaluating one condition tree."""
    result: bool
    explain: ConditionExplain
    reads: List[RuleRead] = field(default_factory=list)
    error: Optional[str] = None


def _to_finite_number(value: Any) -> Optional[float]:
    if is_number(value):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _normalize_number(value: float) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _stringify(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return str(_normalize_number(value))
    if isinstance(value, str):
        return value
    return str(value)


def _numeric_fold(args: List[Any], op: str) -> Any:
    numbers = [_to_finite_number(arg) for arg in args]
    if not numbers or any(n is None for n in numbers):
        return MISSING
    acc = numbers[0]
    for value in numbers[1:]:
        if op == "add":
            acc += value
        elif op == "subtract":
            acc -= value
        elif op == "multiply":
            acc *= value
        else:
            if value == 0:
                return MISSING
            acc /= value
    if not math.isfinite(acc):
        return MISSING
    return _normalize_number(acc)


class ConditionEvaluator:
    """
    Evaluates Condition trees for one StepScope.

    Every operand is read through the scope at evaluation time, so writes
    made by earlier rules in an apply pass are visible to later ones.
    """

    def __init__(self, scope: StepScope, max_depth: int = DEFAULT_MAX_DEPTH):
        self.scope = scope
        self.max_depth = max_depth

    def evaluate(self, condition: Condition) -> EvaluatorResult:
        """Evaluate a condition, returning result, explain tree and de-duplicated reads."""
        reads: List[RuleRead] = []
        try:
            explain = self._eval(condition, reads, 0)
        except ConditionDepthError as exc:
            logger.debug(f"condition evaluation aborted: {exc}")
            return EvaluatorResult(
                result=False,
                explain=ConditionExplain(kind=_kind_of(condition), result=False, error=str(exc)),
                reads=_dedupe_reads(reads),
                error=str(exc),
            )
        return EvaluatorResult(result=explain.result, explain=explain, reads=_dedupe_reads(reads))

    def test(self, condition: Condition) -> bool:
        return self.evaluate(condition).result

    def _eval(self, condition: Condition, reads: List[RuleRead], depth: int) -> ConditionExplain:
        if depth > self.max_depth:
            raise ConditionDepthError(self.max_depth)

        if isinstance(condition, GroupCondition):
            return self._eval_group(condition, reads, depth)
        if isinstance(condition, NotCondition):
            child = self._eval(condition.child, reads, depth + 1)
            return ConditionExplain(kind="not", result=not child.result, child=child)
        if isinstance(condition, CompareCondition):
            return self._eval_compare(condition, reads)
        raise TypeError(f"Unhandled condition type: {type(condition).__name__}")

    def _eval_group(self, condition: GroupCondition, reads: List[RuleRead], depth: int) -> ConditionExplain:
        # An empty group behaves as a single always-true leaf
        if not condition.children:
            return ConditionExplain(kind=condition.op, result=True)

        children: List[ConditionExplain] = []
        stop_on = condition.op == "any"
        for child in condition.children:
            explained = self._eval(child, reads, depth + 1)
            children.append(explained)
            if explained.result is stop_on:
                break

        if condition.op == "all":
            result = all(child.result for child in children)
        else:
            result = any(child.result for child in children)
        return ConditionExplain(kind=condition.op, result=result, children=children)

    def _eval_compare(self, condition: CompareCondition, reads: List[RuleRead]) -> ConditionExplain:
        left = self._resolve_operand(condition.left, reads)
        right = self._resolve_operand(condition.right, reads) if condition.right is not None else None
        right_value = right.value if right is not None else MISSING
        result = compare_values(condition.op, left.value, right_value, self.scope.context.locale)
        return ConditionExplain(kind="compare", result=result, op=condition.op, left=left, right=right)

    def _resolve_operand(self, operand: Operand, reads: List[RuleRead]) -> ExplainOperand:
        if operand.is_path:
            value = self._read(operand.path, reads)
            return ExplainOperand(kind="path", path=operand.path, value=value)
        value = self._resolve_dynamic(operand.value, reads)
        return ExplainOperand(kind="value", value=None if value is MISSING else value)

    def _read(self, path: str, reads: List[RuleRead]) -> Any:
        value = self.scope.read(path)
        reads.append(RuleRead(path=path, value=value))
        return value

    def _resolve_dynamic(self, value: Any, reads: List[RuleRead]) -> Any:
        """Literal values may be {"$path": ...} or {"$transform": ..., "args": [...]}."""
        if not isinstance(value, dict):
            return value
        path = value.get("$path")
        if isinstance(path, str):
            return self._read(path, reads)
        transform = value.get("$transform")
        if isinstance(transform, str):
            return self._eval_transform(transform, value.get("args"), reads)
        return value

    def _eval_transform(self, name: str, args: Any, reads: List[RuleRead]) -> Any:
        if not isinstance(args, list) or len(args) > MAX_TRANSFORM_ARGS:
            return MISSING
        resolved = []
        for arg in args:
            if isinstance(arg, dict) and isinstance(arg.get("$path"), str):
                resolved.append(self._read(arg["$path"], reads))
            else:
                resolved.append(arg)
        return apply_value_transform(name, resolved, self.scope.context.locale)


def apply_value_transform(name: str, args: List[Any], locale: str = DEFAULT_LOCALE) -> Any:
    """Closed set of pure value transforms; unknown names resolve to MISSING."""
    if name in ("add", "subtract", "multiply", "divide"):
        return _numeric_fold(args, name)
    if name == "mod":
        if len(args) != 2:
            return MISSING
        left, right = _to_finite_number(args[0]), _to_finite_number(args[1])
        if left is None or right is None or right == 0:
            return MISSING
        return _normalize_number(math.fmod(left, right))
    if name in ("abs", "round", "floor", "ceil"):
        number = _to_finite_number(args[0]) if args else None
        if number is None:
            return MISSING
        if name == "abs":
            return _normalize_number(abs(number))
        if name == "round":
            return math.floor(number + 0.5)
        if name == "floor":
            return math.floor(number)
        return math.ceil(number)
    if name in ("trim", "lower", "upper"):
        text = args[0] if args else None
        if not isinstance(text, str):
            return MISSING
        if name == "trim":
            return text.strip()
        return text.lower() if name == "lower" else text.upper()
    if name == "concat":
        return "".join(_stringify(arg) for arg in args)
    if name == "plusDays":
        base = coerce_date_ms(args[0], locale) if args else None
        if base is None or len(args) < 2:
            return MISSING
        shifted = shift_days(base, args[1])
        return MISSING if shifted is None else _normalize_number(shifted)
    return MISSING


def compare_values(op: str, left: Any, right: Any, locale: str = DEFAULT_LOCALE) -> bool:
    """Apply a compare operator; type mismatches yield False. ``locale`` orders short numeric dates."""
    if op == "eq":
        return json_equal(left, right)
    if op == "neq":
        return not json_equal(left, right)
    if op in ("gt", "gte", "lt", "lte"):
        if not (is_number(left) and is_number(right)):
            return False
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    if op == "exists":
        return left is not MISSING
    if op in DATE_OPS:
        return compare_dates(op, left, right, locale)
    if op == "in":
        return isinstance(right, list) and any(json_equal(item, left) for item in right)
    if op == "contains":
        if isinstance(left, str) and isinstance(right, str):
            return right in left
        if isinstance(left, list):
            return any(json_equal(item, right) for item in left)
        return False
    if op == "startsWith":
        return isinstance(left, str) and isinstance(right, str) and left.startswith(right)
    if op == "endsWith":
        return isinstance(left, str) and isinstance(right, str) and left.endswith(right)
    raise ValueError(f"Unhandled compare op: {op}")


def _kind_of(condition: Condition) -> str:
    if isinstance(condition, GroupCondition):
        return condition.op
    return condition.kind


def _dedupe_reads(reads: List[RuleRead]) -> List[RuleRead]:
    """One entry per path, keeping first-read order and the last value seen."""
    by_path: Dict[str, RuleRead] = {}
    for read in reads:
        if read.path in by_path:
            by_path[read.path].value = read.value
        else:
            by_path[read.path] = RuleRead(path=read.path, value=read.value)
    return list(by_path.values())


def evaluate_condition(condition: Condition, scope: StepScope, max_depth: int = DEFAULT_MAX_DEPTH) -> bool:
    """Boolean-only convenience used by flow guards and callers outside a rule pass."""
    return ConditionEvaluator(scope, max_depth=max_depth).test(condition)
