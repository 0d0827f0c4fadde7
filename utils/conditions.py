"""
Condition evaluator used by flow action matching.

Evaluates ordered condition lists against a session variable bag.
String operators compare case- and diacritic-insensitively. A condition
``value`` may carry several alternatives (a list, or a string split on
``|`` or ``,``): positive operators match ANY alternative, negated
operators must mismatch ALL of them.

Evaluation is pure and never raises: malformed conditions, unknown
operators and non-numeric comparisons all evaluate to False.
"""
from __future__ import annotations

import math
import re
from typing import Any, Callable, Iterable, Optional

import structlog

from core.errors import ConditionEvaluationError
from models.schemas import Condition
from utils.text import fold

logger = structlog.get_logger()

_SPLIT = re.compile(r"[|,]")


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'ticket.number'"""
    if field in data:
        return data[field]
    current: Any = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def split_alternatives(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    if value is None:
        return []
    return [part.strip() for part in _SPLIT.split(str(value)) if part.strip()]


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = re.match(r"\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?", str(value or ""))
        if not match:
            return None
        number = float(match.group(0))
    return None if math.isnan(number) else number


def _string_op(cmp: Callable[[str, str], bool], negated: bool) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        actual_str = fold(actual)
        alternatives = split_alternatives(expected)
        if len(alternatives) > 1:
            hits = (cmp(actual_str, fold(alt)) for alt in alternatives)
            return not any(hits) if negated else any(hits)
        if isinstance(expected, (list, tuple)):
            expected = alternatives[0] if alternatives else None
        matched = cmp(actual_str, fold(expected))
        return not matched if negated else matched
    return check


def _regex(actual: Any, expected: Any) -> bool:
    alternatives = split_alternatives(expected)
    patterns = alternatives if len(alternatives) > 1 else ["" if expected is None else str(expected)]
    subject = "" if actual is None else str(actual)
    for pattern in patterns:
        try:
            if re.search(pattern, subject, re.IGNORECASE):
                return True
        except re.error:
            continue
    return False


def _numeric(cmp: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        a, b = _to_number(actual), _to_number(expected)
        if a is None or b is None:
            return False
        return cmp(a, b)
    return check


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
    "equals": _string_op(lambda a, b: a == b, negated=False),
    "not_equals": _string_op(lambda a, b: a == b, negated=True),
    "contains": _string_op(lambda a, b: b in a, negated=False),
    "not_contains": _string_op(lambda a, b: b in a, negated=True),
    "starts_with": _string_op(lambda a, b: a.startswith(b), negated=False),
    "ends_with": _string_op(lambda a, b: a.endswith(b), negated=False),
    "regex": _regex,
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
}


def _coerce(condition: Any) -> Condition:
    if isinstance(condition, Condition):
        return condition
    if isinstance(condition, dict):
        try:
            return Condition.model_validate(condition)
        except ValueError as e:
            raise ConditionEvaluationError(f"Malformed condition: {e}") from e
    raise ConditionEvaluationError(f"Malformed condition: {condition!r}")


def evaluate_condition(condition: Condition | dict, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against the variable bag."""
    try:
        cond = _coerce(condition)
        fn = OPERATORS.get(cond.type.lower())
        if fn is None:
            return False
        actual = get_nested_value(data, cond.variable) if cond.variable else None
        return bool(fn(actual, cond.value))
    except Exception as e:
        logger.warning("condition_evaluation_failed", condition=str(condition), error=str(e))
        return False


def evaluate_conditions(conditions: Optional[Iterable[Condition | dict]], data: dict[str, Any]) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    if not conditions:
        return True
    return all(evaluate_condition(c, data) for c in conditions)
