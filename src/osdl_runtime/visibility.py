from __future__ import annotations

import logging
import math
import re
from typing import Any, Mapping, Sequence

from .expression import evaluate
from .interpolation import resolve_data_bindings_in_object, strip_placeholder
from .models.node import BaseNode, VisibilityCondition, VisibilityConfig
from .values import get_path, is_nullish, is_number, is_truthy, strict_equals, to_js_string

logger = logging.getLogger(__name__)


def _as_number(value: Any) -> float | None:
    if is_number(value):
        return None if math.isnan(value) else value
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _contains(container: Any, expected: Any) -> bool | None:
    if isinstance(container, str):
        return to_js_string(expected) in container
    if isinstance(container, (list, tuple)):
        return any(strict_equals(item, expected) for item in container)
    return None


def compare(operator: str, actual: Any, expected: Any = None) -> bool:
    """Apply a visibility/filter operator to a resolved value."""
    if operator == "exists":
        return not is_nullish(actual)
    if operator == "notExists":
        return is_nullish(actual)
    if is_nullish(actual):
        return False
    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "notEquals":
        return not strict_equals(actual, expected)
    if operator in ("greaterThan", "greaterThanOrEqual", "lessThan", "lessThanOrEqual"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        if operator == "greaterThan":
            return left > right
        if operator == "greaterThanOrEqual":
            return left >= right
        if operator == "lessThan":
            return left < right
        return left <= right
    if operator == "contains":
        return bool(_contains(actual, expected))
    if operator == "notContains":
        found = _contains(actual, expected)
        return True if found is None else not found
    if operator == "regex":
        try:
            return re.search(to_js_string(expected), to_js_string(actual)) is not None
        except re.error:
            logger.warning("Invalid regex pattern in condition", extra={"pattern": expected})
            return False
    logger.warning("Unknown condition operator", extra={"operator": operator})
    return False


def evaluate_condition(condition: VisibilityCondition, context: Mapping[str, Any]) -> bool:
    actual = get_path(context, condition.context_path)
    expected = resolve_data_bindings_in_object(condition.value, context, preserve_types=True)
    return compare(condition.operator, actual, expected)


def evaluate_conditions(
    conditions: Sequence[VisibilityCondition],
    context: Mapping[str, Any],
    *,
    logic: str = "AND",
) -> bool:
    if not conditions:
        return True
    results = [evaluate_condition(condition, context) for condition in conditions]
    return any(results) if logic == "OR" else all(results)


def evaluate_visibility(config: VisibilityConfig | None, context: Mapping[str, Any]) -> bool:
    if config is None:
        return True
    if config.hidden:
        return False
    if config.expression:
        return is_truthy(evaluate(strip_placeholder(config.expression), context))
    return evaluate_conditions(config.conditions, context, logic=config.condition_logic)


def is_visible(node: BaseNode, context: Mapping[str, Any]) -> bool:
    return evaluate_visibility(node.visibility, context)


__all__ = [
    "compare",
    "evaluate_condition",
    "evaluate_conditions",
    "evaluate_visibility",
    "is_visible",
]
