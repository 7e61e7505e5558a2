from __future__ import annotations

import copy
import re
from typing import Any, Mapping

from .context import Context
from .expression import evaluate
from .values import format_value, is_nullish

PLACEHOLDER_PATTERN = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)


def _as_context(context: Mapping[str, Any], extra: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if not extra:
        return context
    if isinstance(context, Context):
        return context.extend(extra)
    return {**context, **extra}


def _resolve_string(template: str, context: Mapping[str, Any], preserve_types: bool = False) -> Any:
    if "{{" not in template:
        return template
    whole = PLACEHOLDER_PATTERN.fullmatch(template.strip())
    if whole is not None and "{{" not in whole.group(1):
        value = evaluate(whole.group(1), context)
        if isinstance(value, (dict, list)):
            return copy.deepcopy(value)
        if preserve_types:
            return None if is_nullish(value) else value
        return format_value(value)
    return PLACEHOLDER_PATTERN.sub(lambda match: format_value(evaluate(match.group(1), context)), template)


def _walk(value: Any, context: Mapping[str, Any], preserve_types: bool) -> Any:
    if isinstance(value, str):
        return _resolve_string(value, context, preserve_types)
    if isinstance(value, Mapping):
        return {key: _walk(item, context, preserve_types) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_walk(item, context, preserve_types) for item in value]
    return value


def resolve_data_bindings_in_string(template: str, context: Mapping[str, Any], extra: Mapping[str, Any] | None = None) -> Any:
    return _resolve_string(template, _as_context(context, extra))


def resolve_data_bindings_in_object(
    value: Any,
    context: Mapping[str, Any],
    extra: Mapping[str, Any] | None = None,
    *,
    preserve_types: bool = False,
) -> Any:
    """Return a copy of ``value`` with every ``{{ ... }}`` in its string values substituted.

    A string that is exactly one placeholder keeps a structured result
    (list or object) as-is; everything else is formatted into the string,
    unless ``preserve_types`` is set, in which case a lone placeholder keeps
    its native number/boolean/null result. Keys are never interpolated and
    non-string scalars pass through.
    """
    return _walk(value, _as_context(context, extra), preserve_types)


def has_placeholder(value: Any) -> bool:
    if isinstance(value, str):
        return "{{" in value
    if isinstance(value, Mapping):
        return any(has_placeholder(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(has_placeholder(item) for item in value)
    return False


def strip_placeholder(expression: str) -> str:
    """``"{{ a.b }}"`` -> ``"a.b"``; bare expressions are returned stripped."""
    match = PLACEHOLDER_PATTERN.fullmatch(expression.strip())
    return match.group(1).strip() if match else expression.strip()


__all__ = [
    "PLACEHOLDER_PATTERN",
    "resolve_data_bindings_in_object",
    "resolve_data_bindings_in_string",
    "has_placeholder",
    "strip_placeholder",
]
