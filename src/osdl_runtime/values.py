from __future__ import annotations

import json
import math
import re
from typing import Any, Mapping, Sequence


class _Undefined:
    """Marker for a value that does not exist, distinct from JSON ``null``."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Undefined":
        return self

    def __deepcopy__(self, memo: dict) -> "_Undefined":
        return self

    def __reduce__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()

# Path tokens: plain segments (hyphens allowed), [0], ["some-key"], ['some.key']
_PATH_TOKEN_RE = re.compile(r"""[^.\[\]]+|\[(?:([^"'\[\]]+)|["']([^"']+)["'])\]""")


def is_nullish(value: Any) -> bool:
    return value is UNDEFINED or value is None


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_truthy(value: Any) -> bool:
    """Truthiness of the page language: empty containers are truthy."""
    if is_nullish(value) or value is False:
        return False
    if is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def strict_equals(left: Any, right: Any) -> bool:
    if is_nullish(left) or is_nullish(right):
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if is_number(left) and is_number(right):
        return left == right
    return left is right or (type(left) is type(right) and left == right)


def _as_index(key: Any) -> int | None:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key
    if isinstance(key, float) and key.is_integer():
        return int(key)
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


def get_member(obj: Any, key: Any) -> Any:
    """Tolerant property/index lookup: anything missing yields ``UNDEFINED``."""
    if is_nullish(obj):
        return UNDEFINED
    if isinstance(obj, Mapping):
        try:
            return obj[key]
        except (KeyError, TypeError):
            pass
        index = _as_index(key)
        if index is not None:
            for alternative in (index, str(index)):
                if alternative == key:
                    continue
                try:
                    return obj[alternative]
                except (KeyError, TypeError):
                    continue
        return UNDEFINED
    if isinstance(obj, (str, Sequence)):
        if key == "length":
            return len(obj)
        index = _as_index(key)
        if index is not None and 0 <= index < len(obj):
            return obj[index]
        return UNDEFINED
    return UNDEFINED


def split_path(path: str) -> list[str]:
    tokens: list[str] = []
    for match in _PATH_TOKEN_RE.finditer(path):
        unquoted, quoted = match.group(1), match.group(2)
        if unquoted is not None:
            tokens.append(unquoted.strip())
        elif quoted is not None:
            tokens.append(quoted)
        else:
            tokens.append(match.group(0).strip())
    return tokens


def get_path(obj: Any, path: str, default: Any = UNDEFINED) -> Any:
    """Resolve ``a.b[0]["c-d"]``-style paths without ever raising."""
    if not isinstance(path, str) or not path.strip():
        return default
    tokens = split_path(path)
    if not tokens:
        return default
    current = obj
    for token in tokens:
        current = get_member(current, token)
        if current is UNDEFINED:
            return default
    return current


def format_number(value: float | int) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def to_js_string(value: Any) -> str:
    """String conversion used by ``+`` concatenation."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return "[object Object]"
    if isinstance(value, Sequence):
        return ",".join("" if is_nullish(item) else to_js_string(item) for item in value)
    return str(value)


def format_value(value: Any) -> str:
    """String conversion used when substituting a placeholder into text."""
    if is_nullish(value):
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return to_js_string(value)


__all__ = [
    "UNDEFINED",
    "is_nullish",
    "is_number",
    "is_truthy",
    "strict_equals",
    "get_member",
    "split_path",
    "get_path",
    "format_number",
    "to_js_string",
    "format_value",
]
