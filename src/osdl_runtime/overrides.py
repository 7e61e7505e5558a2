from __future__ import annotations

import copy
from typing import Any, Mapping

from .models.node import BaseNode, parse_node

# Fallback breakpoints (lower bound of the viewport width, in px)
DEFAULT_BREAKPOINTS: Mapping[str, int] = {"mobile": 0, "tablet": 768, "desktop": 1024}

RESPONSIVE_KEYS = (
    "params",
    "positioning",
    "animations",
    "interactionStates",
    "visibility",
    "order",
    "loadingBehavior",
    "layout",
    "inlineStyles",
    "htmlTag",
)
LOCALE_KEYS = ("params", "layout", "positioning", "visibility", "order")
_SECTION_ONLY_KEYS = {"layout", "inlineStyles", "htmlTag"}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; lists are replaced, not merged."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def resolve_breakpoint(viewport: Mapping[str, Any] | None, breakpoints: Mapping[str, int] | None = None) -> str | None:
    """Explicit ``viewport.breakpoint`` wins; otherwise the widest breakpoint whose lower bound fits ``viewport.width``."""
    if not isinstance(viewport, Mapping):
        return None
    explicit = viewport.get("breakpoint")
    if isinstance(explicit, str) and explicit:
        return explicit
    width = viewport.get("width")
    if not isinstance(width, (int, float)) or isinstance(width, bool):
        return None
    active = None
    for name, lower in sorted((breakpoints or DEFAULT_BREAKPOINTS).items(), key=lambda pair: pair[1]):
        if width >= lower:
            active = name
    return active


def _merge_keys(node: BaseNode, overrides: Mapping[str, Any], keys: tuple[str, ...]) -> BaseNode:
    schema = node.to_schema()
    changed = False
    for key in keys:
        if key not in overrides or overrides[key] is None:
            continue
        if key in _SECTION_ONLY_KEYS and schema.get("type") != "section":
            continue
        value = overrides[key]
        if isinstance(value, Mapping) and isinstance(schema.get(key), Mapping):
            schema[key] = deep_merge(schema[key], value)
        else:
            schema[key] = copy.deepcopy(value)
        changed = True
    return parse_node(schema) if changed else node


def apply_responsive_overrides(node: BaseNode, breakpoint: str | None) -> BaseNode:
    if not breakpoint or not node.responsive_overrides:
        return node
    overrides = node.responsive_overrides.get(breakpoint)
    if not overrides:
        return node
    return _merge_keys(node, overrides, RESPONSIVE_KEYS)


def apply_locale_overrides(node: BaseNode, locale: str | None) -> BaseNode:
    if not locale or not node.locale_overrides:
        return node
    overrides = node.locale_overrides.get(locale)
    if not overrides:
        return node
    return _merge_keys(node, overrides, LOCALE_KEYS)


def apply_node_overrides(node: BaseNode, overrides: Mapping[str, Any] | None) -> BaseNode:
    """Merge runtime patches from the override store; ``id`` and ``type`` are fixed."""
    if not overrides:
        return node
    patch = {key: value for key, value in overrides.items() if key not in ("id", "type")}
    if not patch:
        return node
    return parse_node(deep_merge(node.to_schema(), patch))


__all__ = [
    "DEFAULT_BREAKPOINTS",
    "apply_locale_overrides",
    "apply_node_overrides",
    "apply_responsive_overrides",
    "deep_merge",
    "resolve_breakpoint",
]
