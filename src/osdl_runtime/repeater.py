from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from .expression import evaluate
from .interpolation import resolve_data_bindings_in_object, strip_placeholder
from .models.node import BaseNode, IdStrategy, Repeater, SectionNode, parse_node
from .values import get_path, is_nullish, is_number
from .visibility import compare

logger = logging.getLogger(__name__)

# Dotted/bracketed paths, hyphenated segments allowed (``states.tabs-container.items``)
_PLAIN_PATH_RE = re.compile(r"^[A-Za-z_$][\w$-]*(?:\.[\w$-]+|\[[^\[\]]+\])*$")


@dataclass(frozen=True)
class RepeaterInstance:
    node: BaseNode
    item: Any
    index: int
    template_id: str

    @property
    def bindings(self) -> dict[str, Any]:
        return {"item": self.item, "index": self.index}


def resolve_source(source: str, context: Mapping[str, Any]) -> Any:
    expression = strip_placeholder(source)
    if _PLAIN_PATH_RE.match(expression) and "-" in expression:
        return get_path(context, expression)
    return evaluate(expression, context)


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, bool):
        return (0, int(value))
    if is_number(value):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, str(value))


def _apply_sort(items: list[Any], field: str, direction: str) -> list[Any]:
    present = [item for item in items if not is_nullish(get_path(item, field))]
    missing = [item for item in items if is_nullish(get_path(item, field))]
    present.sort(key=lambda item: _sort_key(get_path(item, field)), reverse=direction == "desc")
    return present + missing


def _resolve_limit(limit: Any, context: Mapping[str, Any]) -> int | None:
    if limit is None:
        return None
    resolved = resolve_data_bindings_in_object(limit, context, preserve_types=True)
    try:
        return max(int(float(resolved)), 0)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric repeater limit", extra={"limit": limit})
        return None


def _rewrite_ids(schema: dict[str, Any], index: int, strategy: IdStrategy, parent_id: str) -> dict[str, Any]:
    separator = strategy.separator
    id_prefix = f"{strategy.prefix}{separator}" if strategy.prefix else ""
    if strategy.include_parent_ids and parent_id:
        id_prefix = f"{parent_id}{separator}"
    new_id = f"{id_prefix}{schema['id']}{separator}{index}"
    schema["id"] = new_id

    if schema.get("type") == "section":
        repeater = schema.get("repeater")
        if isinstance(repeater, dict) and isinstance(repeater.get("template"), dict):
            repeater["template"] = _rewrite_ids(repeater["template"], index, strategy, new_id)
        elif schema.get("children"):
            schema["children"] = [_rewrite_ids(child, index, strategy, new_id) for child in schema["children"]]
    return schema


def expand_repeater(node: SectionNode, context: Mapping[str, Any]) -> list[RepeaterInstance]:
    """Materialize one template instance per element of the repeater source.

    The source is resolved against ``context``; anything other than a list
    expands to nothing. Filter, sort and limit apply in that order, then each
    element gets a deep clone of the template with page-unique ids and
    ``order = index`` unless the template pins its own order.
    """
    repeater: Repeater | None = node.repeater
    if repeater is None:
        return []

    items = resolve_source(repeater.source, context)
    if not isinstance(items, (list, tuple)):
        logger.debug("Repeater source did not resolve to a list", extra={"node_id": node.id, "source": repeater.source})
        return []
    items = list(items)

    if repeater.filter is not None:
        expected = resolve_data_bindings_in_object(repeater.filter.value, context, preserve_types=True)
        items = [item for item in items if compare(repeater.filter.operator, get_path(item, repeater.filter.field), expected)]
    if repeater.sort is not None:
        items = _apply_sort(items, repeater.sort.field, repeater.sort.direction)
    limit = _resolve_limit(repeater.limit, context)
    if limit is not None:
        items = items[:limit]

    template = repeater.template
    strategy = repeater.id_strategy or IdStrategy()
    pins_order = "order" in template.model_fields_set
    instances: list[RepeaterInstance] = []
    for index, item in enumerate(items):
        schema = _rewrite_ids(template.to_schema(), index, strategy, node.id)
        if not pins_order:
            schema["order"] = index
        instances.append(RepeaterInstance(node=parse_node(schema), item=item, index=index, template_id=template.id))
    return instances


__all__ = ["RepeaterInstance", "expand_repeater", "resolve_source"]
