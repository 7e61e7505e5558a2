from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Sequence

from .actions import ActionExecutor
from .config import RuntimeSettings
from .context import ANY_STATE_TAG, AMBIENT_ROOTS, Context, NodeScope, build_context, node_tag, state_tag
from .data_sources import SourceRouter
from .error_channel import ErrorChannel, LoggingErrorChannel
from .interpolation import resolve_data_bindings_in_object, resolve_data_bindings_in_string
from .models.node import BaseNode, LoadingBehavior, SectionNode
from .models.page import PageDefinition
from .models.rendered import RenderedNode
from .orchestrator import DataRequirementOrchestrator, RequirementResolution
from .overrides import apply_locale_overrides, apply_node_overrides, apply_responsive_overrides, resolve_breakpoint
from .repeater import expand_repeater
from .state_store import LocalStateStore, NodeOverrideStore
from .values import UNDEFINED
from .visibility import is_visible

logger = logging.getLogger(__name__)

MAX_FLUSH_PASSES = 32

_DATA_BINDING_RE = re.compile(r"\{\{\s*data\s*[.\[]")

# Node properties that are rendered through dedicated fields
_RENDERED_KEYS = {
    "id",
    "type",
    "order",
    "name",
    "params",
    "state",
    "dataRequirements",
    "visibility",
    "loadingBehavior",
    "eventHandlers",
    "responsiveOverrides",
    "localeOverrides",
    "className",
    "inlineStyles",
    "style",
    "children",
    "repeater",
    "atomType",
    "componentType",
}


def override_tag(node_id: str) -> str:
    return f"override:{node_id}"


@dataclass
class _Record:
    node_id: str
    schema: BaseNode
    scope: NodeScope
    parent_id: str | None
    position: int
    node: BaseNode
    template_id: str | None = None
    visible: bool = False
    version: int = 0
    tags: frozenset[str] = frozenset()
    child_ids: list[str] = field(default_factory=list)
    rendered: RenderedNode | None = None


def _reads_page_data(node: BaseNode) -> bool:
    def walk(value: Any) -> bool:
        if isinstance(value, str):
            return bool(_DATA_BINDING_RE.search(value))
        if isinstance(value, Mapping):
            return any(walk(item) for item in value.values())
        if isinstance(value, (list, tuple)):
            return any(walk(item) for item in value)
        return False

    return walk(node.params)


class PageRuntime:
    """Evaluates a page definition into a rendered node tree and keeps it current.

    Every evaluated node gets a record in a flat arena keyed by node id,
    holding its scope, parent, children and the dependency tags its
    expressions touched. State updates, settled fetches and ambient changes
    mark tags dirty; the next ``render()`` re-evaluates only the topmost
    records whose tags intersect the change. Records that disappear from a
    re-evaluated subtree are unmounted: their state is destroyed and their
    data requirements released.
    """

    def __init__(
        self,
        page: PageDefinition,
        *,
        orchestrator: DataRequirementOrchestrator | None = None,
        state_store: LocalStateStore | None = None,
        override_store: NodeOverrideStore | None = None,
        action_executor: ActionExecutor | None = None,
        error_channel: ErrorChannel | None = None,
        settings: RuntimeSettings | None = None,
        ambient: Mapping[str, Any] | None = None,
    ) -> None:
        unknown = sorted(set(ambient or {}) - set(AMBIENT_ROOTS))
        if unknown:
            raise ValueError(f"Unknown ambient context roots: {unknown}")
        settings = settings or RuntimeSettings()
        self.page = page
        self.error_channel = error_channel or LoggingErrorChannel()
        self.state_store = state_store or LocalStateStore()
        self.override_store = override_store or NodeOverrideStore()
        self.orchestrator = orchestrator or DataRequirementOrchestrator(
            router=SourceRouter.from_settings(settings),
            error_channel=self.error_channel,
            blocking_timeout_ms=settings.blocking_timeout_ms,
            blocking_retry_budget=settings.blocking_retry_budget,
            retry_delay_ms=settings.retry_delay_ms,
        )
        self.action_executor = action_executor or ActionExecutor(
            state_store=self.state_store,
            override_store=self.override_store,
            error_channel=self.error_channel,
        )
        self.ambient: Dict[str, Any] = {name: UNDEFINED for name in AMBIENT_ROOTS}
        self.ambient.update(ambient or {})
        self.page_data: Any = {}
        self.page_data_loading = page.data_source is not None

        self._records: Dict[str, _Record] = {}
        self._root_ids: list[str] = []
        self._rendered_once = False
        self._version = 0
        self._dirty: Dict[str, int] = {}
        self._listeners: list[Callable[[], None]] = []
        self._unsubscribers = [
            self.state_store.subscribe(lambda node_id: self._invalidate(state_tag(node_id), ANY_STATE_TAG)),
            self.override_store.subscribe(lambda node_id: self._invalidate(override_tag(node_id))),
            self.orchestrator.subscribe(lambda node_id: self._invalidate(node_tag(node_id))),
        ]
        self.orchestrator.is_mounted = self.is_mounted

    # --- invalidation ------------------------------------------------------

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired whenever part of the tree becomes stale."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _invalidate(self, *tags: str) -> None:
        self._version += 1
        for tag in tags:
            self._dirty[tag] = self._version
        for listener in list(self._listeners):
            listener()

    def _is_dirty(self, record: _Record) -> bool:
        return any(self._dirty.get(tag, 0) > record.version for tag in record.tags)

    def is_mounted(self, node_id: str) -> bool:
        record = self._records.get(node_id)
        return record is not None and record.visible

    # --- host entry points -------------------------------------------------

    def update_state(self, node_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        return self.state_store.update_state(node_id, partial)

    def update_node_state(self, target_node_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        return self.state_store.update_node_state(target_node_id, updates)

    def set_ambient(self, **changes: Any) -> None:
        """Replace ambient facts (``viewport``, ``locale``, ``user``, ``page``, ``site``)."""
        changed = []
        for name, value in changes.items():
            if name not in AMBIENT_ROOTS:
                raise ValueError(f"Unknown ambient context root: {name}")
            if self.ambient.get(name) != value:
                self.ambient[name] = value
                changed.append(name)
        if changed:
            logger.debug("Ambient context changed", extra={"roots": changed})
            self._invalidate(*changed)

    async def load_page_data(self) -> Any:
        """Fetch the page-level ``dataSource`` and re-evaluate nodes that read ``data``."""
        if self.page.data_source is None:
            self.page_data_loading = False
            return self.page_data
        context = build_context(NodeScope(node_id=self.page.id), self)
        data = await self.orchestrator.fetch_page_data(self.page.data_source.to_schema(), context)
        self.page_data = data if data is not None else {}
        self.page_data_loading = False
        self._invalidate("data")
        return self.page_data

    async def dispatch_event(self, node_id: str, trigger: str, value: Any = None) -> Dict[str, Any]:
        """Run the node's handlers for ``trigger`` with ``event.value`` bound.

        Returns:
            Results of the executed actions keyed by action id
        """
        self.render()
        record = self._records.get(node_id)
        if record is None or not record.visible or record.rendered is None or record.rendered.loading:
            logger.warning("Event for node that is not mounted", extra={"node_id": node_id, "trigger": trigger})
            return {}
        actions = (record.node.event_handlers or {}).get(trigger)
        if not actions:
            return {}
        node_data = self.orchestrator.peek(node_id, record.node.data_requirements)
        context = build_context(
            record.scope,
            self,
            node_data=node_data,
            event={"value": value, "trigger": trigger, "nodeId": node_id},
        )
        return await self.action_executor.execute(actions, node_id=node_id, context=context)

    async def settle(self) -> list[RenderedNode]:
        """Wait for in-flight fetches, re-render until nothing new is requested, and return the tree."""
        for _ in range(MAX_FLUSH_PASSES):
            tree = self.render()
            await self.orchestrator.settle()
            if not any(self._is_dirty(record) for record in self._records.values()):
                return tree
        return self.render()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        for node_id in list(self._records):
            self._unmount(node_id)
        self._records.clear()

    async def aclose(self) -> None:
        self.close()
        await self.orchestrator.aclose()

    # --- rendering ---------------------------------------------------------

    def render(self) -> list[RenderedNode]:
        """Bring the tree up to date and return the rendered root nodes.

        Call it from a coroutine: data requirements start their fetches as
        tasks on the running event loop.

        Raises:
            RuntimeError: When no event loop is running; nothing is evaluated
        """
        asyncio.get_running_loop()
        if not self._rendered_once:
            self._rendered_once = True
            self._root_ids = []
            for position, schema in enumerate(self.page.nodes):
                scope = NodeScope(node_id=schema.id).child(schema.id, stateful=schema.state is not None)
                self._root_ids.append(self._evaluate(schema, scope, None, position).node_id)
        self._flush()
        return self._assemble(self._root_ids)

    tree = render

    def _flush(self) -> None:
        for _ in range(MAX_FLUSH_PASSES):
            dirty = [record for record in self._records.values() if self._is_dirty(record)]
            if not dirty:
                self._dirty.clear()
                return
            dirty_ids = {record.node_id for record in dirty}
            for record in dirty:
                if self._has_dirty_ancestor(record, dirty_ids):
                    continue
                if self._records.get(record.node_id) is not record:
                    continue
                logger.debug("Re-evaluating subtree", extra={"node_id": record.node_id})
                self._evaluate(
                    record.schema, record.scope, record.parent_id, record.position, template_id=record.template_id
                )
        logger.warning("Render did not stabilize", extra={"page_id": self.page.id, "passes": MAX_FLUSH_PASSES})

    def _has_dirty_ancestor(self, record: _Record, dirty_ids: set[str]) -> bool:
        parent_id = record.parent_id
        while parent_id is not None:
            if parent_id in dirty_ids:
                return True
            parent = self._records.get(parent_id)
            parent_id = parent.parent_id if parent is not None else None
        return False

    def _effective_node(self, schema: BaseNode) -> tuple[BaseNode, set[str]]:
        tags = {node_tag(schema.id), override_tag(schema.id)}
        node = apply_node_overrides(schema, self.override_store.get(schema.id))
        if node.responsive_overrides:
            tags.add("viewport")
            node = apply_responsive_overrides(node, resolve_breakpoint(_as_mapping(self.ambient.get("viewport"))))
        if node.locale_overrides:
            tags.add("locale")
            locale = self.ambient.get("locale")
            node = apply_locale_overrides(node, locale if isinstance(locale, str) else None)
        return node, tags

    def _subtree_clean(self, record: _Record) -> bool:
        if self._is_dirty(record):
            return False
        return all(
            child is not None and self._subtree_clean(child)
            for child in (self._records.get(child_id) for child_id in record.child_ids)
        )

    def _evaluate(
        self,
        schema: BaseNode,
        scope: NodeScope,
        parent_id: str | None,
        position: int,
        *,
        template_id: str | None = None,
    ) -> _Record:
        node_id = schema.id
        previous = self._records.get(node_id)
        if (
            previous is not None
            and previous.schema is schema
            and previous.scope == scope
            and previous.parent_id == parent_id
            and self._subtree_clean(previous)
        ):
            previous.position = position
            return previous

        old_descendants = self._descendants(previous) if previous is not None else set()
        node, tags = self._effective_node(schema)
        record = _Record(
            node_id=node_id,
            schema=schema,
            scope=scope,
            parent_id=parent_id,
            position=position,
            node=node,
            template_id=template_id,
        )

        stateful = node.state is not None
        if stateful:
            tags.add(state_tag(node_id))
        peeked = self.orchestrator.peek(node_id, node.data_requirements) if node.data_requirements else {}
        visibility_context = build_context(scope, self, node_data=peeked)
        if stateful and not self.state_store.has_state(node_id):
            initial = {**node.state, **(self.state_store.get_state(node_id) or {})}
            visibility_context = visibility_context.extend({"state": initial})
        visible = is_visible(node, visibility_context)
        tags |= visibility_context.dependencies

        if not visible:
            if previous is not None and previous.visible:
                self._unmount(node_id)
            self._remove(old_descendants)
            record.version = self._version
            record.tags = frozenset(tags)
            self._records[node_id] = record
            return record

        if stateful:
            self.state_store.initialize(node_id, node.state)
        record.version = self._version
        record.visible = True
        self._records[node_id] = record

        context = build_context(scope, self)
        resolution = (
            self.orchestrator.resolve_requirements(node_id, node.data_requirements, context)
            if node.data_requirements
            else RequirementResolution(values={}, pending=frozenset(), blocked=False)
        )
        context = context.extend({"nodeData": resolution.values})

        waiting_for_page = self.page_data_loading and _reads_page_data(node)
        if waiting_for_page:
            tags.add("data")
        if resolution.blocked or waiting_for_page:
            record.rendered = self._placeholder(node, resolution.values, template_id)
        else:
            record.rendered = self._render_node(node, context, resolution.values, template_id)
            record.child_ids = self._evaluate_children(node, scope, context)

        record.tags = frozenset(tags | context.dependencies)
        self._remove(old_descendants - self._descendants(record))
        return record

    def _evaluate_children(self, node: BaseNode, scope: NodeScope, context: Context) -> list[str]:
        if not isinstance(node, SectionNode):
            return []
        child_ids: list[str] = []
        if node.repeater is not None:
            for instance in expand_repeater(node, context):
                bindings = {**instance.bindings, "repeater": {"nodeId": instance.node.id, "parentId": node.id}}
                child_scope = scope.child(instance.node.id, stateful=instance.node.state is not None, bindings=bindings)
                child = self._evaluate(
                    instance.node, child_scope, node.id, instance.index, template_id=instance.template_id
                )
                child_ids.append(child.node_id)
            return child_ids
        for position, child_schema in enumerate(node.children):
            child_scope = scope.child(child_schema.id, stateful=child_schema.state is not None)
            child_ids.append(self._evaluate(child_schema, child_scope, node.id, position).node_id)
        return child_ids

    def _render_node(
        self,
        node: BaseNode,
        context: Context,
        node_data: Mapping[str, Any],
        template_id: str | None,
    ) -> RenderedNode:
        extra = node.model_extra or {}
        style = extra.get("style")
        return RenderedNode(
            id=node.id,
            type=node.type,
            order=node.order,
            name=node.name,
            atom_type=getattr(node, "atom_type", None),
            component_type=getattr(node, "component_type", None),
            template_id=template_id,
            params=resolve_data_bindings_in_object(node.params, context),
            class_name=resolve_data_bindings_in_string(node.class_name, context) if node.class_name else None,
            inline_styles=resolve_data_bindings_in_object(node.inline_styles, context) if node.inline_styles else None,
            style=resolve_data_bindings_in_object(style, context) if isinstance(style, Mapping) else None,
            attributes={key: value for key, value in extra.items() if key not in _RENDERED_KEYS},
            node_data=dict(node_data),
            state=self.state_store.get_state(node.id),
            event_handlers=sorted(node.event_handlers or {}),
        )

    def _placeholder(self, node: BaseNode, node_data: Mapping[str, Any], template_id: str | None) -> RenderedNode:
        return RenderedNode(
            id=node.id,
            type=node.type,
            order=node.order,
            name=node.name,
            atom_type=getattr(node, "atom_type", None),
            component_type=getattr(node, "component_type", None),
            template_id=template_id,
            node_data=dict(node_data),
            loading=True,
            placeholder=node.loading_behavior or LoadingBehavior(),
        )

    # --- arena bookkeeping -------------------------------------------------

    def _descendants(self, record: _Record) -> set[str]:
        found: set[str] = set()
        stack = list(record.child_ids)
        while stack:
            child_id = stack.pop()
            if child_id in found:
                continue
            found.add(child_id)
            child = self._records.get(child_id)
            if child is not None:
                stack.extend(child.child_ids)
        return found

    def _unmount(self, node_id: str) -> None:
        self.state_store.destroy(node_id)
        self.orchestrator.release(node_id)

    def _remove(self, node_ids: set[str]) -> None:
        for node_id in node_ids:
            record = self._records.pop(node_id, None)
            if record is not None:
                logger.debug("Unmounting node", extra={"node_id": node_id})
                self._unmount(node_id)

    def _assemble(self, node_ids: Sequence[str]) -> list[RenderedNode]:
        children = [self._records[node_id] for node_id in node_ids if node_id in self._records]
        visible = [record for record in children if record.visible and record.rendered is not None]
        visible.sort(key=lambda record: (record.rendered.order, record.position))
        return [
            record.rendered.model_copy(update={"children": self._assemble(record.child_ids)}) for record in visible
        ]

    def find(self, node_id: str) -> RenderedNode | None:
        for root in self.render():
            found = root.find(node_id)
            if found is not None:
                return found
        return None


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


__all__ = ["PageRuntime"]
