from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Protocol

from .values import UNDEFINED, get_path

# Ambient roots supplied by the hosting shell; each is its own invalidation tag.
AMBIENT_ROOTS = ("page", "viewport", "user", "site", "locale")

ANY_STATE_TAG = "state:*"


def state_tag(node_id: str) -> str:
    return f"state:{node_id}"


def node_tag(node_id: str) -> str:
    return f"node:{node_id}"


class StateReader(Protocol):
    def get_state(self, node_id: str) -> dict[str, Any] | None:
        ...

    def node_ids(self) -> list[str]:
        ...


class RuntimeState(Protocol):
    """What the page runtime exposes to the context resolver."""

    page_data: Any
    ambient: Mapping[str, Any]
    state_store: StateReader


@dataclass(frozen=True)
class NodeScope:
    """Lexical position of a node: who owns ``state``/``parentState`` and which repeater bindings apply."""

    node_id: str
    state_owner: str | None = None
    parent_state_owner: str | None = None
    bindings: Mapping[str, Any] = field(default_factory=dict)

    def child(self, node_id: str, *, stateful: bool, bindings: Mapping[str, Any] | None = None) -> "NodeScope":
        merged = dict(self.bindings)
        if bindings:
            merged.update(bindings)
        return NodeScope(
            node_id=node_id,
            state_owner=node_id if stateful else self.state_owner,
            parent_state_owner=self.state_owner,
            bindings=merged,
        )


class _StatesView(Mapping[str, Any]):
    def __init__(self, store: StateReader, reads: set[str]) -> None:
        self._store = store
        self._reads = reads

    def __getitem__(self, node_id: str) -> Any:
        if not isinstance(node_id, str):
            raise KeyError(node_id)
        self._reads.add(state_tag(node_id))
        state = self._store.get_state(node_id)
        if state is None:
            raise KeyError(node_id)
        return state

    def __iter__(self) -> Iterator[str]:
        self._reads.add(ANY_STATE_TAG)
        return iter(self._store.node_ids())

    def __len__(self) -> int:
        self._reads.add(ANY_STATE_TAG)
        return len(self._store.node_ids())


class Context(Mapping[str, Any]):
    """Read-only expression namespace that records which roots were read.

    Every lookup of a root (``data``, ``states``, ``viewport``...) adds the
    matching dependency tag to ``dependencies``; the page runtime uses these
    tags to decide which nodes to re-evaluate after a change.
    """

    def __init__(self, roots: Mapping[str, Any], tags: Mapping[str, str], reads: set[str] | None = None) -> None:
        self._roots = dict(roots)
        self._tags = dict(tags)
        self._reads = reads if reads is not None else set()

    def __getitem__(self, key: str) -> Any:
        if key not in self._roots:
            raise KeyError(key)
        tag = self._tags.get(key)
        if tag:
            self._reads.add(tag)
        return self._roots[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._roots)

    def __len__(self) -> int:
        return len(self._roots)

    @property
    def dependencies(self) -> frozenset[str]:
        return frozenset(self._reads)

    def extend(self, extra: Mapping[str, Any] | None) -> "Context":
        """Layer extra roots on top; reads keep being recorded on the same tag set."""
        if not extra:
            return self
        roots = {**self._roots, **extra}
        tags = {key: tag for key, tag in self._tags.items() if key not in extra}
        return Context(roots, tags, self._reads)

    def resolve_path(self, path: str) -> Any:
        return get_path(self, path)


def build_context(
    scope: NodeScope,
    runtime: RuntimeState,
    *,
    node_data: Mapping[str, Any] | None = None,
    event: Any = UNDEFINED,
) -> Context:
    """Assemble the namespace visible to expressions evaluated at ``scope``.

    Args:
        scope: The node's lexical scope (state owners and repeater bindings)
        runtime: Live page state (page data, ambient facts, state store)
        node_data: Values of the node's own data requirements
        event: Triggering event, bound only while resolving action params

    Returns:
        A ``Context`` whose ``dependencies`` grow as expressions read it
    """
    reads: set[str] = set()
    store = runtime.state_store
    roots: dict[str, Any] = {
        "data": runtime.page_data,
        "nodeData": dict(node_data or {}),
        "states": _StatesView(store, reads),
    }
    tags: dict[str, str] = {"data": "data", "nodeData": node_tag(scope.node_id)}

    own = store.get_state(scope.state_owner) if scope.state_owner else None
    roots["state"] = own if own is not None else UNDEFINED
    if scope.state_owner:
        tags["state"] = state_tag(scope.state_owner)

    parent = store.get_state(scope.parent_state_owner) if scope.parent_state_owner else None
    roots["parentState"] = parent if parent is not None else UNDEFINED
    if scope.parent_state_owner:
        tags["parentState"] = state_tag(scope.parent_state_owner)

    for name in AMBIENT_ROOTS:
        roots[name] = runtime.ambient.get(name, UNDEFINED)
        tags[name] = name

    roots.update(scope.bindings)
    if event is not UNDEFINED:
        roots["event"] = event
    return Context(roots, tags, reads)


__all__ = [
    "AMBIENT_ROOTS",
    "ANY_STATE_TAG",
    "Context",
    "NodeScope",
    "RuntimeState",
    "StateReader",
    "build_context",
    "node_tag",
    "state_tag",
]
