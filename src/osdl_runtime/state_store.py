from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, Mapping

from .overrides import deep_merge

logger = logging.getLogger(__name__)

StateListener = Callable[[str], None]


class _Subscribable:
    def __init__(self) -> None:
        self._listeners: list[StateListener] = []

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, node_id: str) -> None:
        for listener in list(self._listeners):
            listener(node_id)


class LocalStateStore(_Subscribable):
    """Per-node local state, keyed by node id.

    Updates are shallow merges applied synchronously in call order; each
    update notifies subscribers with the owning node id so only consumers of
    that node's state get re-evaluated.
    """

    def __init__(self) -> None:
        super().__init__()
        self._states: Dict[str, dict[str, Any]] = {}
        self._initialized: set[str] = set()
        self._lock = threading.Lock()

    def get_state(self, node_id: str) -> dict[str, Any] | None:
        with self._lock:
            state = self._states.get(node_id)
            return dict(state) if state is not None else None

    def node_ids(self) -> list[str]:
        with self._lock:
            return list(self._states)

    def has_state(self, node_id: str) -> bool:
        """True once the node's state was created from its static ``state``."""
        with self._lock:
            return node_id in self._initialized

    def initialize(self, node_id: str, initial: Mapping[str, Any] | None) -> bool:
        """Create the node's state from its static ``state`` unless it already exists.

        Writes made before the node mounted are kept on top of the initial values.

        Returns:
            True when a new entry was created
        """
        with self._lock:
            if node_id in self._initialized:
                return False
            pending = self._states.get(node_id, {})
            self._states[node_id] = {**copy.deepcopy(dict(initial or {})), **pending}
            self._initialized.add(node_id)
        logger.debug("Initialized node state", extra={"node_id": node_id, "pending": sorted(pending)})
        self._notify(node_id)
        return True

    def update_state(self, node_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            current = self._states.get(node_id, {})
            updated = {**current, **copy.deepcopy(dict(partial))}
            self._states[node_id] = updated
        logger.debug("Updated node state", extra={"node_id": node_id, "keys": sorted(partial)})
        self._notify(node_id)
        return dict(updated)

    def update_node_state(self, target_node_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        return self.update_state(target_node_id, updates)

    def destroy(self, node_id: str) -> None:
        with self._lock:
            removed = self._states.pop(node_id, None)
            self._initialized.discard(node_id)
        if removed is not None:
            logger.debug("Destroyed node state", extra={"node_id": node_id})


class NodeOverrideStore(_Subscribable):
    """Schema patches (e.g. ``visibility.hidden`` from openModal/closeModal) applied before evaluation."""

    def __init__(self) -> None:
        super().__init__()
        self._overrides: Dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, node_id: str) -> dict[str, Any] | None:
        with self._lock:
            override = self._overrides.get(node_id)
            return copy.deepcopy(override) if override is not None else None

    def apply(self, node_id: str, updates: Mapping[str, Any]) -> None:
        with self._lock:
            self._overrides[node_id] = deep_merge(self._overrides.get(node_id, {}), updates)
        self._notify(node_id)

    def clear(self, node_id: str) -> None:
        with self._lock:
            removed = self._overrides.pop(node_id, None)
        if removed is not None:
            self._notify(node_id)


__all__ = ["LocalStateStore", "NodeOverrideStore", "StateListener"]
