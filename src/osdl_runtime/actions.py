from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Sequence

import httpx

from .context import Context
from .error_channel import ErrorChannel, LoggingErrorChannel
from .errors import ConfigError, FetchError, RuntimeEngineError
from .interpolation import resolve_data_bindings_in_object
from .models.node import Action
from .state_store import LocalStateStore, NodeOverrideStore
from .visibility import evaluate_conditions

logger = logging.getLogger(__name__)

HostActionHandler = Callable[[str, Dict[str, Any], str], Any]


def resolve_action_params(action: Action, context: Mapping[str, Any]) -> dict[str, Any]:
    return resolve_data_bindings_in_object(action.params, context, preserve_types=True)


class ActionExecutor:
    """Runs declarative event-handler actions against the local stores.

    ``updateState``/``updateNodeState`` write node state, ``openModal`` and
    ``closeModal`` patch the target's ``visibility.hidden``, ``submitData``
    sends an HTTP request, and any other action type is handed to the host
    handler. Results are collected under ``actionResults`` so chained
    ``onSuccess``/``onError`` actions can template against them.
    """

    def __init__(
        self,
        *,
        state_store: LocalStateStore,
        override_store: NodeOverrideStore,
        http_client: httpx.AsyncClient | None = None,
        host_handler: HostActionHandler | None = None,
        error_channel: ErrorChannel | None = None,
    ) -> None:
        self._state_store = state_store
        self._override_store = override_store
        self._http_client = http_client
        self._host_handler = host_handler
        self._error_channel = error_channel or LoggingErrorChannel()
        self._open_modals: list[str] = []

    async def execute(
        self,
        actions: Sequence[Action],
        *,
        node_id: str,
        context: Context,
        action_results: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Execute ``actions`` in order.

        Args:
            actions: Handler list for the triggered event
            node_id: The node whose handler fired (default update target)
            context: Context with ``event`` already bound
            action_results: Results of earlier actions in the chain

        Returns:
            Action results keyed by action id (and ``resultKey`` when given)
        """
        results: Dict[str, Any] = action_results if action_results is not None else {}
        for action in actions:
            scoped = context.extend({"actionResults": results})
            if action.conditions and not evaluate_conditions(action.conditions, scoped, logic=action.condition_logic):
                logger.debug("Skipping action, conditions not met", extra={"action_id": action.id})
                continue
            if action.delay_ms:
                await asyncio.sleep(action.delay_ms / 1000)

            params = resolve_action_params(action, scoped)
            try:
                result = await self._run(action.type, params, node_id)
            except (RuntimeEngineError, httpx.HTTPError) as exc:
                error = exc if isinstance(exc, RuntimeEngineError) else FetchError(str(exc), action_id=action.id)
                results[action.id] = {"error": error.message}
                if action.on_error:
                    await self.execute(action.on_error, node_id=node_id, context=context, action_results=results)
                else:
                    self._error_channel.report(error, node_id=node_id, key=action.id)
                continue

            results[action.id] = result
            result_key = params.get("resultKey")
            if isinstance(result_key, str) and result_key:
                results[result_key] = result
            if action.on_success:
                await self.execute(action.on_success, node_id=node_id, context=context, action_results=results)
        return results

    async def _run(self, action_type: str, params: Dict[str, Any], node_id: str) -> Any:
        if action_type == "updateState":
            target = params.get("targetNodeId") or node_id
            return self._state_store.update_state(target, _updates(params))
        if action_type == "updateNodeState":
            target = params.get("targetNodeId")
            if not target:
                raise ConfigError("updateNodeState requires 'targetNodeId'")
            return self._state_store.update_node_state(target, _updates(params))
        if action_type == "openModal":
            modal_id = params.get("modalNodeId")
            if not modal_id:
                raise ConfigError("openModal requires 'modalNodeId'")
            self._override_store.apply(modal_id, {"visibility": {"hidden": False}})
            self._open_modals.append(modal_id)
            return {"modalNodeId": modal_id}
        if action_type == "closeModal":
            modal_id = params.get("modalNodeId") or (self._open_modals[-1] if self._open_modals else None)
            if not modal_id:
                raise ConfigError("closeModal has no modal to close")
            self._override_store.apply(modal_id, {"visibility": {"hidden": True}})
            if modal_id in self._open_modals:
                self._open_modals.remove(modal_id)
            return {"modalNodeId": modal_id}
        if action_type == "submitData":
            return await self._submit(params)
        return await self._forward(action_type, params, node_id)

    async def _submit(self, params: Dict[str, Any]) -> Any:
        endpoint = params.get("endpoint")
        if not endpoint:
            raise ConfigError("submitData requires 'endpoint'")
        method = str(params.get("method") or "POST").upper()
        client = self._http_client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.request(
                method,
                endpoint,
                json=params.get("body") if method != "GET" else None,
                params=params.get("body") if method == "GET" else None,
                headers=params.get("headers"),
            )
            response.raise_for_status()
        finally:
            if self._http_client is None:
                await client.aclose()
        logger.info("Submitted data", extra={"endpoint": endpoint, "method": method, "status": response.status_code})
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _forward(self, action_type: str, params: Dict[str, Any], node_id: str) -> Any:
        if self._host_handler is None:
            logger.warning("No host handler for action", extra={"action_type": action_type, "node_id": node_id})
            return None
        result = self._host_handler(action_type, params, node_id)
        if inspect.isawaitable(result):
            result = await result
        return result


def _updates(params: Mapping[str, Any]) -> Mapping[str, Any]:
    updates = params.get("updates")
    if not isinstance(updates, Mapping):
        raise ConfigError("State update requires an 'updates' object")
    return updates


__all__ = ["ActionExecutor", "HostActionHandler", "resolve_action_params"]
