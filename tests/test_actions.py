import json

import httpx
import pytest

from osdl_runtime.actions import ActionExecutor
from osdl_runtime.context import NodeScope, build_context
from osdl_runtime.error_channel import LoggingErrorChannel
from osdl_runtime.models.node import Action
from osdl_runtime.state_store import LocalStateStore, NodeOverrideStore


class FakeRuntime:
    def __init__(self) -> None:
        self.page_data = {"product": {"id": "p-1", "price": 20}}
        self.ambient = {"user": {"id": "u-9"}}
        self.state_store = LocalStateStore()


def load_actions(payload: list[dict]) -> list[Action]:
    return [Action.model_validate(item) for item in payload]


def make_executor(runtime: FakeRuntime, **kwargs) -> tuple[ActionExecutor, NodeOverrideStore, LoggingErrorChannel]:
    overrides = NodeOverrideStore()
    channel = LoggingErrorChannel()
    executor = ActionExecutor(state_store=runtime.state_store, override_store=overrides, error_channel=channel, **kwargs)
    return executor, overrides, channel


def make_context(runtime: FakeRuntime, node_id: str = "quantity-picker", value=None):
    scope = NodeScope(node_id="page").child(node_id, stateful=True)
    return build_context(scope, runtime, event={"value": value, "trigger": "onChange"})


@pytest.mark.asyncio
async def test_update_state_defaults_to_the_handling_node():
    runtime = FakeRuntime()
    runtime.state_store.initialize("quantity-picker", {"quantity": 1})
    executor, _, _ = make_executor(runtime)
    actions = load_actions(
        [{"id": "set-qty", "type": "updateState", "params": {"updates": {"quantity": "{{ event.value }}"}}}]
    )

    results = await executor.execute(actions, node_id="quantity-picker", context=make_context(runtime, value=3))

    assert runtime.state_store.get_state("quantity-picker") == {"quantity": 3}
    assert results == {"set-qty": {"quantity": 3}}


@pytest.mark.asyncio
async def test_update_node_state_requires_target():
    runtime = FakeRuntime()
    executor, _, channel = make_executor(runtime)
    actions = load_actions([{"id": "bad", "type": "updateNodeState", "params": {"updates": {"a": 1}}}])

    results = await executor.execute(actions, node_id="x", context=make_context(runtime))

    assert "error" in results["bad"]
    assert channel.reported[0]["error"] == "ConfigError"


@pytest.mark.asyncio
async def test_conditions_gate_actions():
    runtime = FakeRuntime()
    executor, _, _ = make_executor(runtime)
    actions = load_actions(
        [
            {
                "id": "only-big",
                "type": "updateNodeState",
                "conditions": [{"contextPath": "event.value", "operator": "greaterThan", "value": 10}],
                "params": {"targetNodeId": "cart", "updates": {"big": True}},
            },
            {
                "id": "always",
                "type": "updateNodeState",
                "params": {"targetNodeId": "cart", "updates": {"seen": "{{ event.value }}"}},
            },
        ]
    )

    results = await executor.execute(actions, node_id="picker", context=make_context(runtime, value=4))

    assert "only-big" not in results
    assert runtime.state_store.get_state("cart") == {"seen": 4}


@pytest.mark.asyncio
async def test_on_success_sees_previous_results():
    runtime = FakeRuntime()
    calls: list[tuple[str, dict, str]] = []

    async def host_handler(action_type, params, node_id):
        calls.append((action_type, params, node_id))
        return {"orderId": "o-1"}

    executor, _, _ = make_executor(runtime, host_handler=host_handler)
    actions = load_actions(
        [
            {
                "id": "checkout",
                "type": "addToCart",
                "params": {"productId": "{{ data.product.id }}", "resultKey": "order"},
                "onSuccess": [
                    {
                        "id": "remember",
                        "type": "updateNodeState",
                        "params": {"targetNodeId": "cart", "updates": {"lastOrder": "{{ actionResults.order.orderId }}"}},
                    }
                ],
            }
        ]
    )

    results = await executor.execute(actions, node_id="buy-button", context=make_context(runtime))

    assert calls == [("addToCart", {"productId": "p-1", "resultKey": "order"}, "buy-button")]
    assert results["order"] == {"orderId": "o-1"}
    assert runtime.state_store.get_state("cart") == {"lastOrder": "o-1"}


@pytest.mark.asyncio
async def test_on_error_runs_instead_of_reporting():
    runtime = FakeRuntime()
    executor, _, channel = make_executor(runtime)
    actions = load_actions(
        [
            {
                "id": "submit",
                "type": "submitData",
                "params": {},
                "onError": [{"id": "flag", "type": "updateNodeState", "params": {"targetNodeId": "form", "updates": {"failed": True}}}],
            }
        ]
    )

    await executor.execute(actions, node_id="form", context=make_context(runtime))

    assert runtime.state_store.get_state("form") == {"failed": True}
    assert channel.reported == []


@pytest.mark.asyncio
async def test_submit_data_posts_resolved_body():
    runtime = FakeRuntime()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.example.test")
    executor, _, _ = make_executor(runtime, http_client=client)
    actions = load_actions(
        [
            {
                "id": "review",
                "type": "submitData",
                "params": {"endpoint": "/reviews", "body": {"productId": "{{ data.product.id }}", "userId": "{{ user.id }}"}},
            }
        ]
    )

    results = await executor.execute(actions, node_id="review-form", context=make_context(runtime))
    await client.aclose()

    assert results["review"] == {"ok": True}
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"productId": "p-1", "userId": "u-9"}


@pytest.mark.asyncio
async def test_submit_data_http_errors_are_reported():
    runtime = FakeRuntime()
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    executor, _, channel = make_executor(runtime, http_client=client)
    actions = load_actions([{"id": "review", "type": "submitData", "params": {"endpoint": "https://api.example.test/r"}}])

    await executor.execute(actions, node_id="review-form", context=make_context(runtime))
    await client.aclose()

    assert channel.reported[0]["error"] == "FetchError"
    assert channel.reported[0]["requirement_key"] == "review"


@pytest.mark.asyncio
async def test_modal_stack():
    runtime = FakeRuntime()
    executor, overrides, _ = make_executor(runtime)
    open_both = load_actions(
        [
            {"id": "open-a", "type": "openModal", "params": {"modalNodeId": "modal-a"}},
            {"id": "open-b", "type": "openModal", "params": {"modalNodeId": "modal-b"}},
        ]
    )
    close_top = load_actions([{"id": "close", "type": "closeModal"}])

    await executor.execute(open_both, node_id="page", context=make_context(runtime))
    await executor.execute(close_top, node_id="page", context=make_context(runtime))

    assert overrides.get("modal-a") == {"visibility": {"hidden": False}}
    assert overrides.get("modal-b") == {"visibility": {"hidden": True}}


@pytest.mark.asyncio
async def test_unknown_action_without_host_handler_is_a_no_op():
    runtime = FakeRuntime()
    executor, _, channel = make_executor(runtime)
    actions = load_actions([{"id": "track", "type": "trackEvent", "params": {"name": "view"}}])

    results = await executor.execute(actions, node_id="page", context=make_context(runtime))

    assert results == {"track": None}
    assert channel.reported == []
