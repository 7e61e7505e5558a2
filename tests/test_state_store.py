from osdl_runtime.state_store import LocalStateStore, NodeOverrideStore


def test_initialize_only_once():
    store = LocalStateStore()
    notified: list[str] = []
    store.subscribe(notified.append)

    assert store.initialize("counter", {"count": 0})
    store.update_state("counter", {"count": 3})
    assert not store.initialize("counter", {"count": 0})

    assert store.get_state("counter") == {"count": 3}
    assert notified == ["counter", "counter"]


def test_updates_are_shallow_merges():
    store = LocalStateStore()
    store.initialize("filters", {"category": "all", "range": {"min": 0, "max": 100}})
    updated = store.update_state("filters", {"range": {"min": 10}})

    assert updated == {"category": "all", "range": {"min": 10}}
    assert store.update_node_state("filters", {"category": "shoes"})["category"] == "shoes"


def test_returned_state_is_a_copy():
    store = LocalStateStore()
    store.initialize("tabs", {"active": "a"})
    snapshot = store.get_state("tabs")
    snapshot["active"] = "b"
    assert store.get_state("tabs") == {"active": "a"}


def test_destroy_removes_state_silently():
    store = LocalStateStore()
    store.initialize("modal", {"open": True})
    notified: list[str] = []
    store.subscribe(notified.append)

    store.destroy("modal")

    assert store.get_state("modal") is None
    assert not store.has_state("modal")
    assert notified == []


def test_unsubscribe_stops_notifications():
    store = LocalStateStore()
    notified: list[str] = []
    unsubscribe = store.subscribe(notified.append)
    unsubscribe()
    store.update_state("x", {"a": 1})
    assert notified == []
    assert store.node_ids() == ["x"]


def test_override_store_deep_merges_patches():
    overrides = NodeOverrideStore()
    notified: list[str] = []
    overrides.subscribe(notified.append)

    overrides.apply("modal", {"visibility": {"hidden": False}})
    overrides.apply("modal", {"params": {"title": "Hi"}})

    assert overrides.get("modal") == {"visibility": {"hidden": False}, "params": {"title": "Hi"}}
    overrides.clear("modal")
    assert overrides.get("modal") is None
    assert notified == ["modal", "modal", "modal"]


def test_writes_before_initialize_are_merged_over_initial_state():
    store = LocalStateStore()
    store.update_state("panel", {"count": 5})
    assert not store.has_state("panel")

    assert store.initialize("panel", {"count": 0, "label": "hello"})
    assert store.get_state("panel") == {"count": 5, "label": "hello"}
    assert not store.initialize("panel", {"count": 0, "label": "hello"})
