import json
import logging

from osdl_runtime.error_channel import LoggingErrorChannel, PubSubErrorChannel
from osdl_runtime.errors import ConfigError, FetchError


class FakeFuture:
    """Publish future that stays pending until the test settles it."""

    def __init__(self, message_id: str) -> None:
        self._message_id = message_id
        self._error: Exception | None = None
        self._callbacks: list = []
        self.done = False

    def add_done_callback(self, callback) -> None:
        self._callbacks.append(callback)

    def result(self) -> str:
        assert self.done, "result() would block until the broker acknowledges"
        if self._error is not None:
            raise self._error
        return self._message_id

    def settle(self, error: Exception | None = None) -> None:
        self._error = error
        self.done = True
        for callback in self._callbacks:
            callback(self)


class FakePublisher:
    def __init__(self, *, fail: bool = False) -> None:
        self.published: list[tuple[str, bytes, dict]] = []
        self.futures: list[FakeFuture] = []
        self.fail = fail

    def topic_path(self, project_id: str, topic_id: str) -> str:
        return f"projects/{project_id}/topics/{topic_id}"

    def publish(self, topic_path: str, data: bytes, **attributes) -> FakeFuture:
        if self.fail:
            raise RuntimeError("publisher unavailable")
        self.published.append((topic_path, data, attributes))
        future = FakeFuture(f"msg-{len(self.published)}")
        self.futures.append(future)
        return future


def test_logging_channel_keeps_reports():
    channel = LoggingErrorChannel()
    channel.report(ConfigError("RQL source requires 'queries'", source_type="rql"), node_id="product-card", key="product")

    assert channel.reported == [
        {
            "error": "ConfigError",
            "message": "RQL source requires 'queries'",
            "source_type": "rql",
            "node_id": "product-card",
            "requirement_key": "product",
        }
    ]


def test_pubsub_channel_publishes_without_waiting(caplog):
    publisher = FakePublisher()
    channel = PubSubErrorChannel("demo-project", publisher=publisher)

    channel.report(FetchError("userReviews is unavailable"), node_id="reviews-panel", key="reviews")

    topic_path, data, attributes = publisher.published[0]
    assert topic_path == "projects/demo-project/topics/render-errors"
    assert json.loads(data)["message"] == "userReviews is unavailable"
    assert attributes == {"error_type": "FetchError", "node_id": "reviews-panel"}
    assert not publisher.futures[0].done

    with caplog.at_level(logging.INFO, logger="osdl_runtime.error_channel"):
        publisher.futures[0].settle()
    assert "Published runtime error to Pub/Sub" in caplog.text


def test_failed_publish_is_logged_from_the_callback(caplog):
    publisher = FakePublisher()
    channel = PubSubErrorChannel("demo-project", publisher=publisher)
    channel.report(FetchError("timeout"), node_id=None, key="page")

    with caplog.at_level(logging.ERROR, logger="osdl_runtime.error_channel"):
        publisher.futures[0].settle(RuntimeError("deadline exceeded"))
    assert "Failed to publish runtime error" in caplog.text


def test_pubsub_failures_do_not_propagate():
    channel = PubSubErrorChannel("demo-project", publisher=FakePublisher(fail=True))
    channel.report(FetchError("timeout"), node_id=None, key="page")
