from __future__ import annotations

import functools
import json
import logging
from typing import Any, Protocol

from google.cloud import pubsub_v1

from .errors import ConfigError, RuntimeEngineError

logger = logging.getLogger(__name__)


class ErrorChannel(Protocol):
    def report(self, error: RuntimeEngineError, *, node_id: str | None = None, key: str | None = None) -> None:
        ...


class LoggingErrorChannel:
    """Reports runtime errors through the standard logger and keeps them for inspection."""

    def __init__(self) -> None:
        self.reported: list[dict[str, Any]] = []

    def report(self, error: RuntimeEngineError, *, node_id: str | None = None, key: str | None = None) -> None:
        payload = {**error.to_dict(), "node_id": node_id, "requirement_key": key}
        self.reported.append(payload)
        level = logging.ERROR if isinstance(error, ConfigError) else logging.WARNING
        logger.log(level, "Runtime error reported to host", extra={"error_payload": payload})


class PubSubErrorChannel:
    """Publishes runtime errors to a Google Cloud Pub/Sub topic for the hosting shell.

    Reports arrive from fetch callbacks on the event loop, so publishing never
    waits for the broker; the outcome is logged from the publisher's callback.
    """

    def __init__(self, project_id: str, *, topic_id: str = "render-errors", publisher: Any = None) -> None:
        self.project_id = project_id
        self.topic_id = topic_id
        self.publisher = publisher or pubsub_v1.PublisherClient()

    def publish(
        self,
        message: dict[str, Any],
        *,
        attributes: dict[str, str] | None = None,
    ) -> Any:
        """Queue a message on the error topic without waiting for it to be sent.

        Args:
            message: The message payload as a dictionary
            attributes: Optional message attributes

        Returns:
            The Pub/Sub publish future
        """
        topic_path = self.publisher.topic_path(self.project_id, self.topic_id)
        data = json.dumps(message, default=str).encode("utf-8")
        future = self.publisher.publish(topic_path, data, **(attributes or {}))
        future.add_done_callback(functools.partial(self._log_outcome, attributes=attributes))
        return future

    def _log_outcome(self, future: Any, *, attributes: dict[str, str] | None) -> None:
        try:
            message_id = future.result()
        except Exception:
            logger.exception("Failed to publish runtime error", extra={"topic_id": self.topic_id, "attributes": attributes})
            return
        logger.info(
            "Published runtime error to Pub/Sub",
            extra={"topic_id": self.topic_id, "message_id": message_id, "attributes": attributes},
        )

    def report(self, error: RuntimeEngineError, *, node_id: str | None = None, key: str | None = None) -> None:
        message = {**error.to_dict(), "node_id": node_id, "requirement_key": key}
        attributes = {"error_type": type(error).__name__}
        if node_id:
            attributes["node_id"] = node_id
        try:
            self.publish(message, attributes=attributes)
        except Exception:
            # The error channel must never break rendering
            logger.exception("Failed to publish runtime error", extra={"node_id": node_id})


__all__ = ["ErrorChannel", "LoggingErrorChannel", "PubSubErrorChannel"]
