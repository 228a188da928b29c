"""Lifecycle event publishing.

The real-time transport is an external collaborator; the patrol services only
call ``publish(topic, event)`` and never look at live connections. Publishing
is best-effort: a failing publisher is logged and the triggering operation
still succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

SESSION_STARTED = "session:started"
CHECKPOINT_RECORDED = "checkpoint:recorded"
SESSION_FINALIZED = "session:finalized"
SESSION_CANCELLED = "session:cancelled"
TRAJECTORY_POINT = "trajectory:point"


def session_topic(session_id: object) -> str:
    return f"patrol:{session_id}"


class EventPublisher(Protocol):
    def publish(self, topic: str, event: dict[str, Any]) -> None: ...


class CompositePublisher:
    """Fan an event out to several publishers; one failure does not stop the rest."""

    def __init__(self, publishers: Sequence[EventPublisher]) -> None:
        self._publishers = list(publishers)

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        for publisher in self._publishers:
            try:
                publisher.publish(topic, event)
            except Exception:  # noqa: BLE001
                logger.exception("Publisher %s failed for topic %s", type(publisher).__name__, topic)


class WebhookPublisher:
    """POST every event to an external broker endpoint."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        try:
            res = self._client.post(self._url, json={"topic": topic, "event": event})
        except httpx.HTTPError:
            logger.warning("Event webhook unreachable for topic %s", topic, exc_info=True)
            return
        if res.status_code >= 400:
            logger.warning("Event webhook rejected %s on %s: HTTP %s", event.get("type"), topic, res.status_code)

    def close(self) -> None:
        self._client.close()


def publish_safely(publisher: EventPublisher, topic: str, event: dict[str, Any]) -> None:
    try:
        publisher.publish(topic, event)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to publish %s on %s", event.get("type"), topic)
