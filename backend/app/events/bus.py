"""Outbound domain events published over Redis pub/sub.

Each event is published on the channel named after its type with the JSON
envelope ``{"event_type", "data", "timestamp"}``. Publication never fails the
caller: broker errors are logged and dropped.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis
from flask import Flask, current_app

from ..utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)

EXTENSION_KEY = "event_publisher"


def build_envelope(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event_type": event_type, "data": data, "timestamp": isoformat(utcnow())}


class EventPublisher:
    """Fire-and-forget publisher around an optional Redis client."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis | None:
        return self._client

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self._client is None:
            logger.debug("No event bus configured, dropping %s", event_type)
            return

        message = json.dumps(build_envelope(event_type, data), default=str)
        try:
            self._client.publish(event_type, message)
        except redis.RedisError:
            logger.warning("Failed to publish %s", event_type, exc_info=True)


class PendingEvents:
    """Events raised inside a transaction, released once it commits."""

    def __init__(self) -> None:
        self._events: list[tuple[str, dict[str, Any]]] = []

    def add(self, event_type: str, data: dict[str, Any]) -> None:
        self._events.append((event_type, data))

    def __len__(self) -> int:
        return len(self._events)

    def flush(self, publisher: EventPublisher) -> None:
        events, self._events = self._events, []
        for event_type, data in events:
            publisher.publish(event_type, data)


def _connect(url: str) -> redis.Redis | None:
    client = redis.Redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Event bus at %s is unreachable, events will be dropped: %s", url, exc)
        return None
    return client


def init_event_bus(app: Flask) -> EventPublisher:
    """Create the application's publisher, connecting to Redis when enabled."""

    client = None
    url = (app.config.get("EVENT_BUS_URL") or "").strip()
    if app.config.get("ENABLE_EVENT_BUS", True) and url:
        client = _connect(url)
        if client is not None:
            app.logger.info("Publishing workflow events to %s", url)

    publisher = EventPublisher(client)
    app.extensions[EXTENSION_KEY] = publisher
    return publisher


def get_publisher() -> EventPublisher:
    publisher = current_app.extensions.get(EXTENSION_KEY)
    if publisher is None:
        publisher = EventPublisher()
        current_app.extensions[EXTENSION_KEY] = publisher
    return publisher
