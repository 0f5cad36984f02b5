"""Event Bus — in-process pub/sub with typed topics.

Producers publish telemetry and lifecycle events; the optimization loop
and any requester subscribe. Payloads for known topics are validated
against the topic's model before delivery. Handlers subscribed to the
same topic run one after another in subscription order.

Supports topic wildcards: "SELF_IMPROVEMENT_*" matches
"SELF_IMPROVEMENT_COMPLETED" and "SELF_IMPROVEMENT_ERROR".
"""

from __future__ import annotations

import asyncio
import fnmatch
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel, Field, ValidationError

from devmind.events.topics import TOPIC_PAYLOADS, Topic
from devmind.exceptions import EventPayloadError
from devmind.types import new_id, utcnow

logger = structlog.get_logger()

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """A published event."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


def _topic_name(topic: Topic | str) -> str:
    return topic.value if isinstance(topic, Topic) else topic


def validate_payload(topic: Topic | str, payload: dict | BaseModel | None) -> dict[str, Any]:
    """Check a payload against its topic model and return plain data.

    Unknown topics are passed through as-is.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    data = dict(payload or {})

    try:
        model = TOPIC_PAYLOADS[Topic(_topic_name(topic))]
    except ValueError:
        return data

    try:
        return model.model_validate(data).model_dump(mode="json")
    except ValidationError as e:
        raise EventPayloadError(
            f"Invalid payload for {_topic_name(topic)}: {e.error_count()} error(s)"
        ) from e


class EventBus:
    """Async pub/sub event bus.

    Subscribe to "*" to receive everything.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: Topic | str, handler: EventHandler) -> None:
        """Subscribe to events matching a topic pattern."""
        self._subscriptions.append((_topic_name(pattern), handler))

    def unsubscribe(self, pattern: Topic | str, handler: EventHandler) -> None:
        """Remove a subscription."""
        entry = (_topic_name(pattern), handler)
        if entry in self._subscriptions:
            self._subscriptions.remove(entry)

    async def publish(
        self,
        topic: Topic | str,
        payload: dict | BaseModel | None = None,
        source: str = "",
    ) -> Event:
        """Validate and deliver an event to every matching subscriber."""
        name = _topic_name(topic)
        event = Event(topic=name, data=validate_payload(name, payload), source=source)

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]

        handlers = [
            handler
            for pattern, handler in list(self._subscriptions)
            if fnmatch.fnmatchcase(name, pattern)
        ]
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_failed",
                    topic=name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )

        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Get recent events, newest first, optionally filtered by pattern."""
        if topic_filter == "*":
            events = self._history
        else:
            events = [
                e for e in self._history
                if fnmatch.fnmatchcase(e.topic, topic_filter)
            ]
        return list(reversed(events[-limit:]))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def topics(self) -> list[str]:
        """Get all topics that have been published."""
        return list({e.topic for e in self._history})
