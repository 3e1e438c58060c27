"""Explicit event channel between the engine and whatever front end drives it.

Usage:
    bus = EventBus()

    async def on_branched(event):
        navigate_to(event.data["conversation_id"])

    bus.subscribe(CONVERSATION_BRANCHED, on_branched)
    await bus.publish(CONVERSATION_BRANCHED, {"conversation_id": "abc"})
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

CONVERSATION_CREATED = "conversation.created"
CONVERSATION_TITLE = "conversation.title"
CONVERSATION_BRANCHED = "conversation.branched"
SESSION_PHASE = "session.phase"
SESSION_FINISHED = "session.finished"
MESSAGE_UPDATED = "message.updated"
RATE_LIMIT_NOTIFICATION = "notification.rate_limit"
ATTACHMENTS_WARNING = "attachments.warning"
COMPARISON_UPDATED = "comparison.updated"
COMPARISON_FINISHED = "comparison.finished"

# Subscribers registered under this name receive every event.
ALL_EVENTS = "*"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Publish/subscribe channel scoped to one engine instance."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Register ``handler`` (sync or async) for ``event_name``."""
        self._subscribers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Deliver an event to its subscribers in registration order.

        A failing handler is logged and does not prevent delivery to the
        remaining handlers.
        """
        event = Event(name=event_name, data=data, source=source)
        handlers = list(self._subscribers.get(event_name, [])) + list(
            self._subscribers.get(ALL_EVENTS, [])
        )
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
