"""Publish/subscribe channel for farm observability events."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

WORKER_REGISTERED = "worker-registered"
WORKER_REMOVED = "worker-removed"
WORKER_UNHEALTHY = "worker-unhealthy"
WORKER_RECOVERED = "worker-recovered"
CLUSTER_CREATED = "cluster-created"
TASK_SUBMITTED = "task-submitted"
TASK_ASSIGNED = "task-assigned"
TASK_COMPLETED = "task-completed"
TASK_FAILED = "task-failed"
TASK_RETRY_SCHEDULED = "task-retry-scheduled"
TASK_CANCELLED = "task-cancelled"
CIRCUIT_OPENED = "circuit-opened"
CIRCUIT_CLOSED = "circuit-closed"
CLUSTER_SCALED_UP = "cluster-scaled-up"
CLUSTER_SCALED_DOWN = "cluster-scaled-down"
QUALITY_FEEDBACK = "quality-feedback"

WILDCARD = "*"


@dataclass(frozen=True)
class FarmEvent:
    """A single published event."""

    name: str
    entity_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[FarmEvent], None]


class EventBus:
    """Delivers events to subscribers synchronously, in subscription order.

    A failing handler is logged and skipped; it never breaks the publisher.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._history: list[FarmEvent] = []
        self._history_size = history_size

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for an event name (or ``*``). Returns an unsubscribe callable."""
        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return unsubscribe

    def publish(self, name: str, entity_id: str, **data: Any) -> FarmEvent:
        """Publish an event to its subscribers and to wildcard subscribers."""
        event = FarmEvent(name=name, entity_id=entity_id, data=data)
        self._history.append(event)
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]

        for handler in [*self._handlers.get(name, []), *self._handlers.get(WILDCARD, [])]:
            try:
                handler(event)
            except Exception as e:
                logger.error("event_handler_failed", event_name=name, error=str(e))
        return event

    def recent(self, name: str | None = None) -> list[FarmEvent]:
        """Return recently published events, optionally filtered by name."""
        if name is None:
            return list(self._history)
        return [e for e in self._history if e.name == name]
