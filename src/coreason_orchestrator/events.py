# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Observer-style notifications for lifecycle events.

Subscribers are invoked in subscription order, one event at a time, so events
published for one resource are observed in the order they were published.
No ordering is promised across concurrent publishers.
"""

import inspect
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger
from pydantic import BaseModel, Field

from coreason_orchestrator.models.common import utcnow


class EventType(str, Enum):
    SANDBOX_CREATED = "sandbox.created"
    SANDBOX_RECLAIMED = "sandbox.reclaimed"
    DEPLOYMENT_STATUS_CHANGED = "deployment.status_changed"
    RESOURCE_CREATED = "resource.created"
    RESOURCE_FAILED = "resource.failed"
    RESOURCE_SCALED = "resource.scaled"
    RESOURCE_DESTROYED = "resource.destroyed"
    BACKUP_CREATED = "backup.created"
    HEALTH_ALERT = "health.alert"
    TENANT_CREATED = "tenant.created"
    TENANT_REMOVED = "tenant.removed"
    TENANT_MIGRATED = "tenant.migrated"
    TASK_SCHEDULED = "task.scheduled"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"


class Event(BaseModel):
    type: EventType
    resource_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


Subscriber = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Dispatches events to registered subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []

    def subscribe(
        self, callback: Subscriber, event_types: Iterable[EventType] | None = None
    ) -> Callable[[], None]:
        """Register a subscriber.

        Args:
            callback: Sync or async callable receiving each matching event.
            event_types: Restrict delivery to these types. ``None`` means all.

        Returns:
            Callable[[], None]: Removes the subscription when called.
        """
        entry = (callback, frozenset(event_types) if event_types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        """Deliver ``event`` to every matching subscriber.

        A failing subscriber is logged and skipped; it never affects the
        publisher or the remaining subscribers.
        """
        for callback, types in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber failed for {event.type.value}: {e}")

    async def emit(self, event_type: EventType, resource_id: str, **payload: Any) -> None:
        await self.publish(Event(type=event_type, resource_id=resource_id, payload=payload))
