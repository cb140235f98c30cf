"""Role change events and the publisher seam.

Delivery is fire-and-forget: subscribers must tolerate at-most-once
delivery and a failing subscriber never affects the operation that
produced the event.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Callable, Protocol

from role_authz.core.logging import get_logger
from role_authz.models.base import utcnow

logger = get_logger(__name__)


class RoleEventType(str, PyEnum):
    """Role change notifications"""

    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLES_SYNCED = "roles_synced"
    ROLES_CHANGED = "roles_changed"  # Per-user cache invalidation


@dataclass(frozen=True)
class RoleEvent:
    type: RoleEventType
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class EventPublisher(Protocol):
    def publish(self, event: RoleEvent) -> None: ...


class NullEventPublisher:
    """Publisher that drops every event"""

    def publish(self, event: RoleEvent) -> None:
        pass


Subscriber = Callable[[RoleEvent], None]


class InMemoryEventBus:
    """
    In-process pub/sub for role events.

    Subscribers are called synchronously in subscription order. Used for
    cache invalidation and live updates inside one process.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: RoleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug("Publishing role event", event_type=event.type.value, payload=event.payload)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Role event subscriber failed", event_type=event.type.value)
