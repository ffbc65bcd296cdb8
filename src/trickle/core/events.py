"""
Fire-and-forget notifications about migration progress.

The engine emits ``migration.started``, ``migration.ran_slice``,
``migration.completed``, ``migration.retried`` and ``migration.throttled``
(plus ``migration.stopped``, ``migration.errored`` and ``migration.failed``)
through a :class:`NotificationBus`. Subscribers are metrics or log sinks;
they must tolerate duplicate and out-of-order delivery, since a slice can
be re-run after a crash.

Delivery is synchronous and in-process. A subscriber that raises is logged
and skipped; it never affects the migration.

Example::

    bus = NotificationBus()
    bus.subscribe("migration.*", lambda event: print(event.event_type))
    bus.emit("migration.started", migration)

Tags:
    events, notifications, pub-sub, observability, trickle
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from trickle.core.logging import get_logger
from trickle.core.timestamps import utc_now

if TYPE_CHECKING:
    from trickle.engine.models import Migration

logger = get_logger(__name__)

__all__ = [
    "Event",
    "EventHandler",
    "NotificationBus",
    "STARTED",
    "RAN_SLICE",
    "COMPLETED",
    "RETRIED",
    "THROTTLED",
    "STOPPED",
    "ERRORED",
    "FAILED",
]

STARTED = "migration.started"
RAN_SLICE = "migration.ran_slice"
COMPLETED = "migration.completed"
RETRIED = "migration.retried"
THROTTLED = "migration.throttled"
STOPPED = "migration.stopped"
ERRORED = "migration.errored"
FAILED = "migration.failed"


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass
class Event:
    """A notification about one migration.

    Attributes:
        event_type: Dot-separated type (e.g., ``migration.ran_slice``)
        migration: Snapshot of the migration when the event was emitted
        payload: Event-specific data (cursor, error kind, ...)
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    event_type: str
    migration: Migration
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def migration_id(self) -> int:
        return self.migration.id

    def matches(self, pattern: str) -> bool:
        """Check if event type matches a pattern (supports wildcards).

        Examples:
            - ``migration.*`` matches ``migration.started``
            - ``*`` matches everything
            - ``migration.completed`` matches exactly ``migration.completed``
        """
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return self.event_type.startswith(prefix + ".")
        return self.event_type == pattern


EventHandler = Callable[[Event], None]


@dataclass
class _Subscription:
    id: str
    pattern: str
    handler: EventHandler


class NotificationBus:
    """In-process synchronous event bus.

    Handlers run in subscription order on the emitting thread.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, _Subscription] = {}

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching *pattern*; returns a subscription id."""
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = _Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        self._subscriptions.pop(subscription_id, None)

    def publish(self, event: Event) -> None:
        """Deliver *event* to every matching subscriber."""
        for sub in list(self._subscriptions.values()):
            if not event.matches(sub.pattern):
                continue
            try:
                sub.handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type,
                    migration_id=event.migration_id,
                    error=str(e),
                )

    def emit(self, event_type: str, migration: Migration, **payload: Any) -> Event:
        """Build and publish an event; returns it."""
        event = Event(event_type=event_type, migration=migration, payload=payload)
        self.publish(event)
        return event

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)
