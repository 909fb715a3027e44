from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from threading import Lock
from typing import Any

from leadhub.funnel.store import EntityRef
from leadhub.metrics import observe_sync_event


logger = logging.getLogger("leadhub.sync")


class SyncEventType(StrEnum):
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class SyncEvent:
    type: SyncEventType
    ref: EntityRef
    updated_at: datetime
    payload: dict[str, Any] | None = None
    origin: str | None = None


SyncHandler = Callable[[SyncEvent], None]


@dataclass(slots=True)
class _Subscription:
    handler: SyncHandler
    last_seen: dict[EntityRef, datetime] = field(default_factory=dict)


class SyncChannel:
    """Process-local publish/subscribe channel for record changes.

    Per subscriber and per ref, events arrive in non-decreasing ``updated_at``
    order; an event older than the last one delivered for that ref is dropped
    for that subscriber. Refs are not ordered relative to each other. A
    deleted event clears the ordering state kept for its ref.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def subscribe(self, handler: SyncHandler) -> Callable[[], None]:
        with self._lock:
            subscription_id = next(self._ids)
            self._subscriptions[subscription_id] = _Subscription(handler=handler)

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(subscription_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: SyncEvent) -> int:
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        observe_sync_event(event_type=event.type.value, origin=event.origin or "unknown")
        delivered = 0
        for subscription in subscriptions:
            with self._lock:
                last_seen = subscription.last_seen.get(event.ref)
                if last_seen is not None and event.updated_at < last_seen:
                    continue
                if event.type is SyncEventType.DELETED:
                    subscription.last_seen.pop(event.ref, None)
                else:
                    subscription.last_seen[event.ref] = event.updated_at
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.exception(
                    "sync.handler_failed",
                    extra={
                        "entity_type": event.ref.entity_type,
                        "entity_id": event.ref.id,
                        "event_type": event.type.value,
                        "error": str(exc),
                    },
                )
                continue
            delivered += 1

        logger.debug(
            "sync.published",
            extra={
                "entity_type": event.ref.entity_type,
                "entity_id": event.ref.id,
                "event_type": event.type.value,
                "subscriber_count": delivered,
            },
        )
        return delivered
