from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from leadhub.context import get_correlation_id
from leadhub.funnel.models import NotificationIntent
from leadhub.otel import get_tracer


logger = logging.getLogger("leadhub.funnel")
tracer = get_tracer("leadhub.funnel.notifications")


@dataclass(slots=True)
class Notification:
    intent_type: str
    recipient: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    async def dispatch(self, notification: Notification) -> None: ...


class OutboxNotificationDispatcher:
    """Queues notifications as ``notification_intents`` rows for a mailer to drain."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _write(self, notification: Notification) -> None:
        with tracer.start_as_current_span("leadhub.notifications.enqueue") as span:
            span.set_attribute("intent_type", notification.intent_type)
            span.set_attribute("entity_id", notification.entity_id)
            payload = dict(notification.payload)
            payload["correlation_id"] = get_correlation_id()
            with self._session_factory() as session:
                session.add(
                    NotificationIntent(
                        intent_type=notification.intent_type,
                        recipient=notification.recipient,
                        entity_type=notification.entity_type,
                        entity_id=uuid.UUID(notification.entity_id),
                        payload_json=json.dumps(payload, default=str),
                        status="Queued",
                    )
                )
                session.commit()

    async def dispatch(self, notification: Notification) -> None:
        await asyncio.to_thread(self._write, notification)
        logger.info(
            "notification.queued",
            extra={"entity_type": notification.entity_type, "entity_id": notification.entity_id, "event_type": notification.intent_type},
        )
