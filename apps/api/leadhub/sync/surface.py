from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from leadhub.context import reset_surface_id, set_surface_id
from leadhub.funnel.coordinator import MutationCoordinator
from leadhub.funnel.models import utcnow
from leadhub.funnel.notifications import NotificationDispatcher
from leadhub.funnel.store import EntityRef, EntityStore
from leadhub.funnel.view import LocalView
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import AccessPolicy
from leadhub.sync.channel import SyncChannel, SyncEvent, SyncEventType, SyncHandler
from leadhub.sync.poller import ScopePoller


logger = logging.getLogger("leadhub.sync")


class DashboardSurface:
    """One open dashboard: a local view, its channel subscription and a poller.

    Events are applied to the view only when they fall inside the caller's
    scope and are not older than the record the view already holds.
    """

    def __init__(
        self,
        surface_id: str,
        identity: CallerIdentity,
        store: EntityStore,
        policy: AccessPolicy,
        channel: SyncChannel,
        *,
        poll_interval_seconds: float = 30.0,
        mutation_timeout_seconds: float = 10.0,
        notifier: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.surface_id = surface_id
        self.identity = identity
        self.view = LocalView()
        self._policy = policy
        self._channel = channel
        self._listeners: list[SyncHandler] = []
        self._unsubscribe: Callable[[], None] | None = None
        self.coordinator = MutationCoordinator(
            store,
            policy,
            view=self.view,
            channel=channel,
            notifier=notifier,
            timeout_seconds=mutation_timeout_seconds,
            origin=surface_id,
            clock=clock,
        )
        self.poller = ScopePoller(
            store,
            policy,
            identity,
            self.view,
            self.apply_event,
            interval_seconds=poll_interval_seconds,
            clock=clock,
        )

    def on_event(self, handler: SyncHandler) -> Callable[[], None]:
        self._listeners.append(handler)

        def remove() -> None:
            if handler in self._listeners:
                self._listeners.remove(handler)

        return remove

    def apply_event(self, event: SyncEvent) -> None:
        if event.type == SyncEventType.DELETED:
            if event.ref not in self.view:
                return
            self.view.remove(event.ref)
        else:
            payload = event.payload or {}
            if not self._policy.visibility_filter(self.identity)(payload):
                return
            current = self.view.get(event.ref)
            if current is not None and current.get("updated_at") is not None and current["updated_at"] > event.updated_at:
                return
            self.view.put(event.ref, payload)

        token = set_surface_id(self.surface_id)
        try:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as exc:
                    logger.exception(
                        "surface.listener_failed",
                        extra={"entity_id": event.ref.id, "event_type": event.type.value, "error": str(exc)},
                    )
        finally:
            reset_surface_id(token)

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._channel.subscribe(self.apply_event)
        await self.poller.poll_once()
        self.poller.start()
        self._log_lifecycle("surface.started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.poller.stop()
        await self.coordinator.drain_notifications()
        self._log_lifecycle("surface.stopped")

    def _log_lifecycle(self, message: str) -> None:
        token = set_surface_id(self.surface_id)
        try:
            logger.info(message)
        finally:
            reset_surface_id(token)

    async def update_status(self, ref: EntityRef, target: Any) -> dict[str, Any]:
        return await self.coordinator.update_status(self.identity, ref, target)

    async def update_field(self, ref: EntityRef, field: str, value: Any) -> dict[str, Any]:
        return await self.coordinator.update_field(self.identity, ref, field, value)
