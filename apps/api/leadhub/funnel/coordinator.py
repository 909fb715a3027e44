from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from leadhub import audit
from leadhub.errors import Conflict, InternalError, LeadHubError, UpstreamUnavailable, ValidationFailed
from leadhub.funnel import lifecycle
from leadhub.funnel.lifecycle import EntityType
from leadhub.funnel.models import utcnow
from leadhub.funnel.notifications import Notification, NotificationDispatcher
from leadhub.funnel.store import EntityRef, EntityStore
from leadhub.funnel.view import LocalView, Snapshot
from leadhub.metrics import observe_mutation, observe_mutation_rollback, observe_notification_failure
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import AccessPolicy, Action
from leadhub.sync.channel import SyncChannel, SyncEvent, SyncEventType


logger = logging.getLogger("leadhub.funnel")

T = TypeVar("T")


class MutationCoordinator:
    """Optimistic, rollback-safe mutations with one in-flight call per ref.

    With a ``view`` the coordinator serves one dashboard surface and keeps its
    local records current. Without one every call works on a throwaway view
    seeded from the store, which is how the HTTP API uses it.

    Every call follows the same sequence: snapshot the view, apply the intent
    optimistically, authorize and validate, persist with the snapshot's
    ``row_version``, then reconcile the view with the stored record. Any
    failure restores the snapshot before the error propagates.
    """

    def __init__(
        self,
        store: EntityStore,
        policy: AccessPolicy,
        *,
        view: LocalView | None = None,
        channel: SyncChannel | None = None,
        notifier: NotificationDispatcher | None = None,
        timeout_seconds: float = 10.0,
        origin: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._policy = policy
        self._view = view
        self._channel = channel
        self._notifier = notifier
        self._timeout_seconds = timeout_seconds
        self._origin = origin
        self._clock = clock
        self._in_flight: set[EntityRef] = set()
        self._pending_notifications: set[asyncio.Task[None]] = set()

    @property
    def view(self) -> LocalView | None:
        return self._view

    def is_in_flight(self, ref: EntityRef) -> bool:
        return ref in self._in_flight

    async def update_status(self, identity: CallerIdentity, ref: EntityRef, target: Any) -> dict[str, Any]:
        async def plan(view: LocalView, baseline: dict[str, Any]) -> dict[str, Any]:
            view.apply(ref, {"status": str(target)})
            self._policy.require(identity, Action.UPDATE, baseline, entity_type=ref.entity_type)
            changes = lifecycle.transition(ref.entity_type, baseline, target, self._clock())
            updated = await self._persist(self._store.update(ref, changes, baseline["row_version"]))
            self._after_change(identity, ref, "status", baseline, updated, view)
            return updated

        return await self._mutate(identity, ref, "update_status", plan)

    async def update_field(self, identity: CallerIdentity, ref: EntityRef, field: str, value: Any) -> dict[str, Any]:
        if field == "status":
            return await self.update_status(identity, ref, value)

        async def plan(view: LocalView, baseline: dict[str, Any]) -> dict[str, Any]:
            view.apply(ref, {field: value})
            self._policy.require(identity, Action.UPDATE, baseline, entity_type=ref.entity_type)
            changes = lifecycle.field_changes(ref.entity_type, baseline, field, value, self._clock())
            updated = await self._persist(self._store.update(ref, changes, baseline["row_version"]))
            self._after_change(identity, ref, field, baseline, updated, view)
            return updated

        return await self._mutate(identity, ref, "update_field", plan)

    async def mark_read(self, identity: CallerIdentity, ref: EntityRef) -> dict[str, Any]:
        self._require_inquiry(ref)

        async def plan(view: LocalView, baseline: dict[str, Any]) -> dict[str, Any]:
            self._policy.require(identity, Action.UPDATE, baseline, entity_type=ref.entity_type)
            changes = lifecycle.mark_read_changes(baseline, self._clock())
            if not changes:
                return baseline
            view.apply(ref, changes)
            updated = await self._persist(self._store.update(ref, changes, baseline["row_version"]))
            self._after_change(identity, ref, "read", baseline, updated, view)
            return updated

        return await self._mutate(identity, ref, "mark_read", plan)

    async def post_reply(
        self,
        identity: CallerIdentity,
        ref: EntityRef,
        message: str,
        *,
        is_internal_note: bool = False,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Store a reply and return ``(inquiry, reply)``.

        A customer-facing reply moves the inquiry to ``replied`` in the same
        store transaction; internal notes leave the inquiry untouched.
        """
        self._require_inquiry(ref)

        async def plan(view: LocalView, baseline: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
            self._policy.require(identity, Action.REPLY, baseline, entity_type=ref.entity_type)
            text = (message or "").strip()
            if not text:
                raise ValidationFailed("reply message is required", details={"field": "message"})
            changes = lifecycle.reply_changes(baseline, is_internal_note, self._clock())
            view.apply(ref, changes)
            updated, reply = await self._persist(
                self._store.add_reply(
                    ref,
                    {"admin_id": identity.user_id, "message": text, "is_internal_note": is_internal_note},
                    changes,
                    baseline["row_version"],
                )
            )
            if changes:
                self._after_change(identity, ref, "reply", baseline, updated, view)
            else:
                view.put(ref, updated)
            if not is_internal_note:
                self._notify(
                    Notification(
                        intent_type="inquiry.replied",
                        recipient=str(updated.get("customer_email") or ""),
                        entity_type=ref.entity_type,
                        entity_id=ref.id,
                        payload={"brand_id": updated.get("brand_id"), "reply_id": reply["id"], "subject": updated.get("subject")},
                    )
                )
            return updated, reply

        return await self._mutate(identity, ref, "post_reply", plan)

    async def delete(self, identity: CallerIdentity, ref: EntityRef) -> None:
        async def plan(view: LocalView, baseline: dict[str, Any]) -> None:
            view.remove(ref, optimistic=True)
            self._policy.require(identity, Action.DELETE, baseline, entity_type=ref.entity_type)
            await self._persist(self._store.delete(ref, baseline["row_version"]))
            audit.record(
                actor_user_id=identity.user_id,
                entity_type=ref.entity_type,
                entity_id=ref.id,
                action="delete",
                before=_audit_view(baseline),
                after=None,
                correlation_id=identity.correlation_id,
            )
            self._publish(SyncEvent(type=SyncEventType.DELETED, ref=ref, updated_at=self._clock(), origin=self._origin))
            return None

        await self._mutate(identity, ref, "delete", plan)

    async def drain_notifications(self) -> None:
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    @staticmethod
    def _require_inquiry(ref: EntityRef) -> None:
        if ref.entity_type != EntityType.INQUIRY:
            raise ValidationFailed("operation only applies to inquiries")

    async def _persist(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(
                f"entity store did not answer within {self._timeout_seconds}s",
                code="upstream_timeout",
            ) from exc

    async def _baseline(self, identity: CallerIdentity, view: LocalView, ref: EntityRef) -> dict[str, Any]:
        record = view.get(ref)
        if record is not None:
            return record
        record = await self._persist(self._store.get(ref))
        self._policy.require(identity, Action.READ, record, entity_type=ref.entity_type)
        view.put(ref, record)
        return record

    async def _mutate(
        self,
        identity: CallerIdentity,
        ref: EntityRef,
        operation: str,
        plan: Callable[[LocalView, dict[str, Any]], Awaitable[T]],
    ) -> T:
        if ref in self._in_flight:
            observe_mutation(entity_type=ref.entity_type, operation=operation, outcome="conflict", duration=0.0)
            raise Conflict("another mutation for this record is still in flight", code="mutation_in_flight")

        self._in_flight.add(ref)
        view = self._view if self._view is not None else LocalView()
        started = time.perf_counter()
        snapshot: Snapshot | None = None
        try:
            baseline = await self._baseline(identity, view, ref)
            snapshot = view.snapshot(ref)
            result = await plan(view, baseline)
        except asyncio.CancelledError:
            if snapshot is not None and view.rollback(snapshot):
                observe_mutation_rollback(entity_type=ref.entity_type, reason="cancelled")
            raise
        except Exception as exc:
            error = _typed_error(exc)
            # skipped when a newer confirmed record reached the view during the call
            if snapshot is not None and view.rollback(snapshot):
                observe_mutation_rollback(entity_type=ref.entity_type, reason=error.code)
            observe_mutation(
                entity_type=ref.entity_type,
                operation=operation,
                outcome=error.code,
                duration=time.perf_counter() - started,
            )
            logger.warning(
                "mutation.rolled_back",
                extra={
                    "entity_type": ref.entity_type,
                    "entity_id": ref.id,
                    "field": operation,
                    "outcome": error.code,
                    "error": error.message,
                },
            )
            if error is exc:
                raise
            raise error from exc
        finally:
            self._in_flight.discard(ref)

        observe_mutation(
            entity_type=ref.entity_type,
            operation=operation,
            outcome="ok",
            duration=time.perf_counter() - started,
        )
        return result

    def _after_change(
        self,
        identity: CallerIdentity,
        ref: EntityRef,
        field: str,
        before: dict[str, Any],
        after: dict[str, Any],
        view: LocalView,
    ) -> None:
        view.put(ref, after)
        audit.record(
            actor_user_id=identity.user_id,
            entity_type=ref.entity_type,
            entity_id=ref.id,
            action=f"update.{field}",
            before=_audit_view(before),
            after=_audit_view(after),
            correlation_id=identity.correlation_id,
        )
        logger.info(
            "mutation.applied",
            extra={
                "entity_type": ref.entity_type,
                "entity_id": ref.id,
                "field": field,
                "from_status": before.get("status"),
                "to_status": after.get("status"),
                "outcome": "ok",
            },
        )
        self._publish(
            SyncEvent(
                type=SyncEventType.UPDATED,
                ref=ref,
                updated_at=after["updated_at"],
                payload=after,
                origin=self._origin,
            )
        )

        new_status = after.get("status")
        if new_status != before.get("status") and lifecycle.is_terminal(ref.entity_type, new_status):
            self._notify(
                Notification(
                    intent_type=f"{ref.entity_type}.{new_status}",
                    recipient=str(after.get("customer_email") or ""),
                    entity_type=ref.entity_type,
                    entity_id=ref.id,
                    payload={"brand_id": after.get("brand_id"), "status": new_status},
                )
            )

    def _publish(self, event: SyncEvent) -> None:
        if self._channel is not None:
            self._channel.publish(event)

    def _notify(self, notification: Notification) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._dispatch(notification))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _dispatch(self, notification: Notification) -> None:
        assert self._notifier is not None
        try:
            await self._notifier.dispatch(notification)
        except Exception as exc:
            observe_notification_failure(notification.intent_type)
            logger.warning(
                "notification.failed",
                extra={
                    "entity_type": notification.entity_type,
                    "entity_id": notification.entity_id,
                    "event_type": notification.intent_type,
                    "error": str(exc),
                },
            )


def _typed_error(exc: Exception) -> LeadHubError:
    if isinstance(exc, LeadHubError):
        return exc
    details = {"error": str(exc)[:500], "type": type(exc).__name__}
    if isinstance(exc, (ConnectionError, OSError)):
        return UpstreamUnavailable("entity store unavailable", details=details)
    return InternalError("mutation failed", details=details)


def _audit_view(record: dict[str, Any]) -> dict[str, Any]:
    return {key: (str(value) if value is not None and not isinstance(value, (str, int, bool)) else value) for key, value in record.items()}
