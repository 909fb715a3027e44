from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from leadhub.errors import LeadHubError
from leadhub.funnel.lifecycle import EntityType
from leadhub.funnel.models import utcnow
from leadhub.funnel.store import EntityRef, EntityStore, ListFilter, Pagination
from leadhub.funnel.view import LocalView
from leadhub.metrics import observe_poll_divergences
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import AccessPolicy
from leadhub.sync.channel import SyncEvent, SyncEventType


logger = logging.getLogger("leadhub.sync")

_PAGE_SIZE = 500


class ScopePoller:
    """Re-fetches a caller's scope and reports where a local view diverges.

    Emits ``updated`` for records that differ from (or are missing in) the
    view and ``deleted`` for view records the store no longer returns.
    Polling an unchanged store emits nothing, so repeated polls converge.
    """

    def __init__(
        self,
        store: EntityStore,
        policy: AccessPolicy,
        identity: CallerIdentity,
        view: LocalView,
        emit: Callable[[SyncEvent], Any],
        *,
        interval_seconds: float = 30.0,
        entity_types: Sequence[str] = (EntityType.LEAD.value, EntityType.INQUIRY.value),
        origin: str = "poll",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._store = store
        self._policy = policy
        self._identity = identity
        self._view = view
        self._emit = emit
        self._interval_seconds = interval_seconds
        self._entity_types = tuple(entity_types)
        self._origin = origin
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _fetch(self, entity_type: str) -> list[dict[str, Any]]:
        scope = self._policy.visibility_filter(self._identity)
        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._store.list(entity_type, ListFilter(scope=scope), Pagination(offset=offset, limit=_PAGE_SIZE))
            records.extend(page.items)
            if not page.has_more or not page.items:
                return records
            offset += len(page.items)

    async def poll_once(self) -> int:
        divergent = 0
        for entity_type in self._entity_types:
            server_records = await self._fetch(entity_type)
            seen: set[EntityRef] = set()
            type_divergent = 0
            for record in server_records:
                ref = EntityRef(entity_type, str(record["id"]))
                seen.add(ref)
                if self._view.get(ref) == record:
                    continue
                type_divergent += 1
                self._emit(
                    SyncEvent(
                        type=SyncEventType.UPDATED,
                        ref=ref,
                        updated_at=record["updated_at"],
                        payload=record,
                        origin=self._origin,
                    )
                )
            for ref in self._view.refs(entity_type):
                if ref in seen:
                    continue
                type_divergent += 1
                self._emit(SyncEvent(type=SyncEventType.DELETED, ref=ref, updated_at=self._clock(), origin=self._origin))
            observe_poll_divergences(entity_type, type_divergent)
            divergent += type_divergent

        if divergent:
            logger.info("sync.poll_diverged", extra={"divergent_count": divergent})
        return divergent

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except LeadHubError as exc:
                logger.warning("sync.poll_failed", extra={"outcome": exc.code, "error": exc.message})
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
