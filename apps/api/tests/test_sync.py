from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from leadhub.errors import Conflict
from leadhub.funnel.store import EntityRef, InMemoryEntityStore
from leadhub.funnel.view import LocalView
from leadhub.platform.security import AccessPolicy
from leadhub.sync.channel import SyncChannel, SyncEvent, SyncEventType
from leadhub.sync.poller import ScopePoller
from leadhub.sync.surface import DashboardSurface

from conftest import FakeClock, brand_admin, super_admin


T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _event(ref: EntityRef, minutes: int, status: str = "new", brand_id: str = "brand-a") -> SyncEvent:
    updated_at = T0 + timedelta(minutes=minutes)
    return SyncEvent(
        type=SyncEventType.UPDATED,
        ref=ref,
        updated_at=updated_at,
        payload={"id": ref.id, "brand_id": brand_id, "status": status, "updated_at": updated_at},
    )


def _lead_values(brand_id: str = "brand-a"):
    return {"brand_id": brand_id, "customer_name": "Ada", "customer_email": "ada@example.com"}


def test_subscribers_get_events_in_order_and_stale_events_are_dropped() -> None:
    channel = SyncChannel()
    received: list[SyncEvent] = []
    channel.subscribe(received.append)
    ref = EntityRef("lead", "lead-1")

    assert channel.publish(_event(ref, 1, "contacted")) == 1
    assert channel.publish(_event(ref, 3, "qualified")) == 1
    assert channel.publish(_event(ref, 2, "contacted")) == 0
    assert channel.publish(_event(EntityRef("lead", "lead-2"), 0)) == 1

    assert [event.payload["status"] for event in received] == ["contacted", "qualified", "new"]


def test_unsubscribe_stops_delivery_and_failing_handlers_are_isolated() -> None:
    channel = SyncChannel()
    received: list[SyncEvent] = []

    def broken(event: SyncEvent) -> None:
        raise RuntimeError("render failed")

    channel.subscribe(broken)
    unsubscribe = channel.subscribe(received.append)
    ref = EntityRef("lead", "lead-1")

    assert channel.publish(_event(ref, 1)) == 1
    unsubscribe()
    unsubscribe()
    assert channel.subscriber_count == 1
    assert channel.publish(_event(ref, 2)) == 0
    assert len(received) == 1


def test_update_on_one_surface_reaches_the_other(clock: FakeClock) -> None:
    store = InMemoryEntityStore(clock=clock)
    policy = AccessPolicy()
    channel = SyncChannel()
    lead = asyncio.run(store.create("lead", _lead_values()))
    ref = EntityRef("lead", lead["id"])
    first = DashboardSurface("surface-1", super_admin(), store, policy, channel, clock=clock)
    second = DashboardSurface("surface-2", brand_admin("brand-a"), store, policy, channel, clock=clock)
    seen_by_second: list[SyncEvent] = []
    second.on_event(seen_by_second.append)

    async def scenario():
        await first.start()
        await second.start()
        seen_by_second.clear()
        clock.advance(minutes=1)
        await first.update_status(ref, "contacted")
        await first.stop()
        await second.stop()

    asyncio.run(scenario())

    assert [event.type for event in seen_by_second] == [SyncEventType.UPDATED]
    assert seen_by_second[0].ref == ref
    assert seen_by_second[0].payload["status"] == "contacted"
    assert second.view.get(ref)["status"] == "contacted"
    assert first.view.get(ref)["status"] == "contacted"


def test_poll_catches_changes_made_outside_the_channel(clock: FakeClock) -> None:
    store = InMemoryEntityStore(clock=clock)
    lead = asyncio.run(store.create("lead", _lead_values()))
    ref = EntityRef("lead", lead["id"])
    surface = DashboardSurface("surface-1", brand_admin("brand-a"), store, AccessPolicy(), SyncChannel(), clock=clock)
    received: list[SyncEvent] = []
    surface.on_event(received.append)

    async def scenario():
        assert await surface.poller.poll_once() == 1
        assert await surface.poller.poll_once() == 0
        clock.advance(minutes=1)
        await store.update(ref, {"status": "qualified", "updated_at": clock.now}, expected_version=1)
        assert await surface.poller.poll_once() == 1
        await store.delete(ref)
        assert await surface.poller.poll_once() == 1
        assert await surface.poller.poll_once() == 0

    asyncio.run(scenario())

    assert [event.type for event in received] == [SyncEventType.UPDATED, SyncEventType.UPDATED, SyncEventType.DELETED]
    assert received[1].payload["status"] == "qualified"
    assert ref not in surface.view


def test_poller_only_reports_the_callers_scope(clock: FakeClock) -> None:
    store = InMemoryEntityStore(clock=clock)
    asyncio.run(store.create("lead", _lead_values("brand-a")))
    asyncio.run(store.create("lead", _lead_values("brand-b")))
    view = LocalView()
    emitted: list[SyncEvent] = []
    poller = ScopePoller(store, AccessPolicy(), brand_admin("brand-b"), view, emitted.append, entity_types=("lead",))

    assert asyncio.run(poller.poll_once()) == 1
    assert emitted[0].payload["brand_id"] == "brand-b"


def test_surface_ignores_out_of_scope_and_stale_events() -> None:
    surface = DashboardSurface("surface-1", brand_admin("brand-a"), InMemoryEntityStore(), AccessPolicy(), SyncChannel())
    ref = EntityRef("lead", "lead-1")

    surface.apply_event(_event(EntityRef("lead", "lead-9"), 1, brand_id="brand-b"))
    surface.apply_event(_event(ref, 5, "qualified"))
    surface.apply_event(_event(ref, 4, "contacted"))

    assert len(surface.view) == 1
    assert surface.view.get(ref)["status"] == "qualified"


def test_deleted_ref_starts_a_fresh_ordering_history() -> None:
    channel = SyncChannel()
    received: list[SyncEvent] = []
    channel.subscribe(received.append)
    ref = EntityRef("lead", "lead-1")
    deleted = SyncEvent(type=SyncEventType.DELETED, ref=ref, updated_at=T0 + timedelta(minutes=6))

    assert channel.publish(_event(ref, 5, "qualified")) == 1
    assert channel.publish(deleted) == 1
    assert channel.publish(_event(ref, 1, "new")) == 1

    assert [event.type for event in received] == [SyncEventType.UPDATED, SyncEventType.DELETED, SyncEventType.UPDATED]

    channel.publish(SyncEvent(type=SyncEventType.DELETED, ref=ref, updated_at=T0 + timedelta(minutes=7)))

    assert [subscription.last_seen for subscription in channel._subscriptions.values()] == [{}]


class SlowStore(InMemoryEntityStore):
    """Answers status updates after a per-target delay."""

    delays = {"contacted": 0.01, "lost": 0.05}

    async def update(self, ref, changes, expected_version):
        await asyncio.sleep(self.delays.get(changes.get("status"), 0))
        return await super().update(ref, changes, expected_version)


def test_losing_surface_keeps_the_winning_record_after_conflict(clock: FakeClock) -> None:
    store = SlowStore(clock=clock)
    policy = AccessPolicy()
    channel = SyncChannel()
    lead = asyncio.run(store.create("lead", _lead_values()))
    ref = EntityRef("lead", lead["id"])
    first = DashboardSurface("surface-1", super_admin(), store, policy, channel, clock=clock)
    second = DashboardSurface("surface-2", super_admin(), store, policy, channel, clock=clock)

    async def scenario():
        await first.start()
        await second.start()
        clock.advance(minutes=1)
        results = await asyncio.gather(
            first.update_status(ref, "contacted"),
            second.update_status(ref, "lost"),
            return_exceptions=True,
        )
        await first.stop()
        await second.stop()
        return results

    won, lost = asyncio.run(scenario())
    server = asyncio.run(store.get(ref))

    assert won["status"] == "contacted"
    assert isinstance(lost, Conflict)
    assert server["status"] == "contacted"
    assert second.view.get(ref)["status"] == server["status"]
    assert second.view.get(ref)["row_version"] == server["row_version"]
    assert first.view.get(ref)["status"] == "contacted"
