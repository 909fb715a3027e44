from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from leadhub.analytics.service import AnalyticsService
from leadhub.analytics.valuation import HistoricalAverageEstimator
from leadhub.errors import Unauthorized
from leadhub.funnel.store import EntityRef, InMemoryEntityStore
from leadhub.platform.cache import TTLCache
from leadhub.platform.security import AccessPolicy
from leadhub.sync.channel import SyncChannel, SyncEvent, SyncEventType

from conftest import FakeClock, brand_admin, plain_user, super_admin


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class SlowEstimator:
    async def estimate(self, leads):
        await asyncio.sleep(5)
        return Decimal("1000")


class BrokenEstimator:
    async def estimate(self, leads):
        raise RuntimeError("valuation service returned 500")


class FixedEstimator:
    def __init__(self, amount: str) -> None:
        self.amount = Decimal(amount)
        self.calls = 0

    async def estimate(self, leads):
        self.calls += 1
        return self.amount


def _service(store=None, **kwargs) -> AnalyticsService:
    kwargs.setdefault("clock", lambda: NOW)
    return AnalyticsService(store or InMemoryEntityStore(), AccessPolicy(), TTLCache(60), **kwargs)


def _lead(brand_id: str, status: str, created_at: datetime, **extra):
    record = {
        "id": f"{brand_id}-{status}-{created_at.isoformat()}",
        "brand_id": brand_id,
        "status": status,
        "source": "contact_form",
        "estimated_value": None,
        "created_at": created_at,
        "converted_at": None,
    }
    record.update(extra)
    return record


def test_conversion_rate_over_ten_leads_with_three_converted() -> None:
    leads = [_lead("brand-a", "converted", NOW - timedelta(days=i)) for i in range(3)]
    leads += [_lead("brand-a", "new", NOW - timedelta(days=i)) for i in range(7)]

    metrics = AnalyticsService.funnel_from_records(leads, NOW)

    assert metrics.total_count == 10
    assert metrics.converted_count == 3
    assert metrics.conversion_rate == pytest.approx(0.3)
    assert metrics.status_counts["new"] == 7
    assert metrics.status_counts["lost"] == 0


def test_empty_funnel_has_zero_conversion_rate() -> None:
    metrics = AnalyticsService.funnel_from_records([], NOW)

    assert metrics.total_count == 0
    assert metrics.conversion_rate == 0.0
    assert len(metrics.monthly_trends) == 6
    assert metrics.monthly_trends[-1].month == "2026-03"


def test_today_and_month_buckets_follow_the_callers_timezone() -> None:
    # 2026-03-01 02:00 UTC is still February 28th in New York
    local_now = datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc).astimezone(ZoneInfo("America/New_York"))
    leads = [
        _lead("brand-a", "new", datetime(2026, 3, 1, 2, 0, tzinfo=timezone.utc)),
        _lead("brand-a", "new", datetime(2026, 2, 28, 6, 0, tzinfo=timezone.utc)),
        _lead("brand-a", "converted", datetime(2026, 2, 27, 4, 0, tzinfo=timezone.utc)),
    ]

    metrics = AnalyticsService.funnel_from_records(leads, local_now)

    assert metrics.today_count == 2
    assert metrics.this_month_count == 3
    february = next(trend for trend in metrics.monthly_trends if trend.month == "2026-02")
    assert february.count == 3
    assert february.converted == 1


def test_top_brands_rank_by_revenue_then_count_then_id() -> None:
    converted_at = NOW - timedelta(days=10)
    leads = [
        _lead("brand-c", "converted", NOW, converted_at=converted_at, estimated_value=Decimal("500")),
        _lead("brand-a", "converted", NOW, converted_at=converted_at, estimated_value=Decimal("500")),
        _lead("brand-a", "new", NOW - timedelta(days=1)),
        _lead("brand-b", "converted", NOW, converted_at=converted_at, estimated_value=Decimal("500")),
        _lead("brand-b", "lost", NOW - timedelta(days=2)),
        _lead("brand-d", "converted", NOW, converted_at=NOW - timedelta(days=200), estimated_value=Decimal("9000")),
    ]
    service = _service(commission_rates={"brand-a": 0.1}, default_commission_rate=0.05)

    ranked = service.rank_brands(leads, 10, NOW)

    assert [brand.brand_id for brand in ranked] == ["brand-a", "brand-b", "brand-c", "brand-d"]
    assert ranked[0].commission == Decimal("50.00")
    assert ranked[1].commission == Decimal("25.00")
    assert ranked[3].revenue == Decimal("0.00")
    assert [brand.brand_id for brand in service.rank_brands(leads, 2, NOW)] == ["brand-a", "brand-b"]


def test_pipeline_value_uses_explicit_values_when_complete() -> None:
    leads = [_lead("brand-a", "new", NOW, estimated_value=Decimal("100")), _lead("brand-a", "new", NOW, estimated_value=Decimal("50.5"))]

    value = asyncio.run(_service().estimate_pipeline_value(leads))

    assert value.method == "explicit"
    assert value.total == Decimal("150.50")


def test_pipeline_value_delegates_missing_values_to_estimator() -> None:
    leads = [_lead("brand-a", "new", NOW, estimated_value=Decimal("100")), _lead("brand-a", "contacted", NOW)]

    value = asyncio.run(_service().estimate_pipeline_value(leads, estimator=FixedEstimator("400")))

    assert value.method == "estimator"
    assert value.total == Decimal("500.00")
    assert value.estimated_count == 1


@pytest.mark.parametrize("estimator", [None, SlowEstimator(), BrokenEstimator()])
def test_pipeline_value_falls_back_to_explicit_only(estimator) -> None:
    leads = [_lead("brand-a", "new", NOW, estimated_value=Decimal("100")), _lead("brand-a", "contacted", NOW)]
    service = _service(valuation_timeout_seconds=0.05)

    value = asyncio.run(service.estimate_pipeline_value(leads, estimator=estimator))

    assert value.method == "explicit_only"
    assert value.total == Decimal("100.00")
    assert value.estimated_total == Decimal("0.00")


def test_historical_average_estimator_uses_converted_history() -> None:
    history = [
        _lead("brand-a", "converted", NOW, estimated_value=Decimal("100")),
        _lead("brand-a", "converted", NOW, estimated_value=Decimal("300")),
        _lead("brand-a", "new", NOW, estimated_value=Decimal("9999")),
    ]
    estimator = HistoricalAverageEstimator.from_history(history, default_average=Decimal("10"))

    assert estimator.average_for("brand-a") == Decimal("200.00")
    total = asyncio.run(estimator.estimate([_lead("brand-a", "new", NOW), _lead("brand-z", "new", NOW)]))
    assert total == Decimal("210.00")


def test_inquiry_stats_and_response_rate() -> None:
    inquiries = [
        {"inquiry_type": "general", "priority": "urgent", "status": "unread", "reply_count": 0, "created_at": NOW},
        {"inquiry_type": "wholesale", "priority": "normal", "status": "replied", "reply_count": 2, "created_at": NOW - timedelta(days=1)},
        {"inquiry_type": "general", "priority": "normal", "status": "closed", "reply_count": 1, "created_at": NOW - timedelta(days=20)},
        {"inquiry_type": "general", "priority": "low", "status": "read", "reply_count": 0, "created_at": NOW - timedelta(days=3)},
    ]

    stats = AnalyticsService.inquiry_stats_from_records(inquiries, NOW)

    assert stats.total_count == 4
    assert stats.unread_count == 1
    assert stats.urgent_count == 1
    assert stats.today_count == 1
    # 2026-03-10 is a Tuesday; the week starts Monday the 9th
    assert stats.this_week_count == 2
    assert stats.response_rate == pytest.approx(0.5)
    assert stats.by_type == {"general": 3, "wholesale": 1}


def test_commission_summary_totals_converted_revenue() -> None:
    leads = [
        _lead("brand-a", "converted", NOW, estimated_value=Decimal("1000")),
        _lead("brand-b", "converted", NOW, estimated_value=Decimal("200")),
        _lead("brand-b", "lost", NOW, estimated_value=Decimal("5000")),
    ]
    service = _service(commission_rates={"brand-a": 0.15}, default_commission_rate=0.1)

    summary = service.commission_from_records(leads)

    assert summary.total_revenue == Decimal("1200.00")
    assert summary.total_commission == Decimal("170.00")
    assert summary.converted_count == 2


def test_results_are_scoped_cached_and_invalidated_by_sync_events() -> None:
    clock = FakeClock(NOW)
    store = InMemoryEntityStore(clock=clock)
    channel = SyncChannel()
    service = _service(store, clock=clock)
    service.attach(channel)
    asyncio.run(store.create("lead", {"brand_id": "brand-a", "customer_name": "Ada", "customer_email": "a@example.com"}))
    asyncio.run(store.create("lead", {"brand_id": "brand-b", "customer_name": "Bo", "customer_email": "b@example.com"}))

    scoped = asyncio.run(service.compute_funnel(brand_admin("brand-a")))
    everything = asyncio.run(service.compute_funnel(super_admin()))
    assert scoped.total_count == 1
    assert everything.total_count == 2

    created = asyncio.run(store.create("lead", {"brand_id": "brand-a", "customer_name": "Cy", "customer_email": "c@example.com"}))
    assert asyncio.run(service.compute_funnel(brand_admin("brand-a"))).total_count == 1

    channel.publish(
        SyncEvent(type=SyncEventType.UPDATED, ref=EntityRef("lead", created["id"]), updated_at=NOW, payload=created)
    )
    assert asyncio.run(service.compute_funnel(brand_admin("brand-a"))).total_count == 2


class PausedListStore(InMemoryEntityStore):
    """Reads a page, then holds it until ``release`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.release = asyncio.Event()

    async def list(self, entity_type, filters, pagination):
        page = await super().list(entity_type, filters, pagination)
        await self.release.wait()
        return page


def test_result_computed_across_a_sync_event_is_not_cached() -> None:
    clock = FakeClock(NOW)
    store = PausedListStore(clock=clock)
    channel = SyncChannel()
    service = _service(store, clock=clock)
    service.attach(channel)

    async def scenario():
        created = await store.create("lead", {"brand_id": "brand-a", "customer_name": "Ada", "customer_email": "a@example.com"})
        ref = EntityRef("lead", created["id"])
        pending = asyncio.create_task(service.compute_funnel(super_admin()))
        await asyncio.sleep(0)
        converted = await store.update(ref, {"status": "converted", "converted_at": NOW}, expected_version=1)
        channel.publish(SyncEvent(type=SyncEventType.UPDATED, ref=ref, updated_at=NOW, payload=converted))
        store.release.set()
        stale = await pending
        fresh = await service.compute_funnel(super_admin())
        return stale, fresh

    stale, fresh = asyncio.run(scenario())

    assert stale.converted_count == 0
    assert fresh.converted_count == 1


def test_plain_users_cannot_read_analytics() -> None:
    with pytest.raises(Unauthorized):
        asyncio.run(_service().compute_funnel(plain_user()))


def test_empty_scope_yields_empty_metrics() -> None:
    metrics = asyncio.run(_service().compute_funnel(brand_admin()))

    assert metrics.total_count == 0
    assert metrics.conversion_rate == 0.0


def test_compute_pipeline_value_defaults_to_history_estimate() -> None:
    clock = FakeClock(NOW)
    store = InMemoryEntityStore(clock=clock)
    base = {"brand_id": "brand-a", "customer_name": "Ada", "customer_email": "a@example.com"}
    asyncio.run(store.create("lead", {**base, "status": "converted", "estimated_value": Decimal("400")}))
    asyncio.run(store.create("lead", {**base, "status": "new"}))
    asyncio.run(store.create("lead", {**base, "status": "qualified", "estimated_value": Decimal("100")}))

    value = asyncio.run(_service(store, clock=clock).compute_pipeline_value(super_admin()))

    assert value.method == "estimator"
    assert value.explicit_total == Decimal("100.00")
    assert value.estimated_total == Decimal("400.00")
    assert value.total == Decimal("500.00")
