from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from leadhub.analytics.schemas import (
    BrandCommission,
    CommissionSummary,
    FunnelMetrics,
    InquiryStats,
    MonthlyTrend,
    PipelineValue,
    TopBrand,
)
from leadhub.analytics.valuation import HistoricalAverageEstimator, ValuationEstimator
from leadhub.funnel.lifecycle import EntityType, InquiryStatus, LeadStatus, Priority
from leadhub.funnel.models import utcnow
from leadhub.funnel.store import EntityStore, ListFilter, Pagination
from leadhub.metrics import observe_valuation_fallback
from leadhub.platform.cache import TTLCache
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import AccessPolicy, Action, VisibilityFilter
from leadhub.sync.channel import SyncChannel, SyncEvent


logger = logging.getLogger("leadhub.analytics")

_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")
_PAGE_SIZE = 500
_TREND_MONTHS = 6
_OPEN_LEAD_STATUSES = frozenset({LeadStatus.NEW.value, LeadStatus.CONTACTED.value, LeadStatus.QUALIFIED.value})


def _amount(value: Any) -> Decimal:
    if value is None:
        return _ZERO
    return Decimal(value).quantize(_CENT)


def _month_key(value: datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _previous_months(local_now: datetime, count: int) -> list[str]:
    year, month = local_now.year, local_now.month
    keys: list[str] = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(keys))


class AnalyticsService:
    """Funnel and revenue rollups over the caller's visible records.

    Results are cached per scope in the injected ``cache``; every sync event
    empties it, so the next read recomputes from the store.
    """

    def __init__(
        self,
        store: EntityStore,
        policy: AccessPolicy,
        cache: TTLCache[Any],
        *,
        estimator: ValuationEstimator | None = None,
        valuation_timeout_seconds: float = 2.0,
        default_timezone: str = "UTC",
        lookback_days: int = 90,
        commission_rates: Mapping[str, float] | None = None,
        default_commission_rate: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._policy = policy
        self._cache = cache
        self._estimator = estimator
        self._valuation_timeout_seconds = valuation_timeout_seconds
        self._default_timezone = default_timezone
        self._lookback_days = lookback_days
        self._commission_rates = {str(key): float(value) for key, value in (commission_rates or {}).items()}
        self._default_commission_rate = default_commission_rate
        self._clock = clock
        # bumped on every sync event; a result computed across a bump is not cached
        self._generation = 0

    def attach(self, channel: SyncChannel) -> Callable[[], None]:
        return channel.subscribe(self.handle_sync_event)

    def handle_sync_event(self, event: SyncEvent) -> None:
        self._generation += 1
        self._cache.invalidate()

    def commission_rate(self, brand_id: str) -> float:
        return self._commission_rates.get(str(brand_id), self._default_commission_rate)

    def _scope(self, identity: CallerIdentity, entity_type: str) -> VisibilityFilter:
        self._policy.require(identity, Action.LIST, None, entity_type=entity_type)
        return self._policy.visibility_filter(identity)

    async def _load_all(self, entity_type: str, scope: VisibilityFilter) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._store.list(entity_type, ListFilter(scope=scope), Pagination(offset=offset, limit=_PAGE_SIZE))
            records.extend(page.items)
            if not page.has_more or not page.items:
                return records
            offset += len(page.items)

    async def _cached(self, key: tuple[Any, ...], compute: Callable[[], Any]) -> Any:
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        generation = self._generation
        value = await compute()
        if generation == self._generation:
            self._cache.set(key, value)
        return value

    def _zone(self, tz: str | None) -> ZoneInfo:
        return ZoneInfo(tz or self._default_timezone)

    async def compute_funnel(
        self,
        identity: CallerIdentity,
        now: datetime | None = None,
        tz: str | None = None,
    ) -> FunnelMetrics:
        scope = self._scope(identity, EntityType.LEAD)
        zone = self._zone(tz)
        local_now = (now or self._clock()).astimezone(zone)

        async def compute() -> FunnelMetrics:
            leads = await self._load_all(EntityType.LEAD, scope)
            return self.funnel_from_records(leads, local_now)

        return await self._cached(("funnel", scope.scope_key(), str(zone), local_now.date().isoformat()), compute)

    @staticmethod
    def funnel_from_records(leads: Sequence[Mapping[str, Any]], local_now: datetime) -> FunnelMetrics:
        zone = local_now.tzinfo
        status_counts = {status.value: 0 for status in LeadStatus}
        by_source: Counter[str] = Counter()
        trend_keys = _previous_months(local_now, _TREND_MONTHS)
        trends = {key: {"count": 0, "converted": 0} for key in trend_keys}
        today_count = 0
        this_month_count = 0

        for lead in leads:
            status = str(lead.get("status"))
            status_counts[status] = status_counts.get(status, 0) + 1
            by_source[str(lead.get("source"))] += 1

            created_local = lead["created_at"].astimezone(zone)
            if created_local.date() == local_now.date():
                today_count += 1
            if (created_local.year, created_local.month) == (local_now.year, local_now.month):
                this_month_count += 1
            month_key = _month_key(created_local)
            if month_key in trends:
                trends[month_key]["count"] += 1
                if status == LeadStatus.CONVERTED:
                    trends[month_key]["converted"] += 1

        total = len(leads)
        converted = status_counts[LeadStatus.CONVERTED.value]
        return FunnelMetrics(
            total_count=total,
            status_counts=status_counts,
            converted_count=converted,
            qualified_count=status_counts[LeadStatus.QUALIFIED.value],
            conversion_rate=(converted / total) if total else 0.0,
            today_count=today_count,
            this_month_count=this_month_count,
            leads_by_source=dict(sorted(by_source.items())),
            monthly_trends=[MonthlyTrend(month=key, **trends[key]) for key in trend_keys],
        )

    async def compute_top_brands(
        self,
        identity: CallerIdentity,
        k: int = 10,
        now: datetime | None = None,
    ) -> list[TopBrand]:
        scope = self._scope(identity, EntityType.LEAD)
        reference = now or self._clock()

        async def compute() -> list[TopBrand]:
            leads = await self._load_all(EntityType.LEAD, scope)
            return self.rank_brands(leads, k, reference)

        return await self._cached(("top_brands", scope.scope_key(), k, reference.date().isoformat()), compute)

    def rank_brands(self, leads: Sequence[Mapping[str, Any]], k: int, now: datetime) -> list[TopBrand]:
        window_start = now - timedelta(days=self._lookback_days)
        revenue: dict[str, Decimal] = defaultdict(Decimal)
        converted: Counter[str] = Counter()
        lead_count: Counter[str] = Counter()

        for lead in leads:
            brand_id = str(lead["brand_id"])
            lead_count[brand_id] += 1
            converted_at = lead.get("converted_at")
            if lead.get("status") != LeadStatus.CONVERTED or converted_at is None:
                continue
            if converted_at < window_start or converted_at > now:
                continue
            revenue[brand_id] += _amount(lead.get("estimated_value"))
            converted[brand_id] += 1

        ranked = sorted(lead_count, key=lambda brand_id: (-revenue[brand_id], -lead_count[brand_id], brand_id))
        result: list[TopBrand] = []
        for brand_id in ranked[: max(k, 0)]:
            rate = self.commission_rate(brand_id)
            brand_revenue = revenue[brand_id].quantize(_CENT)
            result.append(
                TopBrand(
                    brand_id=brand_id,
                    revenue=brand_revenue,
                    commission=(brand_revenue * Decimal(str(rate))).quantize(_CENT),
                    commission_rate=rate,
                    converted_count=converted[brand_id],
                    lead_count=lead_count[brand_id],
                )
            )
        return result

    async def estimate_pipeline_value(
        self,
        leads: Sequence[Mapping[str, Any]],
        *,
        estimator: ValuationEstimator | None = None,
    ) -> PipelineValue:
        """Sum explicit values and delegate the rest to the estimator.

        Without an estimator, or when it fails or exceeds the valuation
        timeout, only explicit values are summed (``method="explicit_only"``).
        """
        estimator = estimator or self._estimator
        explicit = [lead for lead in leads if lead.get("estimated_value") is not None]
        missing = [lead for lead in leads if lead.get("estimated_value") is None]
        explicit_total = sum((_amount(lead["estimated_value"]) for lead in explicit), _ZERO)

        if not missing:
            return PipelineValue(
                total=explicit_total,
                explicit_total=explicit_total,
                estimated_total=_ZERO,
                explicit_count=len(explicit),
                estimated_count=0,
                method="explicit",
            )

        if estimator is None:
            return self._explicit_only(explicit_total, len(explicit), reason="no_estimator")

        try:
            estimated = await asyncio.wait_for(estimator.estimate(missing), timeout=self._valuation_timeout_seconds)
        except asyncio.TimeoutError:
            return self._explicit_only(explicit_total, len(explicit), reason="timeout")
        except Exception as exc:
            logger.warning("valuation.estimator_failed", extra={"error": str(exc)})
            return self._explicit_only(explicit_total, len(explicit), reason="error")

        estimated_total = _amount(estimated)
        return PipelineValue(
            total=(explicit_total + estimated_total).quantize(_CENT),
            explicit_total=explicit_total,
            estimated_total=estimated_total,
            explicit_count=len(explicit),
            estimated_count=len(missing),
            method="estimator",
        )

    @staticmethod
    def _explicit_only(explicit_total: Decimal, explicit_count: int, *, reason: str) -> PipelineValue:
        observe_valuation_fallback(reason)
        logger.info("valuation.fallback", extra={"outcome": reason})
        return PipelineValue(
            total=explicit_total,
            explicit_total=explicit_total,
            estimated_total=_ZERO,
            explicit_count=explicit_count,
            estimated_count=0,
            method="explicit_only",
        )

    async def compute_pipeline_value(self, identity: CallerIdentity) -> PipelineValue:
        scope = self._scope(identity, EntityType.LEAD)

        async def compute() -> PipelineValue:
            leads = await self._load_all(EntityType.LEAD, scope)
            open_leads = [lead for lead in leads if lead.get("status") in _OPEN_LEAD_STATUSES]
            estimator = self._estimator or HistoricalAverageEstimator.from_history(leads)
            return await self.estimate_pipeline_value(open_leads, estimator=estimator)

        return await self._cached(("pipeline", scope.scope_key()), compute)

    async def compute_inquiry_stats(
        self,
        identity: CallerIdentity,
        now: datetime | None = None,
        tz: str | None = None,
    ) -> InquiryStats:
        scope = self._scope(identity, EntityType.INQUIRY)
        zone = self._zone(tz)
        local_now = (now or self._clock()).astimezone(zone)

        async def compute() -> InquiryStats:
            inquiries = await self._load_all(EntityType.INQUIRY, scope)
            return self.inquiry_stats_from_records(inquiries, local_now)

        return await self._cached(("inquiries", scope.scope_key(), str(zone), local_now.date().isoformat()), compute)

    @staticmethod
    def inquiry_stats_from_records(inquiries: Sequence[Mapping[str, Any]], local_now: datetime) -> InquiryStats:
        zone = local_now.tzinfo
        week_start = local_now.date() - timedelta(days=local_now.weekday())
        by_type: Counter[str] = Counter()
        by_priority: Counter[str] = Counter()
        by_status = {status.value: 0 for status in InquiryStatus}
        today_count = 0
        this_week_count = 0
        answered = 0

        for inquiry in inquiries:
            by_type[str(inquiry.get("inquiry_type"))] += 1
            by_priority[str(inquiry.get("priority"))] += 1
            status = str(inquiry.get("status"))
            by_status[status] = by_status.get(status, 0) + 1
            if int(inquiry.get("reply_count") or 0) > 0:
                answered += 1
            created_local = inquiry["created_at"].astimezone(zone).date()
            if created_local == local_now.date():
                today_count += 1
            if week_start <= created_local <= local_now.date():
                this_week_count += 1

        total = len(inquiries)
        return InquiryStats(
            total_count=total,
            unread_count=by_status[InquiryStatus.UNREAD.value],
            replied_count=by_status[InquiryStatus.REPLIED.value],
            urgent_count=by_priority.get(Priority.URGENT.value, 0),
            today_count=today_count,
            this_week_count=this_week_count,
            response_rate=(answered / total) if total else 0.0,
            by_type=dict(sorted(by_type.items())),
            by_priority=dict(sorted(by_priority.items())),
            by_status=by_status,
        )

    async def compute_commission_summary(self, identity: CallerIdentity) -> CommissionSummary:
        scope = self._scope(identity, EntityType.LEAD)

        async def compute() -> CommissionSummary:
            leads = await self._load_all(EntityType.LEAD, scope)
            return self.commission_from_records(leads)

        return await self._cached(("commission", scope.scope_key()), compute)

    def commission_from_records(self, leads: Sequence[Mapping[str, Any]]) -> CommissionSummary:
        revenue: dict[str, Decimal] = defaultdict(Decimal)
        converted: Counter[str] = Counter()
        for lead in leads:
            if lead.get("status") != LeadStatus.CONVERTED:
                continue
            brand_id = str(lead["brand_id"])
            revenue[brand_id] += _amount(lead.get("estimated_value"))
            converted[brand_id] += 1

        brands: list[BrandCommission] = []
        for brand_id in sorted(converted):
            rate = self.commission_rate(brand_id)
            brand_revenue = revenue[brand_id].quantize(_CENT)
            brands.append(
                BrandCommission(
                    brand_id=brand_id,
                    revenue=brand_revenue,
                    commission_rate=rate,
                    commission=(brand_revenue * Decimal(str(rate))).quantize(_CENT),
                    converted_count=converted[brand_id],
                )
            )
        return CommissionSummary(
            total_revenue=sum((brand.revenue for brand in brands), _ZERO),
            total_commission=sum((brand.commission for brand in brands), _ZERO),
            converted_count=sum(converted.values()),
            brands=brands,
        )
