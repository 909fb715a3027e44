from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session
from starlette.requests import Request

from leadhub.analytics.service import AnalyticsService
from leadhub.analytics.valuation import ValuationEstimator
from leadhub.core.config import Settings, get_settings
from leadhub.funnel.coordinator import MutationCoordinator
from leadhub.funnel.notifications import NotificationDispatcher, OutboxNotificationDispatcher
from leadhub.funnel.service import InquiryService, LeadService
from leadhub.funnel.store import EntityStore, SqlAlchemyEntityStore
from leadhub.platform.cache import TTLCache
from leadhub.platform.security import (
    AccessPolicy,
    ClaimsProfileLookup,
    LegacyAdminEmailShim,
    ProfileLookup,
    SessionProvider,
)
from leadhub.sync.channel import SyncChannel


@dataclass
class Runtime:
    settings: Settings
    store: EntityStore
    policy: AccessPolicy
    sessions: SessionProvider
    channel: SyncChannel
    coordinator: MutationCoordinator
    leads: LeadService
    inquiries: InquiryService
    analytics: AnalyticsService
    notifier: NotificationDispatcher | None

    async def shutdown(self) -> None:
        await self.coordinator.drain_notifications()


def build_runtime(
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    *,
    store: EntityStore | None = None,
    profiles: ProfileLookup | None = None,
    estimator: ValuationEstimator | None = None,
    notifier: NotificationDispatcher | None = None,
) -> Runtime:
    settings = settings or get_settings()
    if session_factory is None:
        from leadhub.core.database import SessionLocal

        session_factory = SessionLocal

    store = store or SqlAlchemyEntityStore(session_factory)
    policy = AccessPolicy(settings.admin_brand_scopes)
    legacy = LegacyAdminEmailShim(
        loader=lambda: settings.legacy_super_admin_emails,
        cache=TTLCache(settings.admin_email_cache_ttl_seconds),
    )
    sessions = SessionProvider(
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        profiles=profiles or ClaimsProfileLookup(),
        legacy=legacy,
    )
    if notifier is None and settings.notifications_enabled:
        notifier = OutboxNotificationDispatcher(session_factory)

    channel = SyncChannel()
    coordinator = MutationCoordinator(
        store,
        policy,
        channel=channel,
        notifier=notifier,
        timeout_seconds=settings.mutation_timeout_seconds,
        origin="api",
    )
    analytics: AnalyticsService = AnalyticsService(
        store,
        policy,
        TTLCache[Any](settings.analytics_cache_ttl_seconds),
        estimator=estimator,
        valuation_timeout_seconds=settings.valuation_timeout_seconds,
        default_timezone=settings.default_timezone,
        lookback_days=settings.top_brands_lookback_days,
        commission_rates=settings.brand_commission_rates,
        default_commission_rate=settings.default_commission_rate,
    )
    analytics.attach(channel)

    return Runtime(
        settings=settings,
        store=store,
        policy=policy,
        sessions=sessions,
        channel=channel,
        coordinator=coordinator,
        leads=LeadService(store, policy, channel=channel),
        inquiries=InquiryService(store, policy, channel=channel),
        analytics=analytics,
        notifier=notifier,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
