from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadhub import audit
from leadhub.core.config import get_settings
from leadhub.core.database import Base
from leadhub.funnel.notifications import Notification
from leadhub.platform.security import CallerIdentity


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[Notification] = []

    async def dispatch(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("mailer down")
        self.sent.append(notification)


def super_admin(user_id: str = "root-1") -> CallerIdentity:
    return CallerIdentity(user_id=user_id, role="super_admin")


def brand_admin(*brand_ids: str, user_id: str = "brand-admin-1") -> CallerIdentity:
    return CallerIdentity(user_id=user_id, role="brand_admin", owned_brand_ids=frozenset(brand_ids))


def plain_user(user_id: str = "user-1") -> CallerIdentity:
    return CallerIdentity(user_id=user_id, role="user")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()
