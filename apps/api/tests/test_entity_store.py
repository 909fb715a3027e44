from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from leadhub.errors import Conflict, NotFound, UpstreamUnavailable
from leadhub.funnel.models import Inquiry, InquiryReply, Lead, LeadInteraction
from leadhub.funnel.store import EntityRef, InMemoryEntityStore, ListFilter, Pagination, SqlAlchemyEntityStore
from leadhub.platform.security.policies import VisibilityFilter


T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _lead_values(brand_id: str, name: str, minutes: int, **extra):
    values = {
        "brand_id": brand_id,
        "customer_name": name,
        "customer_email": f"{name.lower()}@example.com",
        "created_at": T0 + timedelta(minutes=minutes),
        "updated_at": T0 + timedelta(minutes=minutes),
    }
    values.update(extra)
    return values


def _inquiry_values(brand_id: str = "brand-a"):
    return {
        "brand_id": brand_id,
        "customer_name": "Robin",
        "customer_email": "robin@example.com",
        "subject": "Custom ring",
        "message": "Can you size it to 7?",
        "created_at": T0,
        "updated_at": T0,
    }


@pytest.fixture(params=["sql", "memory"])
def store(request: pytest.FixtureRequest, session_factory: sessionmaker[Session]):
    if request.param == "sql":
        return SqlAlchemyEntityStore(session_factory)
    return InMemoryEntityStore()


def test_create_and_get_round_trip_defaults(store) -> None:
    created = asyncio.run(store.create("lead", _lead_values("brand-a", "Ada", 0, estimated_value=Decimal("99.5"))))

    fetched = asyncio.run(store.get(EntityRef("lead", created["id"])))

    assert fetched["status"] == "new"
    assert fetched["source"] == "contact_form"
    assert fetched["priority"] == "normal"
    assert fetched["row_version"] == 1
    assert fetched["created_at"] == T0
    assert fetched["created_at"].tzinfo is not None
    assert fetched["estimated_value"] == Decimal("99.50")
    assert isinstance(fetched["id"], str)


def test_get_unknown_record_is_not_found(store) -> None:
    with pytest.raises(NotFound):
        asyncio.run(store.get(EntityRef("lead", str(uuid.uuid4()))))


def test_list_applies_scope_filters_and_newest_first_paging(store) -> None:
    async def scenario():
        await store.create("lead", _lead_values("brand-a", "Ada", 0))
        await store.create("lead", _lead_values("brand-a", "Bea", 1, status="contacted"))
        await store.create("lead", _lead_values("brand-a", "Cy", 2, notes="Wants a gold chain"))
        await store.create("lead", _lead_values("brand-b", "Dee", 3))

        scoped = await store.list("lead", ListFilter(scope=VisibilityFilter(frozenset({"brand-a"}))), Pagination(0, 2))
        by_status = await store.list(
            "lead",
            ListFilter(scope=VisibilityFilter.unrestricted(), status="contacted"),
            Pagination(),
        )
        searched = await store.list("lead", ListFilter(scope=VisibilityFilter.unrestricted(), search="gold"), Pagination())
        nothing = await store.list("lead", ListFilter(scope=VisibilityFilter.nothing()), Pagination())
        return scoped, by_status, searched, nothing

    scoped, by_status, searched, nothing = asyncio.run(scenario())

    assert scoped.total == 3
    assert [item["customer_name"] for item in scoped.items] == ["Cy", "Bea"]
    assert scoped.has_more
    assert [item["customer_name"] for item in by_status.items] == ["Bea"]
    assert [item["customer_name"] for item in searched.items] == ["Cy"]
    assert nothing.total == 0 and nothing.items == []


def test_update_bumps_row_version_and_rejects_stale_versions(store) -> None:
    async def scenario():
        created = await store.create("lead", _lead_values("brand-a", "Ada", 0))
        ref = EntityRef("lead", created["id"])
        updated = await store.update(ref, {"status": "contacted"}, expected_version=1)
        with pytest.raises(Conflict):
            await store.update(ref, {"status": "lost"}, expected_version=1)
        current = await store.get(ref)
        return updated, current

    updated, current = asyncio.run(scenario())

    assert updated["row_version"] == 2
    assert current["status"] == "contacted"


def test_update_of_missing_record_is_not_found(store) -> None:
    with pytest.raises(NotFound):
        asyncio.run(store.update(EntityRef("lead", str(uuid.uuid4())), {"status": "lost"}, expected_version=1))


def test_add_reply_persists_reply_and_inquiry_changes_together(store) -> None:
    async def scenario():
        inquiry = await store.create("inquiry", _inquiry_values())
        ref = EntityRef("inquiry", inquiry["id"])
        updated, reply = await store.add_reply(
            ref,
            {"admin_id": "root-1", "message": "Yes, no problem"},
            {"status": "replied", "reply_count": 1},
            expected_version=1,
        )
        _, note = await store.add_reply(ref, {"admin_id": "root-1", "message": "VIP", "is_internal_note": True}, {}, 2)
        replies = await store.list_replies(ref)
        return updated, reply, note, replies

    updated, reply, note, replies = asyncio.run(scenario())

    assert updated["status"] == "replied"
    assert updated["reply_count"] == 1
    assert updated["row_version"] == 2
    assert reply["inquiry_id"] == updated["id"]
    assert note["is_internal_note"] is True
    assert [item["message"] for item in replies] == ["Yes, no problem", "VIP"]


def test_add_reply_with_stale_version_stores_nothing(store) -> None:
    async def scenario():
        inquiry = await store.create("inquiry", _inquiry_values())
        ref = EntityRef("inquiry", inquiry["id"])
        with pytest.raises(Conflict):
            await store.add_reply(ref, {"admin_id": "root-1", "message": "late"}, {"status": "replied"}, 5)
        return await store.list_replies(ref), await store.get(ref)

    replies, current = asyncio.run(scenario())

    assert replies == []
    assert current["status"] == "unread"


def test_interactions_are_listed_newest_first(store) -> None:
    async def scenario():
        lead = await store.create("lead", _lead_values("brand-a", "Ada", 0))
        ref = EntityRef("lead", lead["id"])
        await store.add_interaction(ref, {"interaction_type": "call", "description": "intro", "interaction_date": T0})
        await store.add_interaction(
            ref,
            {"interaction_type": "email", "description": "quote", "interaction_date": T0 + timedelta(days=1)},
        )
        return await store.list_interactions(ref)

    items = asyncio.run(scenario())

    assert [item["description"] for item in items] == ["quote", "intro"]


def test_delete_removes_record_and_children(session_factory: sessionmaker[Session]) -> None:
    store = SqlAlchemyEntityStore(session_factory)

    async def scenario():
        lead = await store.create("lead", _lead_values("brand-a", "Ada", 0))
        lead_ref = EntityRef("lead", lead["id"])
        await store.add_interaction(lead_ref, {"interaction_type": "call", "description": "intro"})
        inquiry = await store.create("inquiry", _inquiry_values())
        inquiry_ref = EntityRef("inquiry", inquiry["id"])
        await store.add_reply(inquiry_ref, {"admin_id": "root-1", "message": "hi"}, {}, 1)
        await store.delete(lead_ref, expected_version=1)
        await store.delete(inquiry_ref)
        with pytest.raises(NotFound):
            await store.get(lead_ref)

    asyncio.run(scenario())

    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(LeadInteraction)) == 0
        assert session.scalar(select(func.count()).select_from(InquiryReply)) == 0


def test_driver_failure_maps_to_upstream_unavailable(session_factory: sessionmaker[Session]) -> None:
    store = SqlAlchemyEntityStore(session_factory)
    with session_factory() as session:
        session.connection().exec_driver_sql("DROP TABLE lead_interactions")
        session.connection().exec_driver_sql("DROP TABLE leads")
        session.commit()

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(store.get(EntityRef("lead", str(uuid.uuid4()))))


@pytest.mark.parametrize(
    ("model", "values"),
    [
        (Lead, {"brand_id": "brand-a", "customer_name": "Ada", "customer_email": "ada@example.com", "status": "won"}),
        (Inquiry, {**_inquiry_values(), "status": "archived"}),
    ],
)
def test_database_rejects_unknown_status(session_factory: sessionmaker[Session], model, values) -> None:
    with session_factory() as session:
        session.add(model(**values))
        with pytest.raises(IntegrityError):
            session.commit()
