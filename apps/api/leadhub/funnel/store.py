from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadhub.context import get_correlation_id
from leadhub.errors import Conflict, LeadHubError, NotFound, UpstreamUnavailable, ValidationFailed
from leadhub.funnel.lifecycle import EntityType
from leadhub.funnel.models import Inquiry, InquiryReply, Lead, LeadInteraction, utcnow
from leadhub.otel import get_tracer
from leadhub.platform.security.policies import VisibilityFilter


tracer = get_tracer("leadhub.funnel.store")


@dataclass(slots=True, frozen=True)
class EntityRef:
    entity_type: str
    id: str

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.id}"


@dataclass(slots=True)
class ListFilter:
    scope: VisibilityFilter
    status: str | None = None
    source: str | None = None
    priority: str | None = None
    inquiry_type: str | None = None
    brand_id: str | None = None
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass(slots=True)
class Pagination:
    offset: int = 0
    limit: int = 50


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class EntityStore(Protocol):
    """Persistence boundary for leads, inquiries and their child rows.

    Records cross this boundary as plain dicts. Implementations raise
    :class:`NotFound`, :class:`Conflict` (stale ``row_version``) and
    :class:`UpstreamUnavailable` (driver failure) distinctly.
    """

    async def list(self, entity_type: str, filter: ListFilter, page: Pagination) -> Page: ...

    async def get(self, ref: EntityRef) -> dict[str, Any]: ...

    async def create(self, entity_type: str, values: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update(self, ref: EntityRef, changes: Mapping[str, Any], expected_version: int) -> dict[str, Any]: ...

    async def delete(self, ref: EntityRef, expected_version: int | None = None) -> None: ...

    async def add_reply(
        self,
        ref: EntityRef,
        reply: Mapping[str, Any],
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> tuple[dict[str, Any], dict[str, Any]]: ...

    async def list_replies(self, ref: EntityRef) -> list[dict[str, Any]]: ...

    async def add_interaction(self, ref: EntityRef, values: Mapping[str, Any]) -> dict[str, Any]: ...

    async def list_interactions(self, ref: EntityRef) -> list[dict[str, Any]]: ...


_DEFAULTS: dict[str, dict[str, Any]] = {
    EntityType.LEAD: {
        "customer_phone": None,
        "source": "contact_form",
        "status": "new",
        "priority": "normal",
        "estimated_value": None,
        "notes": None,
        "contacted_at": None,
        "qualified_at": None,
        "converted_at": None,
    },
    EntityType.INQUIRY: {
        "customer_phone": None,
        "inquiry_type": "general",
        "status": "unread",
        "priority": "normal",
        "source": "website",
        "reply_count": 0,
        "read_at": None,
        "replied_at": None,
    },
}

_SEARCH_FIELDS: dict[str, tuple[str, ...]] = {
    EntityType.LEAD: ("customer_name", "customer_email", "notes"),
    EntityType.INQUIRY: ("customer_name", "customer_email", "subject", "message"),
}


def _check_entity_type(entity_type: str) -> str:
    if entity_type not in _DEFAULTS:
        raise ValidationFailed(f"unknown entity type '{entity_type}'")
    return entity_type


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches_filter(entity_type: str, record: Mapping[str, Any], filter: ListFilter) -> bool:
    if not filter.scope(record):
        return False
    for name in ("status", "source", "priority", "inquiry_type", "brand_id"):
        expected = getattr(filter, name)
        if expected is not None and record.get(name) != expected:
            return False
    created_at = record.get("created_at")
    if filter.created_from is not None and created_at < _aware(filter.created_from):
        return False
    if filter.created_to is not None and created_at > _aware(filter.created_to):
        return False
    if filter.search:
        needle = filter.search.lower()
        haystack = [str(record.get(name) or "").lower() for name in _SEARCH_FIELDS[entity_type]]
        if not any(needle in value for value in haystack):
            return False
    return True


class InMemoryEntityStore:
    """Dict-backed store used by tests and single-process demos."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._records: dict[str, dict[str, dict[str, Any]]] = {
            EntityType.LEAD: {},
            EntityType.INQUIRY: {},
        }
        self._replies: dict[str, list[dict[str, Any]]] = {}
        self._interactions: dict[str, list[dict[str, Any]]] = {}

    def _require(self, ref: EntityRef) -> dict[str, Any]:
        _check_entity_type(ref.entity_type)
        record = self._records[ref.entity_type].get(ref.id)
        if record is None:
            raise NotFound(f"{ref.entity_type} not found")
        return record

    async def list(self, entity_type: str, filter: ListFilter, page: Pagination) -> Page:
        _check_entity_type(entity_type)
        if filter.scope.matches_nothing:
            return Page(items=[], total=0, offset=page.offset, limit=page.limit)
        matching = [
            record for record in self._records[entity_type].values() if _matches_filter(entity_type, record, filter)
        ]
        matching.sort(key=lambda record: (record["created_at"], record["id"]), reverse=True)
        window = matching[page.offset : page.offset + page.limit]
        return Page(items=copy.deepcopy(window), total=len(matching), offset=page.offset, limit=page.limit)

    async def get(self, ref: EntityRef) -> dict[str, Any]:
        return copy.deepcopy(self._require(ref))

    async def create(self, entity_type: str, values: Mapping[str, Any]) -> dict[str, Any]:
        _check_entity_type(entity_type)
        now = self._clock()
        record: dict[str, Any] = dict(_DEFAULTS[entity_type])
        record.update(values)
        record["id"] = str(record.get("id") or uuid.uuid4())
        record["created_at"] = record.get("created_at") or now
        record["updated_at"] = record.get("updated_at") or record["created_at"]
        record["row_version"] = 1
        self._records[entity_type][record["id"]] = record
        return copy.deepcopy(record)

    async def update(self, ref: EntityRef, changes: Mapping[str, Any], expected_version: int) -> dict[str, Any]:
        record = self._require(ref)
        if record["row_version"] != expected_version:
            raise Conflict("row_version conflict", details={"expected": expected_version, "actual": record["row_version"]})
        record.update({key: value for key, value in changes.items() if key not in {"id", "row_version"}})
        record["row_version"] = expected_version + 1
        return copy.deepcopy(record)

    async def delete(self, ref: EntityRef, expected_version: int | None = None) -> None:
        record = self._require(ref)
        if expected_version is not None and record["row_version"] != expected_version:
            raise Conflict("row_version conflict")
        del self._records[ref.entity_type][ref.id]
        self._replies.pop(ref.id, None)
        self._interactions.pop(ref.id, None)

    async def add_reply(
        self,
        ref: EntityRef,
        reply: Mapping[str, Any],
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        if ref.entity_type != EntityType.INQUIRY:
            raise ValidationFailed("replies can only be added to inquiries")
        record = self._require(ref)
        if record["row_version"] != expected_version:
            raise Conflict("row_version conflict")
        reply_record = {
            "id": str(uuid.uuid4()),
            "inquiry_id": ref.id,
            "admin_id": reply["admin_id"],
            "message": reply["message"],
            "is_internal_note": bool(reply.get("is_internal_note", False)),
            "created_at": reply.get("created_at") or self._clock(),
        }
        self._replies.setdefault(ref.id, []).append(reply_record)
        if changes:
            record.update(changes)
            record["row_version"] = expected_version + 1
        return copy.deepcopy(record), copy.deepcopy(reply_record)

    async def list_replies(self, ref: EntityRef) -> list[dict[str, Any]]:
        self._require(ref)
        return copy.deepcopy(sorted(self._replies.get(ref.id, []), key=lambda item: item["created_at"]))

    async def add_interaction(self, ref: EntityRef, values: Mapping[str, Any]) -> dict[str, Any]:
        if ref.entity_type != EntityType.LEAD:
            raise ValidationFailed("interactions can only be added to leads")
        self._require(ref)
        now = self._clock()
        interaction = {
            "id": str(uuid.uuid4()),
            "lead_id": ref.id,
            "interaction_type": values["interaction_type"],
            "interaction_date": values.get("interaction_date") or now,
            "subject": values.get("subject"),
            "description": values["description"],
            "outcome": values.get("outcome"),
            "next_action": values.get("next_action"),
            "created_at": now,
        }
        self._interactions.setdefault(ref.id, []).append(interaction)
        return copy.deepcopy(interaction)

    async def list_interactions(self, ref: EntityRef) -> list[dict[str, Any]]:
        self._require(ref)
        items = sorted(self._interactions.get(ref.id, []), key=lambda item: item["interaction_date"], reverse=True)
        return copy.deepcopy(items)


_MODELS: dict[str, type[Lead] | type[Inquiry]] = {
    EntityType.LEAD: Lead,
    EntityType.INQUIRY: Inquiry,
}


def _to_uuid(ref: EntityRef) -> uuid.UUID:
    try:
        return uuid.UUID(str(ref.id))
    except ValueError as exc:
        raise NotFound(f"{ref.entity_type} not found") from exc


def _row_to_record(row: Any) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = _aware(value)
        elif isinstance(value, Decimal):
            value = value.quantize(Decimal("0.01"))
        record[column.key] = value
    return record


class SqlAlchemyEntityStore:
    """Entity store over SQLAlchemy sessions.

    Each call opens its own session from ``session_factory`` and runs in a
    worker thread so the event loop is never blocked by the driver.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def _run(self, span_name: str, ref: EntityRef | None, fn: Callable[[Session], Any]) -> Any:
        def _call() -> Any:
            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("correlation_id", get_correlation_id() or "")
                if ref is not None:
                    span.set_attribute("entity_type", ref.entity_type)
                    span.set_attribute("entity_id", ref.id)
                with self._session_factory() as session:
                    try:
                        return fn(session)
                    except LeadHubError:
                        session.rollback()
                        raise
                    except SQLAlchemyError as exc:
                        session.rollback()
                        span.record_exception(exc)
                        raise UpstreamUnavailable("entity store unavailable", details={"error": str(exc)[:500]}) from exc

        return await asyncio.to_thread(_call)

    def _scoped_select(self, entity_type: str, filter: ListFilter) -> Select[Any]:
        model = _MODELS[entity_type]
        stmt = select(model)
        if filter.scope.brand_ids is not None:
            stmt = stmt.where(model.brand_id.in_(sorted(filter.scope.brand_ids)))
        if filter.status:
            stmt = stmt.where(model.status == filter.status)
        if filter.source:
            stmt = stmt.where(model.source == filter.source)
        if filter.priority:
            stmt = stmt.where(model.priority == filter.priority)
        if filter.inquiry_type and entity_type == EntityType.INQUIRY:
            stmt = stmt.where(Inquiry.inquiry_type == filter.inquiry_type)
        if filter.brand_id:
            stmt = stmt.where(model.brand_id == filter.brand_id)
        if filter.created_from:
            stmt = stmt.where(model.created_at >= filter.created_from)
        if filter.created_to:
            stmt = stmt.where(model.created_at <= filter.created_to)
        if filter.search:
            pattern = f"%{filter.search}%"
            columns = [getattr(model, name) for name in _SEARCH_FIELDS[entity_type]]
            stmt = stmt.where(or_(*[column.ilike(pattern) for column in columns]))
        return stmt

    async def list(self, entity_type: str, filter: ListFilter, page: Pagination) -> Page:
        _check_entity_type(entity_type)
        if filter.scope.matches_nothing:
            return Page(items=[], total=0, offset=page.offset, limit=page.limit)
        model = _MODELS[entity_type]

        def _list(session: Session) -> Page:
            stmt = self._scoped_select(entity_type, filter)
            total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            rows = session.scalars(
                stmt.order_by(model.created_at.desc(), model.id.desc()).offset(page.offset).limit(page.limit)
            ).all()
            return Page(items=[_row_to_record(row) for row in rows], total=total, offset=page.offset, limit=page.limit)

        return await self._run(f"leadhub.store.list.{entity_type}", None, _list)

    async def get(self, ref: EntityRef) -> dict[str, Any]:
        model = _MODELS[_check_entity_type(ref.entity_type)]
        entity_id = _to_uuid(ref)

        def _get(session: Session) -> dict[str, Any]:
            row = session.scalar(select(model).where(model.id == entity_id))
            if row is None:
                raise NotFound(f"{ref.entity_type} not found")
            return _row_to_record(row)

        return await self._run("leadhub.store.get", ref, _get)

    async def create(self, entity_type: str, values: Mapping[str, Any]) -> dict[str, Any]:
        model = _MODELS[_check_entity_type(entity_type)]
        payload = dict(values)
        if payload.get("id"):
            payload["id"] = uuid.UUID(str(payload["id"]))

        def _create(session: Session) -> dict[str, Any]:
            row = model(**payload)
            if row.created_at is None:
                row.created_at = utcnow()
            if row.updated_at is None:
                row.updated_at = row.created_at
            session.add(row)
            session.flush()
            record = _row_to_record(row)
            session.commit()
            return record

        return await self._run(f"leadhub.store.create.{entity_type}", None, _create)

    def _apply_update(
        self,
        session: Session,
        ref: EntityRef,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> dict[str, Any]:
        model = _MODELS[ref.entity_type]
        entity_id = _to_uuid(ref)
        payload = {key: value for key, value in changes.items() if key not in {"id", "row_version"}}
        payload["row_version"] = model.row_version + 1
        result = session.execute(
            update(model)
            .where(and_(model.id == entity_id, model.row_version == expected_version))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            exists = session.scalar(select(model.id).where(model.id == entity_id))
            session.rollback()
            if exists is None:
                raise NotFound(f"{ref.entity_type} not found")
            raise Conflict("row_version conflict", details={"expected": expected_version})
        row = session.scalar(select(model).where(model.id == entity_id).execution_options(populate_existing=True))
        return _row_to_record(row)

    async def update(self, ref: EntityRef, changes: Mapping[str, Any], expected_version: int) -> dict[str, Any]:
        _check_entity_type(ref.entity_type)

        def _update(session: Session) -> dict[str, Any]:
            record = self._apply_update(session, ref, changes, expected_version)
            session.commit()
            return record

        return await self._run("leadhub.store.update", ref, _update)

    async def delete(self, ref: EntityRef, expected_version: int | None = None) -> None:
        model = _MODELS[_check_entity_type(ref.entity_type)]
        entity_id = _to_uuid(ref)

        def _delete(session: Session) -> None:
            row = session.scalar(select(model).where(model.id == entity_id))
            if row is None:
                raise NotFound(f"{ref.entity_type} not found")
            if expected_version is not None and row.row_version != expected_version:
                raise Conflict("row_version conflict")
            # children are removed explicitly so backends without FK enforcement stay consistent
            if ref.entity_type == EntityType.LEAD:
                session.execute(delete(LeadInteraction).where(LeadInteraction.lead_id == entity_id))
            else:
                session.execute(delete(InquiryReply).where(InquiryReply.inquiry_id == entity_id))
            session.execute(delete(model).where(model.id == entity_id))
            session.commit()

        await self._run("leadhub.store.delete", ref, _delete)

    async def add_reply(
        self,
        ref: EntityRef,
        reply: Mapping[str, Any],
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        if ref.entity_type != EntityType.INQUIRY:
            raise ValidationFailed("replies can only be added to inquiries")
        entity_id = _to_uuid(ref)

        def _add_reply(session: Session) -> tuple[dict[str, Any], dict[str, Any]]:
            inquiry = session.scalar(select(Inquiry).where(Inquiry.id == entity_id))
            if inquiry is None:
                raise NotFound("inquiry not found")
            if inquiry.row_version != expected_version:
                raise Conflict("row_version conflict", details={"expected": expected_version})
            reply_row = InquiryReply(
                inquiry_id=entity_id,
                admin_id=str(reply["admin_id"]),
                message=reply["message"],
                is_internal_note=bool(reply.get("is_internal_note", False)),
                created_at=reply.get("created_at") or utcnow(),
            )
            session.add(reply_row)
            session.flush()
            reply_record = _row_to_record(reply_row)
            if changes:
                record = self._apply_update(session, ref, changes, expected_version)
            else:
                record = _row_to_record(inquiry)
            session.commit()
            return record, reply_record

        return await self._run("leadhub.store.add_reply", ref, _add_reply)

    async def list_replies(self, ref: EntityRef) -> list[dict[str, Any]]:
        entity_id = _to_uuid(ref)

        def _list_replies(session: Session) -> list[dict[str, Any]]:
            if session.scalar(select(Inquiry.id).where(Inquiry.id == entity_id)) is None:
                raise NotFound("inquiry not found")
            rows = session.scalars(
                select(InquiryReply).where(InquiryReply.inquiry_id == entity_id).order_by(InquiryReply.created_at.asc())
            ).all()
            return [_row_to_record(row) for row in rows]

        return await self._run("leadhub.store.list_replies", ref, _list_replies)

    async def add_interaction(self, ref: EntityRef, values: Mapping[str, Any]) -> dict[str, Any]:
        if ref.entity_type != EntityType.LEAD:
            raise ValidationFailed("interactions can only be added to leads")
        entity_id = _to_uuid(ref)

        def _add_interaction(session: Session) -> dict[str, Any]:
            if session.scalar(select(Lead.id).where(Lead.id == entity_id)) is None:
                raise NotFound("lead not found")
            row = LeadInteraction(
                lead_id=entity_id,
                interaction_type=values["interaction_type"],
                interaction_date=values.get("interaction_date") or utcnow(),
                subject=values.get("subject"),
                description=values["description"],
                outcome=values.get("outcome"),
                next_action=values.get("next_action"),
            )
            session.add(row)
            session.flush()
            record = _row_to_record(row)
            session.commit()
            return record

        return await self._run("leadhub.store.add_interaction", ref, _add_interaction)

    async def list_interactions(self, ref: EntityRef) -> list[dict[str, Any]]:
        entity_id = _to_uuid(ref)

        def _list_interactions(session: Session) -> list[dict[str, Any]]:
            if session.scalar(select(Lead.id).where(Lead.id == entity_id)) is None:
                raise NotFound("lead not found")
            rows = session.scalars(
                select(LeadInteraction)
                .where(LeadInteraction.lead_id == entity_id)
                .order_by(LeadInteraction.interaction_date.desc())
            ).all()
            return [_row_to_record(row) for row in rows]

        return await self._run("leadhub.store.list_interactions", ref, _list_interactions)
