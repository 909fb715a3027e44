from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from leadhub import audit
from leadhub.errors import ValidationFailed
from leadhub.funnel.lifecycle import EntityType, InquiryType, LeadSource, Priority
from leadhub.funnel.models import utcnow
from leadhub.funnel.store import EntityRef, EntityStore, ListFilter, Page, Pagination
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import AccessPolicy, Action
from leadhub.sync.channel import SyncChannel, SyncEvent, SyncEventType


logger = logging.getLogger("leadhub.funnel")

_LEAD_REQUIRED = ("brand_id", "customer_name", "customer_email")
_INQUIRY_REQUIRED = ("brand_id", "customer_name", "customer_email", "subject", "message")

_LEAD_CREATE_FIELDS = {
    "brand_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "source",
    "priority",
    "estimated_value",
    "notes",
}
_INQUIRY_CREATE_FIELDS = {
    "brand_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "subject",
    "message",
    "inquiry_type",
    "priority",
    "source",
}


def _require_fields(values: Mapping[str, Any], required: tuple[str, ...]) -> None:
    missing = [name for name in required if not str(values.get(name) or "").strip()]
    if missing:
        raise ValidationFailed("missing required fields", details={"missing": missing})


def _normalize_enum(values: dict[str, Any], field: str, enum_type: type, default: str) -> None:
    raw = values.get(field) or default
    try:
        values[field] = enum_type(raw).value
    except ValueError as exc:
        raise ValidationFailed(f"invalid value for '{field}'", details={"field": field}) from exc


class _RecordService:
    entity_type: str

    def __init__(
        self,
        store: EntityStore,
        policy: AccessPolicy,
        *,
        channel: SyncChannel | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._policy = policy
        self._channel = channel
        self._clock = clock

    async def _list(self, identity: CallerIdentity, filters: Mapping[str, Any], page: Pagination) -> Page:
        self._policy.require(identity, Action.LIST, None, entity_type=self.entity_type)
        list_filter = ListFilter(scope=self._policy.visibility_filter(identity), **dict(filters))
        return await self._store.list(self.entity_type, list_filter, page)

    async def _get(self, identity: CallerIdentity, entity_id: str) -> dict[str, Any]:
        record = await self._store.get(EntityRef(self.entity_type, entity_id))
        self._policy.require(identity, Action.READ, record, entity_type=self.entity_type)
        return record

    async def _create(self, identity: CallerIdentity | None, values: dict[str, Any]) -> dict[str, Any]:
        if identity is not None:
            self._policy.require(
                identity,
                Action.CREATE,
                {"brand_id": values.get("brand_id")},
                entity_type=self.entity_type,
                conceal=False,
            )
        now = self._clock()
        values["created_at"] = now
        values["updated_at"] = now
        record = await self._store.create(self.entity_type, values)
        actor = identity.user_id if identity is not None else "anonymous"
        audit.record(
            actor_user_id=actor,
            entity_type=self.entity_type,
            entity_id=record["id"],
            action="create",
            before=None,
            after={"brand_id": record["brand_id"], "status": record["status"]},
            correlation_id=identity.correlation_id if identity is not None else None,
        )
        logger.info(
            "record.created",
            extra={"entity_type": self.entity_type, "entity_id": record["id"], "to_status": record["status"]},
        )
        if self._channel is not None:
            self._channel.publish(
                SyncEvent(
                    type=SyncEventType.UPDATED,
                    ref=EntityRef(self.entity_type, record["id"]),
                    updated_at=record["updated_at"],
                    payload=record,
                    origin="create",
                )
            )
        return record


class LeadService(_RecordService):
    entity_type = EntityType.LEAD.value

    async def list_leads(
        self,
        identity: CallerIdentity,
        filters: Mapping[str, Any] | None = None,
        page: Pagination | None = None,
    ) -> Page:
        return await self._list(identity, filters or {}, page or Pagination())

    async def get_lead(self, identity: CallerIdentity, lead_id: str) -> dict[str, Any]:
        return await self._get(identity, lead_id)

    async def create_lead(self, identity: CallerIdentity | None, values: Mapping[str, Any]) -> dict[str, Any]:
        """Create a lead at ``new``.

        ``identity`` is ``None`` for the public contact form; any other caller
        must be allowed to create records for the brand.
        """
        payload = {key: value for key, value in values.items() if key in _LEAD_CREATE_FIELDS}
        _require_fields(payload, _LEAD_REQUIRED)
        _normalize_enum(payload, "source", LeadSource, LeadSource.CONTACT_FORM.value)
        _normalize_enum(payload, "priority", Priority, Priority.NORMAL.value)
        payload["brand_id"] = str(payload["brand_id"])
        payload["customer_email"] = str(payload["customer_email"]).strip().lower()
        payload["status"] = "new"
        return await self._create(identity, payload)

    async def add_interaction(
        self,
        identity: CallerIdentity,
        lead_id: str,
        values: Mapping[str, Any],
    ) -> dict[str, Any]:
        lead = await self._get(identity, lead_id)
        self._policy.require(identity, Action.UPDATE, lead, entity_type=self.entity_type)
        _require_fields(values, ("interaction_type", "description"))
        interaction = await self._store.add_interaction(EntityRef(self.entity_type, lead_id), values)
        audit.record(
            actor_user_id=identity.user_id,
            entity_type="lead_interaction",
            entity_id=interaction["id"],
            action="create",
            before=None,
            after={"lead_id": lead_id, "interaction_type": interaction["interaction_type"]},
            correlation_id=identity.correlation_id,
        )
        return interaction

    async def list_interactions(self, identity: CallerIdentity, lead_id: str) -> list[dict[str, Any]]:
        await self._get(identity, lead_id)
        return await self._store.list_interactions(EntityRef(self.entity_type, lead_id))


class InquiryService(_RecordService):
    entity_type = EntityType.INQUIRY.value

    async def list_inquiries(
        self,
        identity: CallerIdentity,
        filters: Mapping[str, Any] | None = None,
        page: Pagination | None = None,
    ) -> Page:
        return await self._list(identity, filters or {}, page or Pagination())

    async def get_inquiry(self, identity: CallerIdentity, inquiry_id: str) -> dict[str, Any]:
        return await self._get(identity, inquiry_id)

    async def create_inquiry(self, identity: CallerIdentity | None, values: Mapping[str, Any]) -> dict[str, Any]:
        payload = {key: value for key, value in values.items() if key in _INQUIRY_CREATE_FIELDS}
        _require_fields(payload, _INQUIRY_REQUIRED)
        _normalize_enum(payload, "inquiry_type", InquiryType, InquiryType.GENERAL.value)
        _normalize_enum(payload, "priority", Priority, Priority.NORMAL.value)
        payload["brand_id"] = str(payload["brand_id"])
        payload["customer_email"] = str(payload["customer_email"]).strip().lower()
        payload["source"] = payload.get("source") or "website"
        payload["status"] = "unread"
        payload["reply_count"] = 0
        return await self._create(identity, payload)

    async def list_replies(self, identity: CallerIdentity, inquiry_id: str) -> list[dict[str, Any]]:
        await self._get(identity, inquiry_id)
        return await self._store.list_replies(EntityRef(self.entity_type, inquiry_id))
