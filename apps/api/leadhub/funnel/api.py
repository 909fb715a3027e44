from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from leadhub.api.errors import leadhub_error_response
from leadhub.context import get_correlation_id
from leadhub.errors import LeadHubError
from leadhub.funnel.lifecycle import EntityType
from leadhub.funnel.schemas import (
    FieldUpdate,
    InquiryCreate,
    InquiryPage,
    InquiryRead,
    InteractionCreate,
    InteractionRead,
    LeadCreate,
    LeadPage,
    LeadRead,
    ReplyCreate,
    ReplyPosted,
    ReplyRead,
    StatusUpdate,
)
from leadhub.funnel.store import EntityRef, Pagination
from leadhub.platform.security import CallerIdentity, Role
from leadhub.runtime import Runtime, get_runtime

leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
inquiries_router = APIRouter(prefix="/api/inquiries", tags=["inquiries"])

_STAFF_ROLES = {Role.BRAND_ADMIN.value, Role.ADMIN.value, Role.SUPER_ADMIN.value}


def get_current_identity(request: Request, runtime: Runtime = Depends(get_runtime)) -> CallerIdentity:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return runtime.sessions.identify_header(request.headers.get("authorization"), correlation_id)


def _staff_or_none(identity: CallerIdentity) -> CallerIdentity | None:
    return identity if identity.role in _STAFF_ROLES else None


@leads_router.get("", response_model=LeadPage)
async def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    brand_id: str | None = Query(default=None),
    q: str | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> LeadPage | JSONResponse:
    try:
        page = await runtime.leads.list_leads(
            identity,
            filters={
                "status": status_filter,
                "source": source,
                "priority": priority,
                "brand_id": brand_id,
                "search": q,
                "created_from": created_from,
                "created_to": created_to,
            },
            page=Pagination(offset=offset, limit=limit),
        )
        return LeadPage(
            items=[LeadRead.model_validate(item) for item in page.items],
            total=page.total,
            offset=page.offset,
            limit=page.limit,
        )
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
async def create_lead(
    request: Request,
    dto: LeadCreate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> LeadRead | JSONResponse:
    try:
        record = await runtime.leads.create_lead(_staff_or_none(identity), dto.model_dump())
        return LeadRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.get("/{lead_id}", response_model=LeadRead)
async def get_lead(
    request: Request,
    lead_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(await runtime.leads.get_lead(identity, lead_id))
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.patch("/{lead_id}/status", response_model=LeadRead)
async def update_lead_status(
    request: Request,
    lead_id: str,
    dto: StatusUpdate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> LeadRead | JSONResponse:
    try:
        record = await runtime.coordinator.update_status(identity, EntityRef(EntityType.LEAD.value, lead_id), dto.status)
        return LeadRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.patch("/{lead_id}/fields", response_model=LeadRead)
async def update_lead_field(
    request: Request,
    lead_id: str,
    dto: FieldUpdate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> LeadRead | JSONResponse:
    try:
        record = await runtime.coordinator.update_field(
            identity,
            EntityRef(EntityType.LEAD.value, lead_id),
            dto.field,
            dto.value,
        )
        return LeadRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.delete("/{lead_id}", response_model=None)
async def delete_lead(
    request: Request,
    lead_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> dict[str, str] | JSONResponse:
    try:
        await runtime.coordinator.delete(identity, EntityRef(EntityType.LEAD.value, lead_id))
        return {"status": "deleted"}
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.get("/{lead_id}/interactions", response_model=list[InteractionRead])
async def list_lead_interactions(
    request: Request,
    lead_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> list[InteractionRead] | JSONResponse:
    try:
        items = await runtime.leads.list_interactions(identity, lead_id)
        return [InteractionRead.model_validate(item) for item in items]
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@leads_router.post("/{lead_id}/interactions", response_model=InteractionRead, status_code=status.HTTP_201_CREATED)
async def create_lead_interaction(
    request: Request,
    lead_id: str,
    dto: InteractionCreate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InteractionRead | JSONResponse:
    try:
        values = dto.model_dump()
        values["interaction_type"] = dto.interaction_type.value
        interaction = await runtime.leads.add_interaction(identity, lead_id, values)
        return InteractionRead.model_validate(interaction)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.get("", response_model=InquiryPage)
async def list_inquiries(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    inquiry_type: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    brand_id: str | None = Query(default=None),
    q: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryPage | JSONResponse:
    try:
        page = await runtime.inquiries.list_inquiries(
            identity,
            filters={
                "status": status_filter,
                "inquiry_type": inquiry_type,
                "priority": priority,
                "brand_id": brand_id,
                "search": q,
            },
            page=Pagination(offset=offset, limit=limit),
        )
        return InquiryPage(
            items=[InquiryRead.model_validate(item) for item in page.items],
            total=page.total,
            offset=page.offset,
            limit=page.limit,
        )
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.post("", response_model=InquiryRead, status_code=status.HTTP_201_CREATED)
async def create_inquiry(
    request: Request,
    dto: InquiryCreate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryRead | JSONResponse:
    try:
        record = await runtime.inquiries.create_inquiry(_staff_or_none(identity), dto.model_dump())
        return InquiryRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.get("/{inquiry_id}", response_model=InquiryRead)
async def get_inquiry(
    request: Request,
    inquiry_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryRead | JSONResponse:
    try:
        return InquiryRead.model_validate(await runtime.inquiries.get_inquiry(identity, inquiry_id))
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.post("/{inquiry_id}/read", response_model=InquiryRead)
async def mark_inquiry_read(
    request: Request,
    inquiry_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryRead | JSONResponse:
    try:
        record = await runtime.coordinator.mark_read(identity, EntityRef(EntityType.INQUIRY.value, inquiry_id))
        return InquiryRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.patch("/{inquiry_id}/status", response_model=InquiryRead)
async def update_inquiry_status(
    request: Request,
    inquiry_id: str,
    dto: StatusUpdate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryRead | JSONResponse:
    try:
        record = await runtime.coordinator.update_status(
            identity,
            EntityRef(EntityType.INQUIRY.value, inquiry_id),
            dto.status,
        )
        return InquiryRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.patch("/{inquiry_id}/fields", response_model=InquiryRead)
async def update_inquiry_field(
    request: Request,
    inquiry_id: str,
    dto: FieldUpdate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryRead | JSONResponse:
    try:
        record = await runtime.coordinator.update_field(
            identity,
            EntityRef(EntityType.INQUIRY.value, inquiry_id),
            dto.field,
            dto.value,
        )
        return InquiryRead.model_validate(record)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.get("/{inquiry_id}/replies", response_model=list[ReplyRead])
async def list_inquiry_replies(
    request: Request,
    inquiry_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> list[ReplyRead] | JSONResponse:
    try:
        items = await runtime.inquiries.list_replies(identity, inquiry_id)
        return [ReplyRead.model_validate(item) for item in items]
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.post("/{inquiry_id}/replies", response_model=ReplyPosted, status_code=status.HTTP_201_CREATED)
async def post_inquiry_reply(
    request: Request,
    inquiry_id: str,
    dto: ReplyCreate,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> ReplyPosted | JSONResponse:
    try:
        inquiry, reply = await runtime.coordinator.post_reply(
            identity,
            EntityRef(EntityType.INQUIRY.value, inquiry_id),
            dto.message,
            is_internal_note=dto.is_internal_note,
        )
        return ReplyPosted(inquiry=InquiryRead.model_validate(inquiry), reply=ReplyRead.model_validate(reply))
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@inquiries_router.delete("/{inquiry_id}", response_model=None)
async def delete_inquiry(
    request: Request,
    inquiry_id: str,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> dict[str, str] | JSONResponse:
    try:
        await runtime.coordinator.delete(identity, EntityRef(EntityType.INQUIRY.value, inquiry_id))
        return {"status": "deleted"}
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)
