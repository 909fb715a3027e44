from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from leadhub.funnel.lifecycle import InquiryType, InteractionType, LeadSource, Priority


class LeadCreate(BaseModel):
    brand_id: str = Field(min_length=1, max_length=64)
    customer_name: str = Field(min_length=1)
    customer_email: EmailStr
    customer_phone: str | None = None
    source: LeadSource = LeadSource.CONTACT_FORM
    priority: Priority = Priority.NORMAL
    estimated_value: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    brand_id: str
    customer_name: str
    customer_email: str
    customer_phone: str | None
    source: str
    status: str
    priority: str
    estimated_value: Decimal | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    contacted_at: datetime | None
    qualified_at: datetime | None
    converted_at: datetime | None
    row_version: int


class LeadPage(BaseModel):
    items: list[LeadRead]
    total: int
    offset: int
    limit: int


class StatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class FieldUpdate(BaseModel):
    field: str = Field(min_length=1)
    value: Any = None


class InteractionCreate(BaseModel):
    interaction_type: InteractionType
    interaction_date: datetime | None = None
    subject: str | None = None
    description: str = Field(min_length=1)
    outcome: str | None = None
    next_action: str | None = None


class InteractionRead(BaseModel):
    id: str
    lead_id: str
    interaction_type: str
    interaction_date: datetime
    subject: str | None
    description: str
    outcome: str | None
    next_action: str | None
    created_at: datetime


class InquiryCreate(BaseModel):
    brand_id: str = Field(min_length=1, max_length=64)
    customer_name: str = Field(min_length=1)
    customer_email: EmailStr
    customer_phone: str | None = None
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)
    inquiry_type: InquiryType = InquiryType.GENERAL
    priority: Priority = Priority.NORMAL
    source: str = "website"


class InquiryRead(BaseModel):
    id: str
    brand_id: str
    customer_name: str
    customer_email: str
    customer_phone: str | None
    subject: str
    message: str
    inquiry_type: str
    status: str
    priority: str
    source: str
    reply_count: int
    created_at: datetime
    updated_at: datetime
    read_at: datetime | None
    replied_at: datetime | None
    row_version: int


class InquiryPage(BaseModel):
    items: list[InquiryRead]
    total: int
    offset: int
    limit: int


class ReplyCreate(BaseModel):
    message: str = Field(min_length=1)
    is_internal_note: bool = False


class ReplyRead(BaseModel):
    id: str
    inquiry_id: str
    admin_id: str
    message: str
    is_internal_note: bool
    created_at: datetime


class ReplyPosted(BaseModel):
    inquiry: InquiryRead
    reply: ReplyRead
