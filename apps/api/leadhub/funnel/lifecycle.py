from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from leadhub.errors import InvalidTransition, ValidationFailed


class EntityType(StrEnum):
    LEAD = "lead"
    INQUIRY = "inquiry"


class LeadStatus(StrEnum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"
    CLOSED = "closed"


class InquiryStatus(StrEnum):
    UNREAD = "unread"
    READ = "read"
    REPLIED = "replied"
    CLOSED = "closed"


class LeadSource(StrEnum):
    CONTACT_FORM = "contact_form"
    SOCIAL_MEDIA = "social_media"
    REFERRAL = "referral"
    WEBSITE = "website"
    PHONE = "phone"
    EMAIL = "email"
    EVENT = "event"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class InquiryType(StrEnum):
    GENERAL = "general"
    CUSTOM_ORDER = "custom_order"
    PRODUCT_QUESTION = "product_question"
    COLLABORATION = "collaboration"
    WHOLESALE = "wholesale"


class InteractionType(StrEnum):
    EMAIL = "email"
    CALL = "call"
    MEETING = "meeting"
    PROPOSAL = "proposal"
    FOLLOW_UP = "follow_up"


TERMINAL_LEAD_STATUSES = frozenset({LeadStatus.CONVERTED.value, LeadStatus.LOST.value, LeadStatus.CLOSED.value})
TERMINAL_INQUIRY_STATUSES = frozenset({InquiryStatus.CLOSED.value})

# first entry into these statuses stamps the paired column
_LEAD_STAGE_TIMESTAMPS = {
    LeadStatus.CONTACTED: "contacted_at",
    LeadStatus.QUALIFIED: "qualified_at",
    LeadStatus.CONVERTED: "converted_at",
}

EDITABLE_FIELDS: dict[str, frozenset[str]] = {
    EntityType.LEAD: frozenset({"priority", "notes", "estimated_value", "customer_phone", "source"}),
    EntityType.INQUIRY: frozenset({"priority", "inquiry_type"}),
}


def _parse_status(enum_type: type[StrEnum], target: Any) -> Any:
    try:
        return enum_type(target)
    except ValueError as exc:
        raise InvalidTransition(
            f"'{target}' is not a valid status",
            details={"allowed": [member.value for member in enum_type]},
        ) from exc


def _stage_time(record: Mapping[str, Any], now: datetime) -> datetime:
    created_at = record.get("created_at")
    if isinstance(created_at, datetime) and created_at > now:
        return created_at
    return now


def _updated_at(record: Mapping[str, Any], now: datetime) -> datetime:
    previous = record.get("updated_at")
    stamp = _stage_time(record, now)
    if isinstance(previous, datetime) and previous > stamp:
        return previous
    return stamp


def is_terminal(entity_type: str, status: str) -> bool:
    if entity_type == EntityType.LEAD:
        return status in TERMINAL_LEAD_STATUSES
    return status in TERMINAL_INQUIRY_STATUSES


def transition_lead(lead: Mapping[str, Any], target: Any, now: datetime) -> dict[str, Any]:
    """Changes that move ``lead`` to ``target``.

    Any member of :class:`LeadStatus` is reachable from any other; stage
    timestamps are stamped on first entry only.
    """
    status = _parse_status(LeadStatus, target)
    changes: dict[str, Any] = {"status": status.value}

    column = _LEAD_STAGE_TIMESTAMPS.get(status)
    if column is not None and lead.get(column) is None:
        changes[column] = _stage_time(lead, now)

    changes["updated_at"] = _updated_at(lead, now)
    return changes


def transition_inquiry(inquiry: Mapping[str, Any], target: Any, now: datetime) -> dict[str, Any]:
    status = _parse_status(InquiryStatus, target)
    if status == InquiryStatus.REPLIED and int(inquiry.get("reply_count") or 0) < 1:
        raise InvalidTransition("an inquiry can only be marked replied after a reply has been posted")

    changes: dict[str, Any] = {"status": status.value}
    if status != InquiryStatus.UNREAD and inquiry.get("read_at") is None:
        changes["read_at"] = _stage_time(inquiry, now)
    if status == InquiryStatus.REPLIED and inquiry.get("replied_at") is None:
        changes["replied_at"] = _stage_time(inquiry, now)

    changes["updated_at"] = _updated_at(inquiry, now)
    return changes


def transition(entity_type: str, record: Mapping[str, Any], target: Any, now: datetime) -> dict[str, Any]:
    if entity_type == EntityType.LEAD:
        return transition_lead(record, target, now)
    if entity_type == EntityType.INQUIRY:
        return transition_inquiry(record, target, now)
    raise ValidationFailed(f"unknown entity type '{entity_type}'")


def mark_read_changes(inquiry: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    """``unread -> read`` once; an already opened inquiry yields no changes."""
    if inquiry.get("status") != InquiryStatus.UNREAD:
        return {}
    return transition_inquiry(inquiry, InquiryStatus.READ, now)


def reply_changes(inquiry: Mapping[str, Any], is_internal_note: bool, now: datetime) -> dict[str, Any]:
    if is_internal_note:
        return {}

    changes: dict[str, Any] = {
        "status": InquiryStatus.REPLIED.value,
        "reply_count": int(inquiry.get("reply_count") or 0) + 1,
    }
    stamp = _stage_time(inquiry, now)
    if inquiry.get("read_at") is None:
        changes["read_at"] = stamp
    if inquiry.get("replied_at") is None:
        changes["replied_at"] = stamp
    changes["updated_at"] = _updated_at(inquiry, now)
    return changes


def _coerce_enum(enum_type: type[StrEnum], field: str, value: Any) -> str:
    try:
        return enum_type(value).value
    except ValueError as exc:
        raise ValidationFailed(
            f"invalid value for '{field}'",
            details={"field": field, "allowed": [member.value for member in enum_type]},
        ) from exc


def _coerce_estimated_value(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationFailed("estimated_value must be a number", details={"field": "estimated_value"}) from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed("estimated_value must be a non-negative amount", details={"field": "estimated_value"})
    return amount.quantize(Decimal("0.01"))


def _coerce_optional_text(field: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailed(f"'{field}' must be text", details={"field": field})
    stripped = value.strip()
    return stripped or None


def field_changes(entity_type: str, record: Mapping[str, Any], field: str, value: Any, now: datetime) -> dict[str, Any]:
    """Validated changes for a single whitelisted field.

    ``status`` is routed through the state machine.
    """
    if field == "status":
        return transition(entity_type, record, value, now)

    allowed = EDITABLE_FIELDS.get(entity_type, frozenset())
    if field not in allowed:
        raise ValidationFailed(
            f"field '{field}' cannot be updated",
            details={"field": field, "allowed": sorted(allowed)},
        )

    if field == "priority":
        coerced: Any = _coerce_enum(Priority, field, value)
    elif field == "source":
        coerced = _coerce_enum(LeadSource, field, value)
    elif field == "inquiry_type":
        coerced = _coerce_enum(InquiryType, field, value)
    elif field == "estimated_value":
        coerced = _coerce_estimated_value(value)
    else:
        coerced = _coerce_optional_text(field, value)

    return {field: coerced, "updated_at": _updated_at(record, now)}
