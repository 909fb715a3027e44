from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class MonthlyTrend(BaseModel):
    month: str
    count: int
    converted: int


class FunnelMetrics(BaseModel):
    total_count: int
    status_counts: dict[str, int]
    converted_count: int
    qualified_count: int
    conversion_rate: float = Field(ge=0, le=1)
    today_count: int
    this_month_count: int
    leads_by_source: dict[str, int]
    monthly_trends: list[MonthlyTrend]


class TopBrand(BaseModel):
    brand_id: str
    revenue: Decimal
    commission: Decimal
    commission_rate: float
    converted_count: int
    lead_count: int


class PipelineValue(BaseModel):
    total: Decimal
    explicit_total: Decimal
    estimated_total: Decimal
    explicit_count: int
    estimated_count: int
    method: Literal["explicit", "estimator", "explicit_only"]


class InquiryStats(BaseModel):
    total_count: int
    unread_count: int
    replied_count: int
    urgent_count: int
    today_count: int
    this_week_count: int
    response_rate: float = Field(ge=0, le=1)
    by_type: dict[str, int]
    by_priority: dict[str, int]
    by_status: dict[str, int]


class BrandCommission(BaseModel):
    brand_id: str
    revenue: Decimal
    commission_rate: float
    commission: Decimal
    converted_count: int


class CommissionSummary(BaseModel):
    total_revenue: Decimal
    total_commission: Decimal
    converted_count: int
    brands: list[BrandCommission]
