from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from leadhub.analytics.schemas import CommissionSummary, FunnelMetrics, InquiryStats, PipelineValue, TopBrand
from leadhub.api.errors import error_response, leadhub_error_response
from leadhub.errors import LeadHubError
from leadhub.funnel.api import get_current_identity
from leadhub.platform.security import CallerIdentity
from leadhub.runtime import Runtime, get_runtime

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _invalid_timezone(request: Request, tz: str) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="validation_failed",
        message=f"unknown timezone '{tz}'",
        details={"field": "tz"},
    )


@router.get("/funnel", response_model=FunnelMetrics)
async def funnel(
    request: Request,
    tz: str | None = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> FunnelMetrics | JSONResponse:
    try:
        return await runtime.analytics.compute_funnel(identity, tz=tz)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)
    except (KeyError, ValueError):
        return _invalid_timezone(request, str(tz))


@router.get("/top-brands", response_model=list[TopBrand])
async def top_brands(
    request: Request,
    k: int | None = Query(default=None, ge=1, le=100),
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> list[TopBrand] | JSONResponse:
    try:
        return await runtime.analytics.compute_top_brands(identity, k or runtime.settings.top_brands_limit)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@router.get("/pipeline-value", response_model=PipelineValue)
async def pipeline_value(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> PipelineValue | JSONResponse:
    try:
        return await runtime.analytics.compute_pipeline_value(identity)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)


@router.get("/inquiries", response_model=InquiryStats)
async def inquiry_stats(
    request: Request,
    tz: str | None = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InquiryStats | JSONResponse:
    try:
        return await runtime.analytics.compute_inquiry_stats(identity, tz=tz)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)
    except (KeyError, ValueError):
        return _invalid_timezone(request, str(tz))


@router.get("/commission", response_model=CommissionSummary)
async def commission(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> CommissionSummary | JSONResponse:
    try:
        return await runtime.analytics.compute_commission_summary(identity)
    except LeadHubError as exc:
        return leadhub_error_response(request, exc)
