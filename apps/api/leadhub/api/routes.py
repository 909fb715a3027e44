from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadhub.analytics.api import router as analytics_router
from leadhub.funnel.api import get_current_identity, inquiries_router, leads_router
from leadhub.metrics import generate_metrics_payload, metrics_content_type
from leadhub.platform.security import CallerIdentity, Role
from leadhub.runtime import Runtime, get_runtime

router = APIRouter()
router.include_router(leads_router)
router.include_router(inquiries_router)
router.include_router(analytics_router)


@router.get("/health", tags=["system"])
def health(runtime: Runtime = Depends(get_runtime)) -> dict[str, str]:
    settings = runtime.settings
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(identity: CallerIdentity = Depends(get_current_identity)) -> dict[str, str | list[str]]:
    return {
        "user_id": identity.user_id,
        "role": identity.role,
        "brand_ids": sorted(identity.owned_brand_ids),
    }


@router.get("/metrics", tags=["system"])
def metrics(
    runtime: Runtime = Depends(get_runtime),
    identity: CallerIdentity = Depends(get_current_identity),
) -> Response:
    if not runtime.settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if identity.role != Role.SUPER_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics require super_admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
