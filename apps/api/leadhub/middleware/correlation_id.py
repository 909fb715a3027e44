from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadhub.context import reset_correlation_id, reset_surface_id, set_correlation_id, set_surface_id


CORRELATION_HEADER = "x-correlation-id"
SURFACE_HEADER = "x-surface-id"

_SAFE_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def _header_id(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value and _SAFE_ID.match(value):
        return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and the dashboard surface id to the request context.

    A missing or malformed ``x-correlation-id`` is replaced by a fresh uuid;
    a malformed ``x-surface-id`` is ignored.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _header_id(request, CORRELATION_HEADER) or str(uuid.uuid4())
        surface_id = _header_id(request, SURFACE_HEADER)
        request.state.correlation_id = correlation_id
        request.state.surface_id = surface_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if surface_id is not None:
                span.set_attribute("leadhub.surface_id", surface_id)

        correlation_token = set_correlation_id(correlation_id)
        surface_token = set_surface_id(surface_id)
        try:
            response = await call_next(request)
        finally:
            reset_surface_id(surface_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
