from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadhub.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("leadhub.request")

# Health and metrics endpoints are scraped constantly; keep them out of the request log.
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._finish(request, 500, _elapsed_ms(started), failed=True)
            raise

        # the route label only exists after routing
        self._finish(request, response.status_code, _elapsed_ms(started))
        return response

    def _finish(self, request: Request, status_code: int, duration_ms: float, failed: bool = False) -> None:
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
        if path in QUIET_PATHS and not failed:
            return

        extra = {"method": request.method, "path": path, "status_code": status_code, "duration_ms": duration_ms}
        if failed:
            logger.error("http.error", exc_info=True, extra=extra)
        elif status_code >= 500:
            logger.warning("http.request", extra=extra)
        else:
            logger.info("http.request", extra=extra)
