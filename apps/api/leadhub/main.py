from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadhub.api.errors import leadhub_error_handler, request_validation_error_handler
from leadhub.api.routes import router as api_router
from leadhub.core.config import get_settings
from leadhub.errors import LeadHubError
from leadhub.logging import configure_logging
from leadhub.middleware.correlation_id import CorrelationIdMiddleware
from leadhub.middleware.request_logging import RequestLoggingMiddleware
from leadhub.otel import configure_tracing, server_request_hook
from leadhub.runtime import Runtime, build_runtime


logger = logging.getLogger("leadhub.lifecycle")


def create_app(runtime: Runtime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging(settings.log_level)
    configure_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("system_started", extra={"outcome": settings.app_env})
        yield
        await app.state.runtime.shutdown()
        logger.info("system_stopped", extra={"outcome": settings.app_env})

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.runtime = runtime or build_runtime(settings)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(LeadHubError, leadhub_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)  # type: ignore[arg-type]
    app.include_router(api_router)

    if not getattr(app, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
    return app


app = create_app()
