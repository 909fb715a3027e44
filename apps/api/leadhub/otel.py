from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from leadhub.core.config import Settings


SERVICE_NAME = "leadhub"

_provider: TracerProvider | None = None
_exporters_installed = False


def _tracer_provider(version: str) -> TracerProvider:
    # the global provider can only be set once per process
    global _provider
    if _provider is None:
        resource = Resource.create({"service.name": SERVICE_NAME, "service.version": version})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    """Install the exporters configured in ``settings``; no-op when tracing is off."""
    global _exporters_installed
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings.app_version)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_installed = True
    return provider


def install_memory_exporter(version: str = "test") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(version).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    """Tags FastAPI server spans with the caller supplied correlation and surface ids."""
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers") or [])
    for header, attribute in ((b"x-correlation-id", "correlation_id"), (b"x-surface-id", "leadhub.surface_id")):
        raw = headers.get(header)
        if raw:
            span.set_attribute(attribute, raw.decode("latin-1"))
