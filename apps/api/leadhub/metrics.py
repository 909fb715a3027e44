from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "leadhub_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "leadhub_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

mutations_total = Counter(
    "leadhub_mutations_total",
    "Coordinated mutations by entity, operation and outcome",
    ["entity_type", "operation", "outcome"],
)

mutation_duration_seconds = Histogram(
    "leadhub_mutation_duration_seconds",
    "Coordinated mutation duration in seconds",
    ["entity_type", "operation"],
)

mutation_rollbacks_total = Counter(
    "leadhub_mutation_rollbacks_total",
    "Optimistic updates rolled back by error code",
    ["entity_type", "reason"],
)

policy_denials_total = Counter(
    "leadhub_policy_denials_total",
    "Access policy denials",
    ["entity_type", "action", "role"],
)

sync_events_published_total = Counter(
    "leadhub_sync_events_published_total",
    "Cross-surface sync events published",
    ["event_type", "origin"],
)

sync_poll_divergences_total = Counter(
    "leadhub_sync_poll_divergences_total",
    "Records found diverging from a surface view during polling",
    ["entity_type"],
)

valuation_fallbacks_total = Counter(
    "leadhub_valuation_fallbacks_total",
    "Pipeline valuations computed by the explicit-only fallback",
    ["reason"],
)

notification_failures_total = Counter(
    "leadhub_notification_failures_total",
    "Notification dispatches that raised",
    ["intent_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_mutation(entity_type: str, operation: str, outcome: str, duration: float) -> None:
    mutations_total.labels(entity_type=entity_type, operation=operation, outcome=outcome).inc()
    mutation_duration_seconds.labels(entity_type=entity_type, operation=operation).observe(duration)


def observe_mutation_rollback(entity_type: str, reason: str) -> None:
    mutation_rollbacks_total.labels(entity_type=entity_type, reason=reason).inc()


def observe_policy_denial(entity_type: str, action: str, role: str) -> None:
    policy_denials_total.labels(entity_type=entity_type, action=action, role=role).inc()


def observe_sync_event(event_type: str, origin: str) -> None:
    sync_events_published_total.labels(event_type=event_type, origin=origin).inc()


def observe_poll_divergences(entity_type: str, count: int) -> None:
    if count > 0:
        sync_poll_divergences_total.labels(entity_type=entity_type).inc(count)


def observe_valuation_fallback(reason: str) -> None:
    valuation_fallbacks_total.labels(reason=reason).inc()


def observe_notification_failure(intent_type: str) -> None:
    notification_failures_total.labels(intent_type=intent_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
