from __future__ import annotations

from typing import Any


class LeadHubError(Exception):
    """Base error for lifecycle, policy and persistence failures.

    ``code`` is a stable machine-readable identifier, ``status_code`` the HTTP
    status the API layer answers with.
    """

    code = "leadhub_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class Unauthorized(LeadHubError):
    code = "unauthorized"
    status_code = 403


class NotFound(LeadHubError):
    code = "not_found"
    status_code = 404


class InvalidTransition(LeadHubError):
    code = "invalid_transition"
    status_code = 422


class Conflict(LeadHubError):
    code = "conflict"
    status_code = 409
    retryable = True


class UpstreamUnavailable(LeadHubError):
    code = "upstream_unavailable"
    status_code = 503
    retryable = True


class ValidationFailed(LeadHubError):
    code = "validation_failed"
    status_code = 422


class InternalError(LeadHubError):
    """A failure that is not an upstream outage (a bug); retrying will not help."""

    code = "internal_error"
    status_code = 500
