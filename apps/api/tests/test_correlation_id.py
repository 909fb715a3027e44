from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from leadhub import audit
from leadhub.core.config import Settings
from leadhub.main import create_app
from leadhub.runtime import build_runtime


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    settings = Settings(jwt_secret="test-secret", notifications_enabled=False)
    with TestClient(create_app(build_runtime(settings, session_factory))) as test_client:
        yield test_client


def test_correlation_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "abc-123"


def test_correlation_id_is_generated_when_missing(client: TestClient) -> None:
    response = client.get("/health")

    generated = response.headers["x-correlation-id"]
    assert uuid.UUID(generated)


def test_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "trace-404"})

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert response.json()["correlation_id"] == "trace-404"
    assert response.headers["x-correlation-id"] == "trace-404"


def test_audit_entries_record_the_request_correlation_id(client: TestClient) -> None:
    created = client.post(
        "/api/leads",
        json={"brand_id": "brand-a", "customer_name": "Ada", "customer_email": "ada@example.com"},
        headers={"X-Correlation-Id": "create-1"},
    )

    assert created.status_code == 201
    entries = audit.entries_for("lead", created.json()["id"])
    assert entries
    assert entries[0]["correlation_id"] == "create-1"
