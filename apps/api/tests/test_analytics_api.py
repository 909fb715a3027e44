from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session, sessionmaker

from leadhub.core.config import Settings
from leadhub.main import create_app
from leadhub.runtime import build_runtime


SECRET = "test-secret"


def _auth(sub: str, role: str, brand_ids: list[str] | None = None) -> dict[str, str]:
    token = jwt.encode({"sub": sub, "role": role, "brand_ids": brand_ids or []}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


ROOT = _auth("root-1", "super_admin")
BRAND_A = _auth("owner-a", "brand_admin", ["brand-a"])


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    settings = Settings(
        jwt_secret=SECRET,
        notifications_enabled=False,
        brand_commission_rates={"brand-a": 0.1},
        default_commission_rate=0.05,
    )
    app = create_app(build_runtime(settings, session_factory))
    with TestClient(app) as test_client:
        yield test_client


def _lead(client: TestClient, brand_id: str, value: str | None = None, status: str | None = None) -> dict:
    payload = {"brand_id": brand_id, "customer_name": "Ada", "customer_email": "ada@example.com"}
    if value is not None:
        payload["estimated_value"] = value
    created = client.post("/api/leads", json=payload)
    assert created.status_code == 201
    body = created.json()
    if status is not None:
        moved = client.patch(f"/api/leads/{body['id']}/status", json={"status": status}, headers=ROOT)
        assert moved.status_code == 200
        body = moved.json()
    return body


def test_funnel_reflects_status_changes_immediately(client: TestClient) -> None:
    _lead(client, "brand-a", "100", status="converted")
    _lead(client, "brand-a")
    _lead(client, "brand-b")

    scoped = client.get("/api/analytics/funnel", headers=BRAND_A)
    assert scoped.status_code == 200
    assert scoped.json()["total_count"] == 2
    assert scoped.json()["conversion_rate"] == pytest.approx(0.5)
    assert scoped.json()["today_count"] == 2

    _lead(client, "brand-a", status="converted")
    refreshed = client.get("/api/analytics/funnel", headers=BRAND_A)
    assert refreshed.json()["total_count"] == 3
    assert refreshed.json()["converted_count"] == 2


def test_funnel_rejects_unknown_timezones(client: TestClient) -> None:
    response = client.get("/api/analytics/funnel", params={"tz": "Mars/Olympus_Mons"}, headers=ROOT)

    assert response.status_code == 422
    assert response.json()["code"] == "validation_failed"
    assert response.json()["details"] == {"field": "tz"}


def test_top_brands_and_commission(client: TestClient) -> None:
    _lead(client, "brand-a", "1000", status="converted")
    _lead(client, "brand-b", "400", status="converted")
    _lead(client, "brand-b")

    top = client.get("/api/analytics/top-brands", params={"k": 1}, headers=ROOT)
    commission = client.get("/api/analytics/commission", headers=ROOT)

    assert top.status_code == 200
    assert [item["brand_id"] for item in top.json()] == ["brand-a"]
    assert top.json()[0]["commission"] == "100.00"
    assert commission.json()["total_revenue"] == "1400.00"
    assert commission.json()["total_commission"] == "120.00"


def test_pipeline_value_estimates_missing_values_from_history(client: TestClient) -> None:
    _lead(client, "brand-a", "600", status="converted")
    _lead(client, "brand-a", "50")
    _lead(client, "brand-a")

    response = client.get("/api/analytics/pipeline-value", headers=BRAND_A)

    assert response.status_code == 200
    body = response.json()
    assert body["method"] == "estimator"
    assert body["explicit_total"] == "50.00"
    assert body["estimated_total"] == "600.00"
    assert body["total"] == "650.00"


def test_inquiry_stats(client: TestClient) -> None:
    created = client.post(
        "/api/inquiries",
        json={
            "brand_id": "brand-a",
            "customer_name": "Robin",
            "customer_email": "robin@example.com",
            "subject": "Hi",
            "message": "Question",
            "priority": "urgent",
        },
    )
    client.post(f"/api/inquiries/{created.json()['id']}/replies", json={"message": "Answer"}, headers=ROOT)

    response = client.get("/api/analytics/inquiries", headers=BRAND_A)

    assert response.status_code == 200
    body = response.json()
    assert body["total_count"] == 1
    assert body["urgent_count"] == 1
    assert body["replied_count"] == 1
    assert body["response_rate"] == 1.0


def test_analytics_require_staff(client: TestClient) -> None:
    response = client.get("/api/analytics/funnel", headers=_auth("customer-1", "user"))

    assert response.status_code == 403
    assert response.json()["code"] == "unauthorized"
