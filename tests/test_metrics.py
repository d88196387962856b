"""
Tests for Prometheus metrics observability.

Tests:
- Metrics endpoint returns valid Prometheus format
- Request metrics are tracked by the middleware with normalized paths
- Webhook, signature and usage counters move with the business events
"""

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from conftest import event_body
from minuteledger.observability.metrics import (
    track_request,
    track_usage_minutes,
)
from minuteledger.observability.middleware import normalize_endpoint


def sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_exists(client: TestClient):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]

    content = response.text
    assert "# TYPE" in content
    assert "# HELP" in content
    assert "minute_ledger_webhook_events_total" in content
    assert "minute_ledger_usage_minutes_recorded_total" in content


def test_track_request_increments_counter():
    labels = {"method": "POST", "endpoint": "/api/v1/uploads", "status_code": "201"}
    before = sample("minute_ledger_http_requests_total", **labels)

    track_request(method="POST", endpoint="/api/v1/uploads", status_code=201, duration_seconds=0.05)

    assert sample("minute_ledger_http_requests_total", **labels) == before + 1
    assert sample("minute_ledger_http_request_duration_seconds_count", **labels) >= 1


def test_zero_minutes_are_not_counted():
    before = sample("minute_ledger_usage_minutes_recorded_total", plan_type="free")

    track_usage_minutes("free", 0)

    assert sample("minute_ledger_usage_minutes_recorded_total", plan_type="free") == before


def test_middleware_uses_normalized_endpoint(client):
    labels = {"method": "GET", "endpoint": "/api/v1/usage/{user_id}", "status_code": "200"}
    before = sample("minute_ledger_http_requests_total", **labels)

    client.get("/api/v1/usage/user_a")
    client.get("/api/v1/usage/user_b")

    assert sample("minute_ledger_http_requests_total", **labels) == before + 2


def test_normalize_endpoint():
    assert normalize_endpoint("/api/v1/uploads") == "/api/v1/uploads"
    assert normalize_endpoint("/api/v1/uploads/9f2c") == "/api/v1/uploads/{upload_id}"
    assert (
        normalize_endpoint("/api/v1/uploads/9f2c/complete")
        == "/api/v1/uploads/{upload_id}/complete"
    )
    assert normalize_endpoint("/api/v1/usage/user_42/check") == "/api/v1/usage/{user_id}/check"
    assert normalize_endpoint("/webhooks/billing") == "/webhooks/billing"


def test_webhook_outcomes_are_counted(client, signed_post):
    body = event_body("evt_metrics_1", "customer.created", {"id": "cus_m", "metadata": {"user_id": "u"}})
    success_before = sample(
        "minute_ledger_webhook_events_total", kind="customer.created", outcome="success"
    )
    duplicate_before = sample(
        "minute_ledger_webhook_events_total", kind="customer.created", outcome="duplicate"
    )

    signed_post(client, body)
    signed_post(client, body)

    assert (
        sample("minute_ledger_webhook_events_total", kind="customer.created", outcome="success")
        == success_before + 1
    )
    assert (
        sample("minute_ledger_webhook_events_total", kind="customer.created", outcome="duplicate")
        == duplicate_before + 1
    )


def test_signature_rejections_are_counted(client):
    before = sample("minute_ledger_webhook_signature_rejections_total", reason="missing_credential")

    client.post("/webhooks/billing", content=b"{}")

    assert (
        sample("minute_ledger_webhook_signature_rejections_total", reason="missing_credential")
        == before + 1
    )


def test_usage_minutes_are_counted(client):
    before = sample("minute_ledger_usage_minutes_recorded_total", plan_type="free")
    upload = client.post(
        "/api/v1/uploads",
        json={
            "user_id": "metrics_user",
            "file_name": "clip.mp3",
            "file_path": "/uploads/clip.mp3",
            "file_size_bytes": 65 * 16_000,
        },
    ).json()

    client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")

    assert sample("minute_ledger_usage_minutes_recorded_total", plan_type="free") == before + 2


def test_unsupported_uploads_are_counted(client):
    name = "minute_ledger_upload_quota_rejections_total"
    before = sample(name, plan_type="free", reason="file_type")

    response = client.post(
        "/api/v1/uploads",
        json={
            "user_id": "metrics_user",
            "file_name": "notes.txt",
            "file_path": "/uploads/notes.txt",
            "file_size_bytes": 1000,
        },
    )

    assert response.status_code == 415
    assert sample(name, plan_type="free", reason="file_type") == before + 1
