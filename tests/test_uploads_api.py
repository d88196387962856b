"""
End-to-end tests for upload, usage and system endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from minuteledger.config import LedgerConfig, ServiceConfig
from minuteledger.main import create_app

BYTES_PER_SECOND = 16_000


def upload_payload(seconds: int, user_id: str = "user_1", size_bytes: int | None = None) -> dict:
    return {
        "user_id": user_id,
        "file_name": f"clip-{seconds}.mp3",
        "file_path": f"/uploads/{user_id}/clip-{seconds}.mp3",
        "file_size_bytes": size_bytes if size_bytes is not None else seconds * BYTES_PER_SECOND,
    }


def register(client, seconds: int, **kwargs) -> dict:
    response = client.post("/api/v1/uploads", json=upload_payload(seconds, **kwargs))
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def small_quota_client(test_settings):
    settings = test_settings.model_copy(
        update={"ledger": LedgerConfig(free_monthly_minutes=2, retry_backoff_seconds=0.0)}
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def test_register_upload(client):
    upload = register(client, 65)

    assert upload["status"] == "pending"
    assert upload["user_id"] == "user_1"
    assert upload["duration_seconds"] is None

    fetched = client.get(f"/api/v1/uploads/{upload['upload_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["file_name"] == "clip-65.mp3"


def test_complete_upload_records_minutes(client):
    first = register(client, 65)
    second = register(client, 10)

    client.post(f"/api/v1/uploads/{first['upload_id']}/complete")
    response = client.post(f"/api/v1/uploads/{second['upload_id']}/complete")

    assert response.status_code == 200
    body = response.json()
    assert body["upload"]["status"] == "processing"
    assert body["upload"]["duration_seconds"] == 10
    assert body["estimation_path"] == "bitrate_estimate"
    assert body["usage"]["monthly_usage_minutes"] == 3
    assert response.headers["X-Minutes-Used"] == "3"
    assert response.headers["X-Minutes-Remaining"] == "27"
    assert "X-Quota-Warning" not in response.headers

    summary = client.get("/api/v1/usage/user_1").json()
    assert summary["monthly_usage_minutes"] == 3
    assert summary["total_usage_minutes"] == 3


def test_repeat_completion_adds_nothing(client):
    upload = register(client, 65)

    client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")
    repeat = client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")

    assert repeat.status_code == 200
    assert repeat.json()["usage"]["duplicate"] is True
    assert repeat.json()["usage"]["minutes_added"] == 0
    assert client.get("/api/v1/usage/user_1").json()["monthly_usage_minutes"] == 2


def test_file_over_plan_cap_is_413(client):
    response = client.post(
        "/api/v1/uploads",
        json=upload_payload(10, size_bytes=100 * 1024 * 1024 + 1),
    )

    assert response.status_code == 413
    assert response.json()["detail"]["error"] == "file_too_large"
    assert response.json()["detail"]["plan_type"] == "free"


def test_unsupported_file_type_is_415(client):
    payload = upload_payload(10)
    payload.update(file_name="notes.txt", file_path="/uploads/notes.txt", content_type="text/plain")

    response = client.post("/api/v1/uploads", json=payload)

    assert response.status_code == 415
    assert response.json()["detail"]["error"] == "unsupported_media_type"


def test_supported_mime_type_without_extension_is_accepted(client):
    payload = upload_payload(10)
    payload.update(file_name="recording", content_type="audio/ogg")

    assert client.post("/api/v1/uploads", json=payload).status_code == 201


def test_implausible_probed_bitrate_is_422(client, monkeypatch):
    from minuteledger.media.duration import DurationEstimate, EstimationPath

    upload = register(client, 10, size_bytes=60 * 1024 * 1024)

    async def probed(file_path, size_bytes):
        return DurationEstimate(duration_seconds=3, path=EstimationPath.PROBE)

    monkeypatch.setattr(client.app.state.upload_pipeline.estimator, "estimate", probed)

    response = client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")

    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "implausible_bitrate"
    assert client.get(f"/api/v1/uploads/{upload['upload_id']}").json()["status"] == "failed"
    assert client.get("/api/v1/usage/user_1").json()["total_usage_minutes"] == 0


def test_quota_exhausted_is_429(small_quota_client):
    upload = register(small_quota_client, 120)
    completed = small_quota_client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")
    assert completed.headers["X-Quota-Warning"] == "Monthly quota exceeded"

    response = small_quota_client.post("/api/v1/uploads", json=upload_payload(10))

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "quota_exceeded"
    assert body["usage"]["monthly_usage_minutes"] == 2
    assert response.headers["Retry-After"] == "3600"
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "0"


def test_status_update_forward_and_conflict(client):
    upload = register(client, 10)
    upload_id = upload["upload_id"]

    ok = client.patch(f"/api/v1/uploads/{upload_id}/status", json={"status": "processing"})
    assert ok.status_code == 200
    assert ok.json()["status"] == "processing"

    done = client.patch(f"/api/v1/uploads/{upload_id}/status", json={"status": "completed"})
    assert done.json()["status"] == "completed"

    backwards = client.patch(f"/api/v1/uploads/{upload_id}/status", json={"status": "pending"})
    assert backwards.status_code == 409


def test_invalid_status_value_is_422(client):
    upload = register(client, 10)
    response = client.patch(
        f"/api/v1/uploads/{upload['upload_id']}/status", json={"status": "archived"}
    )
    assert response.status_code == 422


def test_unknown_upload_is_404(client):
    assert client.get("/api/v1/uploads/missing").status_code == 404
    assert client.post("/api/v1/uploads/missing/complete").status_code == 404
    assert (
        client.patch("/api/v1/uploads/missing/status", json={"status": "processing"}).status_code
        == 404
    )


def test_invalid_upload_payload_is_422(client):
    response = client.post("/api/v1/uploads", json={"user_id": "user_1", "file_size_bytes": -1})
    assert response.status_code == 422


# Usage


def test_quota_check(client):
    upload = register(client, 25 * 60)
    client.post(f"/api/v1/uploads/{upload['upload_id']}/complete")

    fits = client.post("/api/v1/usage/user_1/check", json={"additional_seconds": [120, 60]})
    too_much = client.post("/api/v1/usage/user_1/check", json={"additional_seconds": [400]})

    assert fits.status_code == 200
    assert fits.json()["within_limit"] is True
    assert fits.json()["requested_minutes"] == 3
    assert too_much.json()["within_limit"] is False


def test_quota_check_rejects_negative_durations(client):
    response = client.post("/api/v1/usage/user_1/check", json={"additional_seconds": [-5]})
    assert response.status_code == 422


def test_usage_for_new_user(client):
    summary = client.get("/api/v1/usage/nobody").json()

    assert summary["plan_type"] == "free"
    assert summary["monthly_usage_minutes"] == 0
    assert summary["monthly_limit"] == 30
    assert summary["quota_exceeded"] is False


# System


def test_liveness(client):
    response = client.get("/health/liveness")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


def test_readiness(client):
    response = client.get("/health/readiness")
    assert response.status_code == 200
    assert response.json()["ready"] is True


def test_readiness_fails_when_store_is_unusable(client, monkeypatch):
    from minuteledger.storage.database import StoreUnavailable

    async def broken_ping():
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(client.app.state.db, "ping", broken_ping)

    response = client.get("/health/readiness")

    assert response.status_code == 503
    assert response.json()["ready"] is False


def test_metrics_endpoint(client):
    register(client, 10)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "minute_ledger_http_requests_total" in response.text


def test_request_id_headers(client):
    response = client.get("/api/v1/usage/user_1", headers={"X-Request-ID": "req_fixed"})
    assert response.headers["X-Request-ID"] == "req_fixed"
    assert response.headers["X-Trace-ID"].startswith("trace_")


def test_oversized_body_is_413(test_settings):
    settings = test_settings.model_copy(
        update={"service": ServiceConfig(max_request_body_size=1024)}
    )
    with TestClient(create_app(settings)) as client:
        response = client.post(
            "/webhooks/billing",
            content=b"x" * 2048,
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )

    assert response.status_code == 413


def test_status_contention_is_409_retry(client, monkeypatch):
    upload = register(client, 10)

    async def always_lost(upload_id, expected, status):
        return False

    monkeypatch.setattr(client.app.state.db, "update_upload_status", always_lost)

    response = client.patch(
        f"/api/v1/uploads/{upload['upload_id']}/status", json={"status": "processing"}
    )

    assert response.status_code == 409
    assert response.json()["detail"] == "Concurrent update, retry the request"
