"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings (signing secret, temp database, probe off, no rate limits)
- A freshly initialized ledger database
- Signed webhook bodies
- FastAPI test client
"""

import json
from datetime import UTC, datetime
from typing import Any

import pytest
from fastapi.testclient import TestClient

from minuteledger.config import (
    LedgerConfig,
    LoggingConfig,
    MediaConfig,
    RateLimitConfig,
    Settings,
    StorageConfig,
    StripeConfig,
)
from minuteledger.models.events import EventKind, WebhookEvent
from minuteledger.resilience.circuit_breakers import reset_all_breakers
from minuteledger.storage.database import LedgerDatabase
from minuteledger.webhooks.signing import SignatureVerifier

TEST_WEBHOOK_SECRET = "whsec_test_0123456789abcdef"


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment: temp database, probe disabled."""
    return Settings(
        stripe=StripeConfig(api_key="", webhook_secret=TEST_WEBHOOK_SECRET),
        ledger=LedgerConfig(retry_backoff_seconds=0.0),
        media=MediaConfig(probe_enabled=False),
        storage=StorageConfig(database_path=str(tmp_path / "ledger.db")),
        rate_limit=RateLimitConfig(enabled=False),
        logging=LoggingConfig(level="INFO", json_output=False, environment="development"),
    )


@pytest.fixture
async def db(tmp_path):
    """Initialized ledger database in a temp directory."""
    database = LedgerDatabase(db_path=str(tmp_path / "ledger.db"))
    await database.initialize()
    yield database
    database.close()


@pytest.fixture(autouse=True)
def closed_breakers():
    """Every test starts with the Stripe breaker closed."""
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(TEST_WEBHOOK_SECRET)


def event_body(
    event_id: str,
    event_type: str,
    data: dict[str, Any],
    created: int | None = None,
) -> bytes:
    """Stripe-style envelope, serialized exactly as it would be sent."""
    envelope = {
        "id": event_id,
        "type": event_type,
        "created": created if created is not None else 1_700_000_000,
        "data": {"object": data},
    }
    return json.dumps(envelope).encode("utf-8")


def make_event(
    event_id: str,
    kind: EventKind,
    data: dict[str, Any],
    occurred_at: datetime | None = None,
    provider_type: str | None = None,
) -> WebhookEvent:
    """Build a verified event directly (bypassing signing)."""
    return WebhookEvent(
        event_id=event_id,
        kind=kind,
        provider_type=provider_type or kind.value,
        occurred_at=occurred_at or datetime(2024, 1, 1, tzinfo=UTC),
        payload=data,
        raw_body=b"{}",
        signature="",
    )


@pytest.fixture
def signed_post(verifier):
    """Post a signed event body to the billing webhook."""

    def _post(client: TestClient, body: bytes, header: str | None = None):
        headers = {"Content-Type": "application/json"}
        headers["Stripe-Signature"] = header if header is not None else verifier.sign_payload(body)
        return client.post("/webhooks/billing", content=body, headers=headers)

    return _post


@pytest.fixture
def client(test_settings):
    """Test client with the lifespan running."""
    from minuteledger.main import create_app

    with TestClient(create_app(test_settings)) as test_client:
        yield test_client
