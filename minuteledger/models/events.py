"""
Billing event data models.

WebhookEvent is immutable once received; ProcessedEventRecord is the
append-only dedup log entry keyed by the provider event id.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Closed set of event kinds the dispatcher knows about."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    UNKNOWN = "unknown"


class EventOutcome(str, Enum):
    """Recorded outcome of a dispatched event."""

    SUCCESS = "success"
    IGNORED = "ignored"


class WebhookEvent(BaseModel):
    """
    Verified provider event.

    Created once on receipt and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1)
    kind: EventKind
    provider_type: str
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    raw_body: bytes = Field(default=b"", repr=False)
    signature: str = Field(default="", repr=False)


class ProcessedEventRecord(BaseModel):
    """Dedup log entry (first writer wins on a duplicate event id)."""

    event_id: str
    kind: EventKind
    outcome: EventOutcome = EventOutcome.SUCCESS
    detail: str = ""
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
