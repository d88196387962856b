"""
Typed billing events decoded from verified webhook bodies.

Accepts both Stripe-style envelopes ({"id", "type", "created", "data": {"object": ...}})
and Paddle-style envelopes ({"event_id", "event_type", "occurred_at", "data": ...}).
"""

import json
import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from minuteledger.models.events import (
    EventKind,
    EventOutcome,
    ProcessedEventRecord,
    WebhookEvent,
)
from minuteledger.webhooks.errors import MalformedPayload

__all__ = [
    "CustomerPayload",
    "EventKind",
    "EventOutcome",
    "ProcessedEventRecord",
    "SubscriptionPayload",
    "WebhookEvent",
    "decode_event",
    "kind_for",
]

# Wire type string -> event kind
PROVIDER_EVENT_KINDS: dict[str, EventKind] = {
    "subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.canceled": EventKind.SUBSCRIPTION_CANCELED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELED,
    "customer.created": EventKind.CUSTOMER_CREATED,
    "customer.updated": EventKind.CUSTOMER_UPDATED,
}


def kind_for(provider_type: str) -> EventKind:
    """Map a provider event type to its kind (UNKNOWN when unrecognized)."""
    return PROVIDER_EVENT_KINDS.get(provider_type, EventKind.UNKNOWN)


class SubscriptionPayload(BaseModel):
    """Subscription fields pulled out of a provider payload."""

    subscription_id: str | None = None
    customer_id: str | None = None
    plan_id: str | None = None
    status: str | None = None
    user_id: str | None = None

    @classmethod
    def from_event(cls, event: WebhookEvent) -> "SubscriptionPayload":
        data = event.payload
        customer = _first(data, "customer", "customer_id", "customerId")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return cls(
            subscription_id=_first(data, "subscription_id", "subscriptionId", "id"),
            customer_id=customer,
            plan_id=_plan_id(data),
            status=_first(data, "status"),
            user_id=_metadata_user_id(data),
        )


class CustomerPayload(BaseModel):
    """Customer fields pulled out of a provider payload."""

    customer_id: str | None = None
    email: str | None = None
    user_id: str | None = None

    @classmethod
    def from_event(cls, event: WebhookEvent) -> "CustomerPayload":
        data = event.payload
        return cls(
            customer_id=_first(data, "customer_id", "customerId", "id"),
            email=_first(data, "email"),
            user_id=_metadata_user_id(data),
        )


def _first(data: dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among keys."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _plan_id(data: dict[str, Any]) -> str | None:
    """Plan id from a flat field, Stripe items/plan, or Paddle items."""
    plan_id = _first(data, "plan_id", "planId", "price_id", "priceId")
    if plan_id:
        return plan_id

    items = data.get("items")
    if isinstance(items, dict):
        # Stripe list object
        items = items.get("data")
    if isinstance(items, list) and items:
        first_item = items[0] if isinstance(items[0], dict) else {}
        price = first_item.get("price") or first_item.get("plan") or {}
        if isinstance(price, dict) and price.get("id"):
            return price["id"]

    plan = data.get("plan")
    if isinstance(plan, dict) and plan.get("id"):
        return plan["id"]

    return None


def _metadata_user_id(data: dict[str, Any]) -> str | None:
    for container in ("metadata", "custom_data", "customData"):
        nested = data.get(container)
        if isinstance(nested, dict):
            user_id = _first(nested, "user_id", "userId")
            if user_id:
                return str(user_id)
    user_id = _first(data, "user_id", "userId")
    return str(user_id) if user_id else None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, bool):
        raise MalformedPayload("Event timestamp is not a valid time")
    if isinstance(value, int | float):
        if not math.isfinite(value):
            raise MalformedPayload("Event timestamp is not a finite number")
        try:
            return datetime.fromtimestamp(value, UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedPayload(f"Event timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedPayload(f"Event timestamp is not ISO-8601: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        try:
            return parsed.astimezone(UTC)
        except OverflowError as e:
            raise MalformedPayload(f"Event timestamp out of range: {value!r}") from e
    raise MalformedPayload("Event is missing its timestamp")


def decode_event(raw_body: bytes, signature: str = "") -> WebhookEvent:
    """
    Decode a verified webhook body into a WebhookEvent.

    Args:
        raw_body: Raw request body (already signature-verified)
        signature: Signature header value it was verified with

    Returns:
        WebhookEvent: Immutable typed event

    Raises:
        MalformedPayload: If the body is not a provider event envelope
    """
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayload("Invalid JSON payload") from e

    if not isinstance(envelope, dict):
        raise MalformedPayload("Event envelope must be a JSON object")

    event_id = _first(envelope, "id", "event_id", "eventId")
    if not isinstance(event_id, str):
        raise MalformedPayload("Event is missing its id")

    provider_type = _first(envelope, "type", "event_type", "eventType")
    if not isinstance(provider_type, str):
        raise MalformedPayload("Event is missing its type")

    occurred_at = _parse_timestamp(_first(envelope, "created", "occurred_at", "occurredAt"))

    data = envelope.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        data = data["object"]
    if not isinstance(data, dict):
        raise MalformedPayload("Event data must be a JSON object")

    return WebhookEvent(
        event_id=event_id,
        kind=kind_for(provider_type),
        provider_type=provider_type,
        occurred_at=occurred_at,
        payload=data,
        raw_body=raw_body,
        signature=signature or "",
    )
