"""
Subscription lifecycle state machine.

Applies verified subscription and customer events to a user's billing record.

Transition table (anything else is skipped, which counts as success):
    none | canceled   + created                 -> active
    active | past_due + updated(status=active)   -> active
    active            + updated(status=past_due) -> past_due
    any               + canceled                -> canceled

Events older than (or as old as) the last applied event are skipped as stale.
Each transition is one conditional write on last_event_timestamp, retried on
conflict.
"""

import logging

from minuteledger.billing.dispatcher import EventHandler, HandlerFailure
from minuteledger.billing.events import CustomerPayload, SubscriptionPayload
from minuteledger.billing.stripe_service import StripeService
from minuteledger.config import LedgerConfig
from minuteledger.models.billing import (
    CustomerLink,
    PlanType,
    SubscriptionStatus,
    UserBillingRecord,
)
from minuteledger.models.events import EventKind, WebhookEvent
from minuteledger.observability.metrics import track_write_conflict
from minuteledger.resilience.circuit_breakers import retrying_on
from minuteledger.storage.database import LedgerDatabase, WriteConflict

logger = logging.getLogger(__name__)


class UnknownCustomer(HandlerFailure):
    """No source could map the event's customer to a user."""

    pass


# Provider status -> status the transition table understands
_STATUS_ALIASES = {
    "trialing": "active",
    "unpaid": "past_due",
    "canceled": "canceled",
    "cancelled": "canceled",
    "incomplete_expired": "canceled",
}

# (current status, signal) -> next status
_TRANSITIONS: dict[tuple[SubscriptionStatus, str], SubscriptionStatus] = {
    (SubscriptionStatus.NONE, "created"): SubscriptionStatus.ACTIVE,
    (SubscriptionStatus.CANCELED, "created"): SubscriptionStatus.ACTIVE,
    (SubscriptionStatus.ACTIVE, "active"): SubscriptionStatus.ACTIVE,
    (SubscriptionStatus.PAST_DUE, "active"): SubscriptionStatus.ACTIVE,
    (SubscriptionStatus.ACTIVE, "past_due"): SubscriptionStatus.PAST_DUE,
}


def normalize_status(provider_status: str | None) -> str | None:
    if not provider_status:
        return None
    status = provider_status.lower()
    return _STATUS_ALIASES.get(status, status)


def next_subscription_status(
    current: SubscriptionStatus,
    kind: EventKind,
    provider_status: str | None = None,
) -> SubscriptionStatus | None:
    """
    Apply the transition table.

    Args:
        current: Status stored on the billing record
        kind: Subscription event kind
        provider_status: Raw status from the payload (updated events)

    Returns:
        Next status, or None if the combination is not allowed
    """
    status = normalize_status(provider_status)

    if kind == EventKind.SUBSCRIPTION_CANCELED:
        return SubscriptionStatus.CANCELED

    if kind == EventKind.SUBSCRIPTION_CREATED:
        signal = "created"
    elif kind == EventKind.SUBSCRIPTION_UPDATED:
        if status == "canceled":
            return SubscriptionStatus.CANCELED
        signal = status or ""
    else:
        return None

    return _TRANSITIONS.get((current, signal))


def plan_type_for(plan_id: str | None, config: LedgerConfig) -> PlanType:
    """Pro when the plan id is listed or carries a pro prefix, free otherwise."""
    if not plan_id:
        return PlanType.FREE
    if plan_id in config.pro_plan_ids:
        return PlanType.PRO
    lowered = plan_id.lower()
    if any(lowered.startswith(prefix.lower()) for prefix in config.pro_plan_prefixes):
        return PlanType.PRO
    return PlanType.FREE


class SubscriptionStateHandler:
    """
    Applies billing lifecycle events to UserBillingRecord.

    The only writer of billing records.
    """

    def __init__(self, db: LedgerDatabase, stripe_service: StripeService, config: LedgerConfig):
        self.db = db
        self.stripe_service = stripe_service
        self.config = config

    def handlers(self) -> dict[EventKind, EventHandler]:
        """Handler registry for the event dispatcher."""
        return {
            EventKind.SUBSCRIPTION_CREATED: self.handle_subscription_event,
            EventKind.SUBSCRIPTION_UPDATED: self.handle_subscription_event,
            EventKind.SUBSCRIPTION_CANCELED: self.handle_subscription_event,
            EventKind.CUSTOMER_CREATED: self.handle_customer_event,
            EventKind.CUSTOMER_UPDATED: self.handle_customer_event,
        }

    async def handle_subscription_event(self, event: WebhookEvent) -> str:
        """
        Apply a subscription created/updated/canceled event.

        Returns:
            str: applied, stale or skipped

        Raises:
            UnknownCustomer: If the user cannot be resolved
            WriteConflict: If every conditional write attempt lost a race
        """
        payload = SubscriptionPayload.from_event(event)
        user_id = await self._resolve_user(payload)

        detail = "skipped"
        async for attempt in retrying_on(
            (WriteConflict,),
            max_attempts=self.config.max_write_retries,
            min_wait=self.config.retry_backoff_seconds,
        ):
            with attempt:
                detail = await self._transition(user_id, event, payload)
        return detail

    async def handle_customer_event(self, event: WebhookEvent) -> str:
        """Link a provider customer to its user (customer created/updated)."""
        payload = CustomerPayload.from_event(event)
        if not payload.customer_id:
            logger.warning(
                "Customer event without customer id",
                extra={"event_id": event.event_id},
            )
            return "skipped"

        await self.db.upsert_customer_link(
            CustomerLink(
                customer_id=payload.customer_id,
                user_id=payload.user_id,
                email=payload.email,
            )
        )
        if payload.user_id:
            self.stripe_service.remember(payload.customer_id, payload.user_id)

        logger.info(
            "Customer linked",
            extra={
                "event_id": event.event_id,
                "stripe_customer_id": payload.customer_id,
                "user_id": payload.user_id,
            },
        )
        return "linked"

    async def _resolve_user(self, payload: SubscriptionPayload) -> str:
        if payload.user_id:
            if payload.customer_id:
                await self.db.upsert_customer_link(
                    CustomerLink(customer_id=payload.customer_id, user_id=payload.user_id)
                )
                self.stripe_service.remember(payload.customer_id, payload.user_id)
            return payload.user_id

        if payload.customer_id:
            user_id = await self.stripe_service.resolve_user_id(payload.customer_id)
            if user_id:
                return user_id

        logger.warning(
            "Subscription event for unknown customer",
            extra={"stripe_customer_id": payload.customer_id},
        )
        raise UnknownCustomer(f"No user linked to customer {payload.customer_id!r}")

    async def _transition(
        self, user_id: str, event: WebhookEvent, payload: SubscriptionPayload
    ) -> str:
        record = await self.db.ensure_billing_record(user_id)

        if not record.is_newer(event.occurred_at):
            logger.info(
                "Skipping stale subscription event",
                extra={
                    "event_id": event.event_id,
                    "user_id": user_id,
                    "occurred_at": event.occurred_at.isoformat(),
                    "last_event_timestamp": record.last_event_timestamp.isoformat(),
                },
            )
            return "stale"

        next_status = next_subscription_status(record.status, event.kind, payload.status)
        if next_status is None:
            logger.info(
                "Skipping disallowed subscription transition",
                extra={
                    "event_id": event.event_id,
                    "user_id": user_id,
                    "current_status": record.status.value,
                    "event_type": event.provider_type,
                    "provider_status": payload.status,
                },
            )
            return "skipped"

        plan_id = payload.plan_id or record.plan_id
        if next_status == SubscriptionStatus.CANCELED:
            plan_type = PlanType.FREE
        else:
            plan_type = plan_type_for(plan_id, self.config)

        updated = UserBillingRecord(
            user_id=user_id,
            plan_type=plan_type,
            plan_id=plan_id,
            customer_id=payload.customer_id or record.customer_id,
            subscription_id=payload.subscription_id or record.subscription_id,
            status=next_status,
            last_event_timestamp=event.occurred_at,
        )

        try:
            await self.db.update_billing_record(updated, expected_last_event=record.last_event_timestamp)
        except WriteConflict:
            track_write_conflict("billing")
            logger.info(
                "Billing record write conflict, retrying",
                extra={"event_id": event.event_id, "user_id": user_id},
            )
            raise

        log = logger.warning if next_status == SubscriptionStatus.CANCELED else logger.info
        log(
            "Subscription state applied",
            extra={
                "event_id": event.event_id,
                "user_id": user_id,
                "from_status": record.status.value,
                "status": next_status.value,
                "plan_type": plan_type.value,
                "plan_id": plan_id,
            },
        )
        return "applied"
