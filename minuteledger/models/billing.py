"""
Billing data models.

One billing record per user, driven exclusively by verified provider webhooks.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class PlanType(str, Enum):
    """Plan that gates features and quota."""

    FREE = "free"  # 30 min/month
    PRO = "pro"  # 60 min/month


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle state."""

    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class UserBillingRecord(BaseModel):
    """
    Subscription state for a single user.

    last_event_timestamp is the provider timestamp of the last applied event;
    it doubles as the compare-and-set token for conditional writes.
    """

    user_id: str = Field(..., min_length=1, max_length=128)
    plan_type: PlanType = Field(default=PlanType.FREE)
    plan_id: str | None = Field(default=None)
    customer_id: str | None = Field(default=None)
    subscription_id: str | None = Field(default=None)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.NONE)
    last_event_timestamp: datetime | None = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def is_newer(self, occurred_at: datetime) -> bool:
        """Check if an event timestamp is strictly newer than the last applied one."""
        if self.last_event_timestamp is None:
            return True
        return occurred_at > self.last_event_timestamp


class CustomerLink(BaseModel):
    """Provider customer id linked to an internal user."""

    customer_id: str = Field(..., min_length=1)
    user_id: str | None = Field(default=None)
    email: str | None = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
