"""
Usage ledger data models.

Minutes are whole minutes (seconds rounded up); bytes are raw upload sizes.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator

from minuteledger.models.billing import PlanType


class UsageRecord(BaseModel):
    """
    Running usage totals for a single user.

    Invariant: monthly_usage_minutes <= total_usage_minutes.
    """

    user_id: str = Field(..., min_length=1, max_length=128)
    total_usage_minutes: int = Field(default=0, ge=0)
    monthly_usage_minutes: int = Field(default=0, ge=0)
    usage_bytes: int = Field(default=0, ge=0)
    last_reset_date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = Field(default=0, ge=0, description="Compare-and-set token")

    @model_validator(mode="after")
    def validate_monthly_within_total(self) -> "UsageRecord":
        if self.monthly_usage_minutes > self.total_usage_minutes:
            raise ValueError(
                f"monthly_usage_minutes ({self.monthly_usage_minutes}) cannot exceed "
                f"total_usage_minutes ({self.total_usage_minutes})"
            )
        return self

    def needs_reset(self, now: datetime) -> bool:
        """Check if now falls in a different calendar month than the last reset."""
        return (self.last_reset_date.year, self.last_reset_date.month) != (now.year, now.month)

    def effective_monthly_minutes(self, now: datetime) -> int:
        """Monthly usage as it will read after a pending reset."""
        return 0 if self.needs_reset(now) else self.monthly_usage_minutes


class UsageEntry(BaseModel):
    """Single ledger line, keyed by the source that produced the usage."""

    source_id: str
    user_id: str
    minutes: int = Field(ge=0)
    bytes: int = Field(default=0, ge=0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UsageResult(BaseModel):
    """Outcome of a ledger increment, including the quota signal."""

    user_id: str
    plan_type: PlanType
    minutes_added: int
    monthly_usage_minutes: int
    total_usage_minutes: int
    usage_bytes: int
    quota_minutes: int
    quota_remaining: int
    quota_exceeded: bool
    duplicate: bool = False


class QuotaStatus(BaseModel):
    """Read-only answer to 'may this user upload this much?'."""

    user_id: str
    plan_type: PlanType
    monthly_usage_minutes: int
    requested_minutes: int
    quota_minutes: int
    quota_remaining: int
    within_limit: bool
