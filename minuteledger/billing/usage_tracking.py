"""
Usage ledger for transcription minutes.

Each completed upload adds ceil(seconds / 60) minutes to both the monthly and
the total counter. The monthly counter resets lazily: the first increment in a
new calendar month zeroes it in the same write.

Quota (minutes per month, configurable):
- free: 30
- pro: 60

Exceeding the quota is a signal on the result, never an error; usage is
always recorded.
"""

import logging
import math
from datetime import UTC, datetime
from typing import Any

from minuteledger.config import LedgerConfig
from minuteledger.models.billing import PlanType
from minuteledger.models.usage import QuotaStatus, UsageEntry, UsageRecord, UsageResult
from minuteledger.observability.metrics import (
    track_quota_exceeded,
    track_usage_minutes,
    track_write_conflict,
)
from minuteledger.resilience.circuit_breakers import retrying_on
from minuteledger.storage.database import LedgerDatabase, WriteConflict

logger = logging.getLogger(__name__)


class QuotaExceededError(Exception):
    """Raised by the upload gate when a user's monthly quota is exhausted."""

    def __init__(self, status: QuotaStatus):
        self.status = status
        super().__init__(
            f"Monthly quota exceeded. Used {status.monthly_usage_minutes}/"
            f"{status.quota_minutes} minutes."
        )


def minutes_for(duration_seconds: float) -> int:
    """Whole minutes billed for a duration (rounded up)."""
    if duration_seconds < 0:
        raise ValueError(f"duration_seconds must be >= 0, got {duration_seconds}")
    return math.ceil(duration_seconds / 60)


class UsageLedger:
    """
    Track and meter per-user transcription minutes.

    Responsibilities:
    - Apply monotonic minute increments (version compare-and-set, retried)
    - Reset the monthly counter on the month boundary
    - Never count the same source twice
    - Answer quota questions
    """

    def __init__(self, db: LedgerDatabase, config: LedgerConfig):
        """
        Initialize usage ledger.

        Args:
            db: Ledger database
            config: Quotas and retry policy
        """
        self.db = db
        self.config = config

    def quota_for(self, plan_type: PlanType) -> int:
        """Monthly minute quota for a plan."""
        if plan_type == PlanType.PRO:
            return self.config.pro_monthly_minutes
        return self.config.free_monthly_minutes

    async def increment(
        self,
        user_id: str,
        duration_seconds: float,
        size_bytes: int = 0,
        source_id: str | None = None,
        now: datetime | None = None,
    ) -> UsageResult:
        """
        Record usage for a user.

        Args:
            user_id: User who used the service
            duration_seconds: Media duration (billed as whole minutes, rounded up)
            size_bytes: Upload size added to usage_bytes
            source_id: Idempotency key (e.g. upload id); a repeat adds nothing
            now: Current time (None = datetime.now(UTC))

        Returns:
            UsageResult: New totals with the quota signal

        Raises:
            WriteConflict: If every conditional write attempt lost a race
            StoreUnavailable: If the store cannot be reached
        """
        now = now or datetime.now(UTC)
        minutes = minutes_for(duration_seconds)
        if size_bytes < 0:
            raise ValueError(f"size_bytes must be >= 0, got {size_bytes}")

        plan_type = await self.db.get_user_plan(user_id)
        quota = self.quota_for(plan_type)

        record: UsageRecord | None = None
        duplicate = False
        async for attempt in retrying_on(
            (WriteConflict,),
            max_attempts=self.config.max_write_retries,
            min_wait=self.config.retry_backoff_seconds,
        ):
            with attempt:
                record, duplicate = await self._apply(
                    user_id, minutes, size_bytes, source_id, now
                )

        minutes_added = 0 if duplicate else minutes
        monthly = record.monthly_usage_minutes
        quota_exceeded = monthly >= quota

        if not duplicate:
            track_usage_minutes(plan_type.value, minutes_added)
            if quota_exceeded:
                track_quota_exceeded(plan_type.value)

        logger.info(
            "Usage tracked",
            extra={
                "user_id": user_id,
                "source_id": source_id,
                "minutes_added": minutes_added,
                "monthly_usage_minutes": monthly,
                "total_usage_minutes": record.total_usage_minutes,
                "quota_minutes": quota,
                "quota_exceeded": quota_exceeded,
                "duplicate": duplicate,
            },
        )

        return UsageResult(
            user_id=user_id,
            plan_type=plan_type,
            minutes_added=minutes_added,
            monthly_usage_minutes=monthly,
            total_usage_minutes=record.total_usage_minutes,
            usage_bytes=record.usage_bytes,
            quota_minutes=quota,
            quota_remaining=max(0, quota - monthly),
            quota_exceeded=quota_exceeded,
            duplicate=duplicate,
        )

    async def _apply(
        self,
        user_id: str,
        minutes: int,
        size_bytes: int,
        source_id: str | None,
        now: datetime,
    ) -> tuple[UsageRecord, bool]:
        """One read-modify-conditional-write attempt. Returns (record, duplicate)."""
        current = await self.db.ensure_usage_record(user_id, now)

        if source_id is not None and await self.db.get_usage_entry(source_id) is not None:
            return self._as_of(current, now), True

        reset = current.needs_reset(now)
        if reset:
            logger.info(
                "Monthly usage reset",
                extra={
                    "user_id": user_id,
                    "previous_monthly_minutes": current.monthly_usage_minutes,
                    "last_reset_date": current.last_reset_date.isoformat(),
                },
            )

        updated = UsageRecord(
            user_id=user_id,
            total_usage_minutes=current.total_usage_minutes + minutes,
            monthly_usage_minutes=(0 if reset else current.monthly_usage_minutes) + minutes,
            usage_bytes=current.usage_bytes + size_bytes,
            last_reset_date=now if reset else current.last_reset_date,
            version=current.version + 1,
        )

        entry = None
        if source_id is not None:
            entry = UsageEntry(
                source_id=source_id,
                user_id=user_id,
                minutes=minutes,
                bytes=size_bytes,
                recorded_at=now,
            )

        try:
            applied = await self.db.apply_usage(updated, expected_version=current.version, entry=entry)
        except WriteConflict:
            track_write_conflict("usage")
            raise

        if not applied:
            # Same source recorded by a concurrent report
            return self._as_of(current, now), True
        return updated, False

    @staticmethod
    def _as_of(record: UsageRecord, now: datetime) -> UsageRecord:
        """Record as it reads at now (monthly zeroed if a reset is pending)."""
        if not record.needs_reset(now):
            return record
        return record.model_copy(update={"monthly_usage_minutes": 0})

    async def check_quota(
        self,
        user_id: str,
        additional_seconds: list[float] | None = None,
        now: datetime | None = None,
    ) -> QuotaStatus:
        """
        Check if a user can transcribe more media this month (read-only).

        Args:
            user_id: User to check
            additional_seconds: Durations of the files about to be uploaded
            now: Current time (None = datetime.now(UTC))

        Returns:
            QuotaStatus: within_limit is True if usage plus the request fits the quota
        """
        now = now or datetime.now(UTC)
        plan_type = await self.db.get_user_plan(user_id)
        quota = self.quota_for(plan_type)

        record = await self.db.get_usage_record(user_id)
        monthly = record.effective_monthly_minutes(now) if record else 0
        requested = sum(minutes_for(seconds) for seconds in additional_seconds or [])

        if requested:
            within_limit = monthly + requested <= quota
        else:
            within_limit = monthly < quota

        return QuotaStatus(
            user_id=user_id,
            plan_type=plan_type,
            monthly_usage_minutes=monthly,
            requested_minutes=requested,
            quota_minutes=quota,
            quota_remaining=max(0, quota - monthly),
            within_limit=within_limit,
        )

    async def get_usage_summary(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        """
        Get usage summary for a user.

        Args:
            user_id: User to summarize
            now: Current time (None = datetime.now(UTC))

        Returns:
            dict with usage statistics
        """
        now = now or datetime.now(UTC)
        plan_type = await self.db.get_user_plan(user_id)
        quota = self.quota_for(plan_type)

        record = await self.db.get_usage_record(user_id)
        monthly = record.effective_monthly_minutes(now) if record else 0
        total = record.total_usage_minutes if record else 0

        usage_percentage = 0.0
        if quota > 0:
            usage_percentage = (monthly / quota) * 100

        return {
            "user_id": user_id,
            "plan_type": plan_type.value,
            "monthly_usage_minutes": monthly,
            "total_usage_minutes": total,
            "usage_bytes": record.usage_bytes if record else 0,
            "monthly_limit": quota,
            "quota_remaining": max(0, quota - monthly),
            "usage_percentage": round(usage_percentage, 2),
            "quota_exceeded": monthly >= quota,
            "last_reset_date": record.last_reset_date.isoformat() if record else None,
        }
