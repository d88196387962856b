"""
Tests for the usage ledger.

Tests:
- Minute rounding
- Additivity under concurrent increments
- Lazy monthly reset
- Idempotent increments keyed by source
- Quota signal and pre-upload quota check
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import pytest

from minuteledger.billing.usage_tracking import UsageLedger, minutes_for
from minuteledger.config import LedgerConfig
from minuteledger.models.billing import PlanType, SubscriptionStatus
from minuteledger.storage.database import LedgerDatabase, WriteConflict

JAN = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
FEB = datetime(2024, 2, 1, 0, 0, tzinfo=UTC)


@pytest.fixture
def ledger(db) -> UsageLedger:
    return UsageLedger(db, LedgerConfig(retry_backoff_seconds=0.0))


async def make_pro(db, user_id: str) -> None:
    record = await db.ensure_billing_record(user_id)
    await db.update_billing_record(
        record.model_copy(
            update={
                "plan_type": PlanType.PRO,
                "status": SubscriptionStatus.ACTIVE,
                "last_event_timestamp": JAN,
            }
        ),
        expected_last_event=None,
    )


@pytest.mark.parametrize(
    "seconds, minutes",
    [(0, 0), (1, 1), (59.9, 1), (60, 1), (61, 2), (65, 2), (120, 2), (3600, 60)],
)
def test_minutes_for(seconds, minutes):
    assert minutes_for(seconds) == minutes


def test_minutes_for_rejects_negative():
    with pytest.raises(ValueError):
        minutes_for(-1)


async def test_first_increment_creates_record(ledger, db):
    result = await ledger.increment("user_1", 90, size_bytes=1000, now=JAN)

    assert result.minutes_added == 2
    assert result.monthly_usage_minutes == 2
    assert result.total_usage_minutes == 2
    assert result.usage_bytes == 1000
    assert result.plan_type == PlanType.FREE
    assert result.quota_minutes == 30
    assert result.quota_remaining == 28
    assert result.quota_exceeded is False

    record = await db.get_usage_record("user_1")
    assert record.version == 1


async def test_uploads_of_65_and_10_seconds_add_three_minutes(ledger):
    await ledger.increment("user_1", 65, now=JAN)
    result = await ledger.increment("user_1", 10, now=JAN)

    assert result.monthly_usage_minutes == 3
    assert result.total_usage_minutes == 3


async def test_concurrent_increments_are_additive(ledger, db):
    n, seconds = 20, 61

    results = await asyncio.gather(
        *(ledger.increment("user_1", seconds, size_bytes=10, now=JAN) for _ in range(n))
    )

    assert all(r.minutes_added == 2 for r in results)
    record = await db.get_usage_record("user_1")
    assert record.monthly_usage_minutes == n * 2
    assert record.total_usage_minutes == n * 2
    assert record.usage_bytes == n * 10
    assert record.version == n


def test_increments_from_separate_connections_are_additive(tmp_path):
    db_path = str(tmp_path / "shared.db")
    setup = LedgerDatabase(db_path)
    asyncio.run(setup.initialize())
    setup.close()
    config = LedgerConfig(max_write_retries=20, retry_backoff_seconds=0.001)
    threads, per_thread, seconds = 8, 5, 61

    def worker(_):
        database = LedgerDatabase(db_path)
        ledger = UsageLedger(database, config)

        async def run():
            for _ in range(per_thread):
                await ledger.increment("user_1", seconds, now=JAN)

        try:
            asyncio.run(run())
        finally:
            database.close()

    with ThreadPoolExecutor(max_workers=threads) as pool:
        list(pool.map(worker, range(threads)))

    reader = LedgerDatabase(db_path)
    record = asyncio.run(reader.get_usage_record("user_1"))
    reader.close()

    assert record.monthly_usage_minutes == threads * per_thread * 2
    assert record.total_usage_minutes == threads * per_thread * 2
    assert record.version == threads * per_thread


async def test_different_users_do_not_interfere(ledger, db):
    await asyncio.gather(
        ledger.increment("user_a", 60, now=JAN),
        ledger.increment("user_b", 120, now=JAN),
    )

    assert (await db.get_usage_record("user_a")).monthly_usage_minutes == 1
    assert (await db.get_usage_record("user_b")).monthly_usage_minutes == 2


async def test_month_change_resets_monthly_not_total(ledger, db):
    await ledger.increment("user_1", 600, now=JAN)

    result = await ledger.increment("user_1", 60, now=FEB)

    assert result.monthly_usage_minutes == 1
    assert result.total_usage_minutes == 11
    record = await db.get_usage_record("user_1")
    assert record.last_reset_date == FEB


async def test_same_month_next_year_resets(ledger):
    await ledger.increment("user_1", 600, now=JAN)
    result = await ledger.increment("user_1", 60, now=JAN.replace(year=2025))
    assert result.monthly_usage_minutes == 1


async def test_duplicate_source_adds_nothing(ledger, db):
    first = await ledger.increment("user_1", 65, source_id="upload_1", now=JAN)
    second = await ledger.increment("user_1", 65, source_id="upload_1", now=JAN)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.minutes_added == 0
    assert second.monthly_usage_minutes == 2
    assert (await db.get_usage_record("user_1")).version == 1

    entry = await db.get_usage_entry("upload_1")
    assert entry.minutes == 2


async def test_quota_exceeded_is_a_signal_not_an_error(ledger, db):
    result = await ledger.increment("user_1", 31 * 60, now=JAN)

    assert result.quota_exceeded is True
    assert result.quota_remaining == 0
    assert (await db.get_usage_record("user_1")).monthly_usage_minutes == 31


async def test_quota_reached_exactly_is_exceeded(ledger):
    result = await ledger.increment("user_1", 30 * 60, now=JAN)
    assert result.quota_exceeded is True


async def test_pro_plan_quota(ledger, db):
    await make_pro(db, "user_pro")

    result = await ledger.increment("user_pro", 45 * 60, now=JAN)

    assert result.plan_type == PlanType.PRO
    assert result.quota_minutes == 60
    assert result.quota_exceeded is False


async def test_negative_inputs_rejected(ledger):
    with pytest.raises(ValueError):
        await ledger.increment("user_1", -5, now=JAN)
    with pytest.raises(ValueError):
        await ledger.increment("user_1", 5, size_bytes=-1, now=JAN)


async def test_conflict_is_retried(ledger, db, monkeypatch):
    real_apply = db.apply_usage
    attempts = []

    async def flaky_apply(record, expected_version, entry=None):
        attempts.append(expected_version)
        if len(attempts) == 1:
            raise WriteConflict("lost race")
        return await real_apply(record, expected_version, entry)

    monkeypatch.setattr(db, "apply_usage", flaky_apply)

    result = await ledger.increment("user_1", 60, now=JAN)

    assert len(attempts) == 2
    assert result.monthly_usage_minutes == 1


# Quota check


async def test_check_quota_for_new_user(ledger):
    status = await ledger.check_quota("user_new", now=JAN)

    assert status.within_limit is True
    assert status.monthly_usage_minutes == 0
    assert status.quota_minutes == 30


async def test_check_quota_counts_requested_minutes(ledger):
    await ledger.increment("user_1", 25 * 60, now=JAN)

    fits = await ledger.check_quota("user_1", additional_seconds=[60, 240], now=JAN)
    too_much = await ledger.check_quota("user_1", additional_seconds=[300, 1], now=JAN)

    assert fits.requested_minutes == 5
    assert fits.within_limit is True
    assert too_much.requested_minutes == 6
    assert too_much.within_limit is False


async def test_check_quota_exhausted(ledger):
    await ledger.increment("user_1", 30 * 60, now=JAN)
    status = await ledger.check_quota("user_1", now=JAN)
    assert status.within_limit is False
    assert status.quota_remaining == 0


async def test_check_quota_sees_pending_reset(ledger, db):
    await ledger.increment("user_1", 30 * 60, now=JAN)

    status = await ledger.check_quota("user_1", now=FEB)

    assert status.within_limit is True
    assert status.monthly_usage_minutes == 0
    # Read-only: the stored record is untouched
    assert (await db.get_usage_record("user_1")).monthly_usage_minutes == 30


async def test_usage_summary(ledger):
    await ledger.increment("user_1", 15 * 60, size_bytes=2048, now=JAN)

    summary = await ledger.get_usage_summary("user_1", now=JAN)

    assert summary["plan_type"] == "free"
    assert summary["monthly_usage_minutes"] == 15
    assert summary["total_usage_minutes"] == 15
    assert summary["usage_bytes"] == 2048
    assert summary["monthly_limit"] == 30
    assert summary["quota_remaining"] == 15
    assert summary["usage_percentage"] == 50.0
    assert summary["quota_exceeded"] is False


async def test_usage_summary_for_unknown_user(ledger):
    summary = await ledger.get_usage_summary("nobody", now=JAN)
    assert summary["total_usage_minutes"] == 0
    assert summary["last_reset_date"] is None
