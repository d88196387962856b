"""
Tests for the ledger store.

Tests:
- Schema initialization is idempotent
- Conditional writes (usage version, upload status, duration set once)
- Processed-event log and purge
- Customer link upserts
"""

from datetime import UTC, datetime, timedelta

import pytest

from minuteledger.models.billing import CustomerLink, PlanType
from minuteledger.models.events import EventKind, EventOutcome, ProcessedEventRecord
from minuteledger.models.upload import UploadAsset, UploadStatus
from minuteledger.models.usage import UsageEntry
from minuteledger.storage.database import LedgerDatabase, WriteConflict

NOW = datetime(2024, 5, 10, tzinfo=UTC)


def upload(upload_id: str = "up_1", user_id: str = "user_1") -> UploadAsset:
    return UploadAsset(
        upload_id=upload_id,
        user_id=user_id,
        file_name="meeting.m4a",
        file_path="/data/uploads/meeting.m4a",
        file_size_bytes=4096,
    )


async def test_initialize_is_idempotent(db):
    await db.initialize()
    await db.initialize()
    await db.ping()


async def test_reopen_keeps_data(tmp_path):
    path = str(tmp_path / "ledger.db")
    first = LedgerDatabase(db_path=path)
    await first.initialize()
    await first.upsert_customer_link(CustomerLink(customer_id="cus_1", user_id="user_1"))
    first.close()

    second = LedgerDatabase(db_path=path)
    await second.initialize()
    assert (await second.get_customer_link("cus_1")).user_id == "user_1"
    second.close()


async def test_user_without_record_is_free(db):
    assert await db.get_billing_record("user_x") is None
    assert await db.get_user_plan("user_x") == PlanType.FREE


async def test_ensure_billing_record_is_idempotent(db):
    first = await db.ensure_billing_record("user_1")
    second = await db.ensure_billing_record("user_1")
    assert first == second


# Usage


async def test_apply_usage_with_stale_version_writes_nothing(db):
    record = await db.ensure_usage_record("user_1", NOW)
    updated = record.model_copy(update={"total_usage_minutes": 2, "monthly_usage_minutes": 2})
    entry = UsageEntry(source_id="up_1", user_id="user_1", minutes=2)

    assert await db.apply_usage(updated, expected_version=0, entry=entry) is True

    again = UsageEntry(source_id="up_2", user_id="user_1", minutes=1)
    with pytest.raises(WriteConflict):
        await db.apply_usage(updated, expected_version=0, entry=again)

    # The conflicting transaction rolled back its ledger line too
    assert await db.get_usage_entry("up_2") is None
    assert (await db.get_usage_record("user_1")).version == 1


async def test_apply_usage_duplicate_source(db):
    record = await db.ensure_usage_record("user_1", NOW)
    updated = record.model_copy(update={"total_usage_minutes": 1, "monthly_usage_minutes": 1})
    entry = UsageEntry(source_id="up_1", user_id="user_1", minutes=1)

    assert await db.apply_usage(updated, expected_version=0, entry=entry) is True
    assert await db.apply_usage(updated, expected_version=1, entry=entry) is False
    assert (await db.get_usage_record("user_1")).version == 1


# Uploads


async def test_upload_roundtrip(db):
    created = await db.create_upload(upload())
    fetched = await db.get_upload("up_1")

    assert fetched.upload_id == created.upload_id
    assert fetched.status == UploadStatus.PENDING
    assert fetched.duration_seconds is None
    assert await db.get_upload("missing") is None


async def test_duration_is_set_once(db):
    await db.create_upload(upload())

    assert await db.set_upload_duration("up_1", 65) is True
    assert await db.set_upload_duration("up_1", 99) is False
    assert (await db.get_upload("up_1")).duration_seconds == 65


async def test_status_compare_and_set(db):
    await db.create_upload(upload())

    assert await db.update_upload_status("up_1", UploadStatus.PENDING, UploadStatus.PROCESSING)
    assert not await db.update_upload_status("up_1", UploadStatus.PENDING, UploadStatus.FAILED)
    assert (await db.get_upload("up_1")).status == UploadStatus.PROCESSING


# Processed events


async def test_processed_event_first_writer_wins(db):
    first = ProcessedEventRecord(event_id="evt_1", kind=EventKind.SUBSCRIPTION_CREATED, detail="applied")
    second = ProcessedEventRecord(
        event_id="evt_1",
        kind=EventKind.SUBSCRIPTION_CREATED,
        outcome=EventOutcome.IGNORED,
        detail="other",
    )

    assert await db.record_processed_event(first) is True
    assert await db.record_processed_event(second) is False
    assert (await db.get_processed_event("evt_1")).detail == "applied"


async def test_purge_processed_events(db):
    old = ProcessedEventRecord(
        event_id="evt_old",
        kind=EventKind.CUSTOMER_CREATED,
        processed_at=NOW - timedelta(days=40),
    )
    recent = ProcessedEventRecord(
        event_id="evt_new",
        kind=EventKind.CUSTOMER_CREATED,
        processed_at=NOW - timedelta(days=1),
    )
    await db.record_processed_event(old)
    await db.record_processed_event(recent)

    purged = await db.purge_processed_events(NOW - timedelta(days=30))

    assert purged == 1
    assert await db.get_processed_event("evt_old") is None
    assert await db.get_processed_event("evt_new") is not None


# Customer links


async def test_customer_link_upsert_keeps_known_fields(db):
    await db.upsert_customer_link(
        CustomerLink(customer_id="cus_1", user_id="user_1", email="one@users.io")
    )
    await db.upsert_customer_link(CustomerLink(customer_id="cus_1", email="new@users.io"))

    link = await db.get_customer_link("cus_1")
    assert link.user_id == "user_1"
    assert link.email == "new@users.io"
