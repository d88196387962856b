"""
Ledger storage using SQLite.

Every mutation is a single conditional per-record write:
- Billing records compare-and-set on last_event_timestamp
- Usage records compare-and-set on version
- Upload duration is set once (WHERE duration_seconds IS NULL)
- Upload status compare-and-set on the current status
- Processed events and usage entries are append-only (INSERT OR IGNORE)

A conditional write that matches no row raises WriteConflict; callers re-read
and retry.
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from minuteledger.models.billing import (
    CustomerLink,
    PlanType,
    SubscriptionStatus,
    UserBillingRecord,
)
from minuteledger.models.events import EventKind, EventOutcome, ProcessedEventRecord
from minuteledger.models.upload import UploadAsset, UploadStatus
from minuteledger.models.usage import UsageEntry, UsageRecord

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for ledger store failures."""

    pass


class WriteConflict(StoreError):
    """Conditional write lost a race with a concurrent writer."""

    pass


class StoreUnavailable(StoreError):
    """Database is locked, missing or otherwise unusable."""

    pass


def _to_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_text(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class LedgerDatabase:
    """
    Billing, usage and upload storage.

    Uses SQLite (embedded) with one shared connection per process.
    All timestamps are stored as UTC ISO-8601 strings.
    """

    def __init__(self, db_path: str = "./data/ledger.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize ledger database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: Lock wait before a write fails with StoreUnavailable
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing ledger database at {self.db_path}")

        with self._transaction() as conn:
            # WAL lets readers proceed while a writer holds the lock
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS billing_records (
                    user_id TEXT PRIMARY KEY,
                    plan_type TEXT NOT NULL DEFAULT 'free',
                    plan_id TEXT,
                    customer_id TEXT,
                    subscription_id TEXT,
                    status TEXT NOT NULL DEFAULT 'none',
                    last_event_timestamp TEXT,
                    updated_at TEXT NOT NULL,

                    CHECK (plan_type IN ('free', 'pro')),
                    CHECK (status IN ('none', 'active', 'past_due', 'canceled'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customer_links (
                    customer_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    email TEXT,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_events (
                    event_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    detail TEXT NOT NULL DEFAULT '',
                    processed_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_records (
                    user_id TEXT PRIMARY KEY,
                    total_usage_minutes INTEGER NOT NULL DEFAULT 0,
                    monthly_usage_minutes INTEGER NOT NULL DEFAULT 0,
                    usage_bytes INTEGER NOT NULL DEFAULT 0,
                    last_reset_date TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,

                    CHECK (total_usage_minutes >= 0),
                    CHECK (monthly_usage_minutes >= 0),
                    CHECK (monthly_usage_minutes <= total_usage_minutes),
                    CHECK (usage_bytes >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_entries (
                    source_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    minutes INTEGER NOT NULL,
                    bytes INTEGER NOT NULL DEFAULT 0,
                    recorded_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS uploads (
                    upload_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size_bytes INTEGER NOT NULL,
                    duration_seconds INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (file_size_bytes >= 0),
                    CHECK (duration_seconds IS NULL OR duration_seconds > 0),
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'error'))
                )
            """
            )

            # Lookup indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_billing_customer ON billing_records(customer_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_events(processed_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_user ON usage_entries(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_uploads_user ON uploads(user_id)")

        logger.info("Ledger database initialized successfully")
        self._initialized = True

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_seconds,
                    check_same_thread=False,
                )
            except sqlite3.OperationalError as e:
                raise StoreUnavailable(f"Cannot open ledger database: {e}") from e
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run statements in one transaction.

        Commits on success, rolls back on any exception.
        """
        conn = self._get_connection()
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as e:
            logger.error("Ledger store operation failed", extra={"error": str(e)})
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # Billing records
    # ------------------------------------------------------------------

    async def get_billing_record(self, user_id: str) -> UserBillingRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM billing_records WHERE user_id = ?", (user_id,)
            ).fetchone()

        if not row:
            return None

        return UserBillingRecord(
            user_id=row["user_id"],
            plan_type=PlanType(row["plan_type"]),
            plan_id=row["plan_id"],
            customer_id=row["customer_id"],
            subscription_id=row["subscription_id"],
            status=SubscriptionStatus(row["status"]),
            last_event_timestamp=_from_text(row["last_event_timestamp"]),
            updated_at=_from_text(row["updated_at"]),
        )

    async def ensure_billing_record(self, user_id: str) -> UserBillingRecord:
        """
        Get the billing record, creating it with defaults (free, none) if missing.

        Args:
            user_id: User identifier

        Returns:
            UserBillingRecord: Current record
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO billing_records (user_id, plan_type, status, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    user_id,
                    PlanType.FREE.value,
                    SubscriptionStatus.NONE.value,
                    datetime.now(UTC).isoformat(),
                ),
            )

        record = await self.get_billing_record(user_id)
        if record is None:
            raise StoreUnavailable(f"Billing record for {user_id} vanished after insert")
        return record

    async def update_billing_record(
        self, record: UserBillingRecord, expected_last_event: datetime | None
    ) -> None:
        """
        Write a billing record conditionally on its last applied event timestamp.

        Args:
            record: New record state
            expected_last_event: last_event_timestamp observed when record was read

        Raises:
            WriteConflict: If another writer applied an event in between
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE billing_records
                SET plan_type = ?,
                    plan_id = ?,
                    customer_id = ?,
                    subscription_id = ?,
                    status = ?,
                    last_event_timestamp = ?,
                    updated_at = ?
                WHERE user_id = ? AND last_event_timestamp IS ?
                """,
                (
                    record.plan_type.value,
                    record.plan_id,
                    record.customer_id,
                    record.subscription_id,
                    record.status.value,
                    _to_text(record.last_event_timestamp),
                    datetime.now(UTC).isoformat(),
                    record.user_id,
                    _to_text(expected_last_event),
                ),
            )

        if cursor.rowcount == 0:
            raise WriteConflict(f"Billing record for {record.user_id} changed concurrently")

    async def get_user_plan(self, user_id: str) -> PlanType:
        """Plan for quota purposes (free when the user has no billing record)."""
        record = await self.get_billing_record(user_id)
        return record.plan_type if record else PlanType.FREE

    # ------------------------------------------------------------------
    # Customer links
    # ------------------------------------------------------------------

    async def upsert_customer_link(self, link: CustomerLink) -> None:
        """Create or update a customer link (known fields are never cleared)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO customer_links (customer_id, user_id, email, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(customer_id) DO UPDATE SET
                    user_id = COALESCE(excluded.user_id, customer_links.user_id),
                    email = COALESCE(excluded.email, customer_links.email),
                    updated_at = excluded.updated_at
                """,
                (link.customer_id, link.user_id, link.email, _to_text(link.updated_at)),
            )

    async def get_customer_link(self, customer_id: str) -> CustomerLink | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM customer_links WHERE customer_id = ?", (customer_id,)
            ).fetchone()

        if not row:
            return None

        return CustomerLink(
            customer_id=row["customer_id"],
            user_id=row["user_id"],
            email=row["email"],
            updated_at=_from_text(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Processed events (dedup log)
    # ------------------------------------------------------------------

    async def get_processed_event(self, event_id: str) -> ProcessedEventRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM processed_events WHERE event_id = ?", (event_id,)
            ).fetchone()

        if not row:
            return None

        return ProcessedEventRecord(
            event_id=row["event_id"],
            kind=EventKind(row["kind"]),
            outcome=EventOutcome(row["outcome"]),
            detail=row["detail"],
            processed_at=_from_text(row["processed_at"]),
        )

    async def record_processed_event(self, record: ProcessedEventRecord) -> bool:
        """
        Append a processed-event record.

        Returns:
            bool: True if written, False if the event id was already recorded
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_events (
                    event_id, kind, outcome, detail, processed_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.event_id,
                    record.kind.value,
                    record.outcome.value,
                    record.detail,
                    _to_text(record.processed_at),
                ),
            )
        return cursor.rowcount > 0

    async def purge_processed_events(self, older_than: datetime) -> int:
        """
        Delete processed-event records older than a cutoff.

        Args:
            older_than: Records processed before this instant are removed

        Returns:
            int: Number of records deleted
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM processed_events WHERE processed_at < ?",
                (_to_text(older_than),),
            )

        logger.info(
            "Purged processed events",
            extra={"deleted": cursor.rowcount, "older_than": _to_text(older_than)},
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def get_usage_record(self, user_id: str) -> UsageRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM usage_records WHERE user_id = ?", (user_id,)
            ).fetchone()

        if not row:
            return None

        return UsageRecord(
            user_id=row["user_id"],
            total_usage_minutes=row["total_usage_minutes"],
            monthly_usage_minutes=row["monthly_usage_minutes"],
            usage_bytes=row["usage_bytes"],
            last_reset_date=_from_text(row["last_reset_date"]),
            version=row["version"],
        )

    async def ensure_usage_record(self, user_id: str, now: datetime) -> UsageRecord:
        """Get the usage record, creating an empty one dated now if missing."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO usage_records (user_id, last_reset_date, version)
                VALUES (?, ?, 0)
                """,
                (user_id, _to_text(now)),
            )

        record = await self.get_usage_record(user_id)
        if record is None:
            raise StoreUnavailable(f"Usage record for {user_id} vanished after insert")
        return record

    async def apply_usage(
        self,
        record: UsageRecord,
        expected_version: int,
        entry: UsageEntry | None = None,
    ) -> bool:
        """
        Write new usage totals and their ledger line in one transaction.

        Args:
            record: New totals (version is bumped by the store)
            expected_version: Version observed when the totals were read
            entry: Ledger line keyed by source; None for anonymous increments

        Returns:
            bool: True if applied, False if entry.source_id was already recorded

        Raises:
            WriteConflict: If the record version moved (nothing is written)
        """
        with self._transaction() as conn:
            if entry is not None:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO usage_entries (
                        source_id, user_id, minutes, bytes, recorded_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        entry.source_id,
                        entry.user_id,
                        entry.minutes,
                        entry.bytes,
                        _to_text(entry.recorded_at),
                    ),
                )
                if cursor.rowcount == 0:
                    return False

            cursor = conn.execute(
                """
                UPDATE usage_records
                SET total_usage_minutes = ?,
                    monthly_usage_minutes = ?,
                    usage_bytes = ?,
                    last_reset_date = ?,
                    version = version + 1
                WHERE user_id = ? AND version = ?
                """,
                (
                    record.total_usage_minutes,
                    record.monthly_usage_minutes,
                    record.usage_bytes,
                    _to_text(record.last_reset_date),
                    record.user_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                # Raising inside the transaction rolls back the entry insert
                raise WriteConflict(f"Usage record for {record.user_id} changed concurrently")

        return True

    async def get_usage_entry(self, source_id: str) -> UsageEntry | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM usage_entries WHERE source_id = ?", (source_id,)
            ).fetchone()

        if not row:
            return None

        return UsageEntry(
            source_id=row["source_id"],
            user_id=row["user_id"],
            minutes=row["minutes"],
            bytes=row["bytes"],
            recorded_at=_from_text(row["recorded_at"]),
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def create_upload(self, upload: UploadAsset) -> UploadAsset:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO uploads (
                    upload_id, user_id, file_name, file_path, file_size_bytes,
                    duration_seconds, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    upload.upload_id,
                    upload.user_id,
                    upload.file_name,
                    upload.file_path,
                    upload.file_size_bytes,
                    upload.duration_seconds,
                    upload.status.value,
                    _to_text(upload.created_at),
                    _to_text(upload.updated_at),
                ),
            )

        logger.info(
            "Created upload",
            extra={"upload_id": upload.upload_id, "user_id": upload.user_id},
        )
        return upload

    async def get_upload(self, upload_id: str) -> UploadAsset | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM uploads WHERE upload_id = ?", (upload_id,)
            ).fetchone()

        if not row:
            return None

        return UploadAsset(
            upload_id=row["upload_id"],
            user_id=row["user_id"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            file_size_bytes=row["file_size_bytes"],
            duration_seconds=row["duration_seconds"],
            status=UploadStatus(row["status"]),
            created_at=_from_text(row["created_at"]),
            updated_at=_from_text(row["updated_at"]),
        )

    async def set_upload_duration(self, upload_id: str, duration_seconds: int) -> bool:
        """
        Set upload duration once.

        Returns:
            bool: True if set, False if a duration was already recorded
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE uploads
                SET duration_seconds = ?, updated_at = ?
                WHERE upload_id = ? AND duration_seconds IS NULL
                """,
                (duration_seconds, datetime.now(UTC).isoformat(), upload_id),
            )
        return cursor.rowcount > 0

    async def update_upload_status(
        self, upload_id: str, expected: UploadStatus, status: UploadStatus
    ) -> bool:
        """
        Move upload status conditionally on the status last read.

        Returns:
            bool: True if updated, False if the status changed in between
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE uploads
                SET status = ?, updated_at = ?
                WHERE upload_id = ? AND status = ?
                """,
                (status.value, datetime.now(UTC).isoformat(), upload_id, expected.value),
            )
        return cursor.rowcount > 0

    async def ping(self) -> None:
        """Run a trivial query (raises StoreUnavailable if the store is unusable)."""
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
