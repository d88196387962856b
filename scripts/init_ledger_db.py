#!/usr/bin/env python3
"""
Ledger database maintenance.

Creates the ledger schema and purges processed-event records older than the
retention window (they only need to outlive the provider's redelivery window).

Usage:
    python scripts/init_ledger_db.py [--db-path PATH] [--retention-days N] [--skip-purge]

Defaults come from STORAGE_DATABASE_PATH and LEDGER_PROCESSED_EVENT_RETENTION_DAYS.

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

from minuteledger.config import get_settings
from minuteledger.storage.database import LedgerDatabase, StoreError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {
    "billing_records",
    "customer_links",
    "processed_events",
    "usage_records",
    "usage_entries",
    "uploads",
}


async def init_database(db: LedgerDatabase) -> bool:
    """
    Initialize ledger schema and report table sizes.

    Returns:
        bool: True if every expected table exists
    """
    logger.info(f"Initializing ledger database at {db.db_path}")
    await db.initialize()

    conn = db._get_connection()
    tables = {
        row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    missing = EXPECTED_TABLES - tables
    if missing:
        logger.error(f"Missing tables: {sorted(missing)}")
        return False

    for table in sorted(EXPECTED_TABLES):
        count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        logger.info(f"  {table}: {count} rows")

    logger.info("✓ Schema ready")
    return True


async def purge_processed_events(db: LedgerDatabase, retention_days: int) -> int:
    """Delete processed-event records older than retention_days."""
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    purged = await db.purge_processed_events(cutoff)
    logger.info(f"✓ Purged {purged} processed events older than {cutoff.isoformat()}")
    return purged


async def run(db_path: str, retention_days: int, skip_purge: bool) -> bool:
    db = LedgerDatabase(db_path=db_path)
    try:
        if not await init_database(db):
            return False
        if not skip_purge:
            await purge_processed_events(db, retention_days)
        return True
    except StoreError as e:
        logger.error(f"Ledger maintenance failed: {e}")
        return False
    finally:
        db.close()


def main():
    """Main entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Initialize and maintain the ledger database")
    parser.add_argument(
        "--db-path",
        default=settings.storage.database_path,
        help=f"Path to SQLite database file (default: {settings.storage.database_path})",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.ledger.processed_event_retention_days,
        help="Keep processed-event records this many days",
    )
    parser.add_argument(
        "--skip-purge",
        action="store_true",
        help="Only create the schema",
    )
    args = parser.parse_args()

    if args.retention_days < 3:
        parser.error("--retention-days must be at least 3 (provider redelivery window)")

    if not asyncio.run(run(args.db_path, args.retention_days, args.skip_purge)):
        logger.error("❌ Ledger maintenance failed")
        sys.exit(1)

    logger.info("=== Ledger Ready ===")
    logger.info(f"Database path: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
