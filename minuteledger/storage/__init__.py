"""
Storage layer for billing records, usage ledger and uploads.

Uses SQLite (embedded) with conditional per-record writes.
"""

from minuteledger.storage.database import (
    LedgerDatabase,
    StoreError,
    StoreUnavailable,
    WriteConflict,
)

__all__ = ["LedgerDatabase", "StoreError", "StoreUnavailable", "WriteConflict"]
