"""
Minute Ledger - subscription state and transcription-minute metering.

Turns payment-provider webhooks into per-user billing state and completed
uploads into monthly minute usage, and answers quota questions.

Key Features:
    - Signed, idempotent webhook processing
    - Out-of-order safe subscription state machine
    - Concurrency-safe usage ledger with lazy monthly reset
    - ffprobe duration detection with a size-based fallback

Example:
    >>> from minuteledger import get_settings
    >>> settings = get_settings()
    >>> print(settings.ledger.free_monthly_minutes)
"""

from minuteledger.config import get_settings

__all__ = ["get_settings"]
