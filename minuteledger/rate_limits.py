"""
Request rate limiting for client-facing upload routes.

Uses slowapi keyed by client address. Webhook and health routes are not
limited: providers retry on their own schedule and probes must always answer.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

from minuteledger.config import RateLimitConfig

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

_upload_limit = RateLimitConfig.model_fields["uploads_per_minute"].default


def configure_rate_limits(config: RateLimitConfig) -> Limiter:
    """
    Apply rate limit configuration to the shared limiter.

    Args:
        config: Rate limit settings

    Returns:
        Limiter: The shared limiter (for app.state.limiter)
    """
    global _upload_limit
    _upload_limit = config.uploads_per_minute
    limiter.enabled = config.enabled
    if not config.enabled:
        logger.warning("Rate limiting disabled")
    return limiter


def upload_rate_limit() -> str:
    """Current slowapi limit string for upload routes."""
    return _upload_limit
