"""
Stripe customer resolution.

Maps provider customer ids (cus_xxx) to internal user ids, in order:
1. In-memory TTL cache
2. Stored customer link (written by customer.created/updated events)
3. Stripe API (customer metadata.user_id), behind the Stripe circuit breaker
"""

import asyncio
import logging

import stripe
from cachetools import TTLCache

from minuteledger.config import StripeConfig
from minuteledger.models.billing import CustomerLink
from minuteledger.resilience.circuit_breakers import (
    StripeCircuitBreakerError,
    with_stripe_circuit_breaker,
)
from minuteledger.storage.database import LedgerDatabase

logger = logging.getLogger(__name__)


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    pass


class CustomerLookupError(StripeError):
    """Stripe could not be asked (API error or circuit open)."""

    pass


@with_stripe_circuit_breaker
def _retrieve_customer(customer_id: str):
    """
    Fetch a customer from Stripe.

    A missing customer returns None instead of raising so that it does not
    count as a breaker failure.
    """
    try:
        return stripe.Customer.retrieve(customer_id)
    except stripe.InvalidRequestError:
        return None


class StripeService:
    """
    Stripe customer lookups with caching.

    Security: the API key is set on the stripe module and never logged.
    """

    def __init__(self, config: StripeConfig, db: LedgerDatabase):
        """
        Initialize Stripe service.

        Args:
            config: Stripe configuration
            db: Ledger database (customer links)
        """
        self.config = config
        self.db = db
        self._user_cache: TTLCache = TTLCache(
            maxsize=config.customer_cache_size,
            ttl=max(config.customer_cache_ttl_seconds, 1),
        )

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe service initialized")
        else:
            logger.warning("Stripe API key not configured - customer lookups use local links only")

    @property
    def is_enabled(self) -> bool:
        return self.config.has_api_key

    def remember(self, customer_id: str, user_id: str) -> None:
        """Cache a known customer -> user mapping."""
        if self.config.customer_cache_ttl_seconds > 0:
            self._user_cache[customer_id] = user_id

    async def resolve_user_id(self, customer_id: str) -> str | None:
        """
        Resolve the internal user for a Stripe customer.

        Args:
            customer_id: Stripe customer ID (cus_xxx)

        Returns:
            User id, or None if no source knows the customer

        Raises:
            CustomerLookupError: If Stripe had to be asked and failed
        """
        cached = self._user_cache.get(customer_id)
        if cached:
            return cached

        link = await self.db.get_customer_link(customer_id)
        if link and link.user_id:
            self.remember(customer_id, link.user_id)
            return link.user_id

        if not self.is_enabled:
            return None

        try:
            stripe_customer = await asyncio.to_thread(_retrieve_customer, customer_id)
        except (stripe.StripeError, StripeCircuitBreakerError) as e:
            logger.error(
                "Failed to retrieve Stripe customer",
                extra={"stripe_customer_id": customer_id, "error": str(e)},
            )
            raise CustomerLookupError(f"Customer lookup failed for {customer_id}: {e}") from e

        if stripe_customer is None:
            logger.warning("Stripe customer not found", extra={"stripe_customer_id": customer_id})
            return None

        metadata = getattr(stripe_customer, "metadata", None) or {}
        user_id = metadata["user_id"] if "user_id" in metadata else None
        if not user_id:
            return None

        await self.db.upsert_customer_link(
            CustomerLink(
                customer_id=customer_id,
                user_id=user_id,
                email=getattr(stripe_customer, "email", None),
            )
        )
        self.remember(customer_id, user_id)

        logger.info(
            "Resolved customer from Stripe metadata",
            extra={"stripe_customer_id": customer_id, "user_id": user_id},
        )
        return user_id
