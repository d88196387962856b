"""
Circuit breakers and retries for external dependencies.

Prevents cascade failures when the payment provider API is slow or down, and
retries conditional writes that lose a race.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed
"""

import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class StripeCircuitBreakerError(Exception):
    """Circuit breaker open for Stripe operations."""

    pass


class BreakerStateLogger(CircuitBreakerListener):
    """Logs every breaker state transition."""

    def state_change(self, cb: CircuitBreaker, old_state: Any, new_state: Any) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        old_name = getattr(old_state, "name", str(old_state))
        extra = {
            "breaker_name": cb.name,
            "old_state": old_name,
            "state": new_name,
            "fail_count": cb.fail_counter,
            "fail_max": cb.fail_max,
        }

        if new_name == "open":
            logger.error(f"Circuit breaker OPENED: {cb.name}", extra=extra)
        elif new_name == "half-open":
            logger.warning(f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)", extra=extra)
        else:
            logger.info(f"Circuit breaker CLOSED: {cb.name} (service recovered)", extra=extra)


# Stripe circuit breaker
# Opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Stripe",
    listeners=[BreakerStateLogger()],
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Returns:
        CircuitBreaker: Configured for Stripe API calls
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def with_stripe_circuit_breaker(func: Callable) -> Callable:
    """
    Decorator to wrap blocking Stripe calls with the circuit breaker.

    Raises:
        StripeCircuitBreakerError: If circuit is open

    Usage:
        @with_stripe_circuit_breaker
        def retrieve_customer(customer_id):
            return stripe.Customer.retrieve(customer_id)
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return stripe_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            # Circuit is open - fail fast
            logger.warning(
                "Stripe circuit breaker OPEN - failing fast",
                extra={
                    "function": func.__name__,
                    "state": stripe_breaker.current_state,
                },
            )
            raise StripeCircuitBreakerError(
                "Stripe service unavailable (circuit breaker open). "
                f"Retry after {stripe_breaker.reset_timeout} seconds."
            ) from e

    return wrapper


def retrying_on(
    exceptions: tuple[type[Exception], ...],
    max_attempts: int = 5,
    min_wait: float = 0.01,
    max_wait: float = 1.0,
) -> AsyncRetrying:
    """
    Async retry controller with exponential backoff.

    Args:
        exceptions: Exception types to retry on
        max_attempts: Maximum number of attempts (including the first)
        min_wait: First backoff in seconds (doubles each attempt)
        max_wait: Backoff ceiling in seconds

    Returns:
        AsyncRetrying: Re-raises the last exception once attempts run out

    Usage:
        async for attempt in retrying_on((WriteConflict,), max_attempts=5):
            with attempt:
                await write_conditionally()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
