"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when dependencies fail;
retries absorb conditional-write conflicts.
"""

from minuteledger.resilience.circuit_breakers import (
    StripeCircuitBreakerError,
    get_stripe_breaker,
    reset_all_breakers,
    retrying_on,
    with_stripe_circuit_breaker,
)

__all__ = [
    "StripeCircuitBreakerError",
    "get_stripe_breaker",
    "reset_all_breakers",
    "retrying_on",
    "with_stripe_circuit_breaker",
]
