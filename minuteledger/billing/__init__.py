"""
Billing webhooks and usage metering.

- events: typed events decoded from verified webhook bodies
- dispatcher: idempotent kind -> handler routing with a dedup log
- subscriptions: subscription lifecycle state machine
- stripe_service: customer -> user resolution
- usage_tracking: monthly/total minute ledger and quota signals
"""

from minuteledger.billing.dispatcher import DispatchResult, EventDispatcher, HandlerFailure
from minuteledger.billing.stripe_service import StripeService
from minuteledger.billing.subscriptions import SubscriptionStateHandler, UnknownCustomer
from minuteledger.billing.usage_tracking import QuotaExceededError, UsageLedger

__all__ = [
    "DispatchResult",
    "EventDispatcher",
    "HandlerFailure",
    "StripeService",
    "SubscriptionStateHandler",
    "UnknownCustomer",
    "QuotaExceededError",
    "UsageLedger",
]
