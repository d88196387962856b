"""
API routers for the minute ledger service.

Routers:
- webhooks: Signed billing events from the payment provider
- uploads: Upload registration, completion and status
- usage: Usage summaries and quota checks
"""

from minuteledger.routers.uploads import router as uploads_router
from minuteledger.routers.usage import router as usage_router
from minuteledger.routers.webhooks import router as webhooks_router

__all__ = ["uploads_router", "usage_router", "webhooks_router"]
