"""
Usage reporting endpoints.

Read-only: nothing here changes the ledger.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from minuteledger.billing.usage_tracking import UsageLedger
from minuteledger.models.usage import QuotaStatus

router = APIRouter(prefix="/api/v1/usage", tags=["Usage"])


class QuotaCheckRequest(BaseModel):
    """Durations of the files a user is about to upload."""

    additional_seconds: list[Annotated[float, Field(ge=0)]] = Field(default_factory=list, max_length=100)


def get_ledger(request: Request) -> UsageLedger:
    return request.app.state.usage_ledger


@router.get("/{user_id}")
async def get_usage(
    user_id: str,
    ledger: UsageLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """
    Get a user's usage summary.

    Returns:
        dict: Monthly and total minutes, limit, percentage and plan
    """
    return await ledger.get_usage_summary(user_id)


@router.post("/{user_id}/check", response_model=QuotaStatus)
async def check_quota(
    user_id: str,
    check: QuotaCheckRequest,
    ledger: UsageLedger = Depends(get_ledger),
) -> QuotaStatus:
    """Check whether the given durations fit in the user's remaining quota."""
    return await ledger.check_quota(user_id, check.additional_seconds)
