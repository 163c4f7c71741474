"""
Document usage endpoints.

The document pipeline calls POST /documents once per processed invoice;
a 429 tells it the monthly quota is exhausted.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from invoicely.auth.dependencies import get_current_user
from invoicely.auth.supabase import AuthenticatedUser
from invoicely.billing.usage_tracking import UsageMeter
from invoicely.errors import QuotaExceededError
from invoicely.routers.billing import get_usage_meter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/usage", tags=["Usage"])


@router.get("")
async def get_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
) -> dict[str, Any]:
    return await meter.get_usage_summary(user.id)


@router.post("/documents")
async def record_document(
    user: AuthenticatedUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
) -> dict[str, Any]:
    """
    Count one processed document against this month's quota.

    Raises:
        429: Quota already reached (counter unchanged)
    """
    if not await meter.increment_usage(user.id):
        raise QuotaExceededError(
            "Monthly document limit reached",
            details={"user_id": user.id},
        )

    return {"incremented": True, "usage": await meter.get_usage_summary(user.id)}
