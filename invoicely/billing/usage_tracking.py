"""
Monthly document usage metering.

Each processed document counts against the user's plan limit for the
current UTC month (YYYY-MM). A plan limit of -1 means unlimited. Counters
are never decremented; a new month starts a new row.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from invoicely.models.billing import (
    DEFAULT_DOCUMENT_LIMIT,
    UNLIMITED_DOCUMENTS,
    Subscription,
    SubscriptionPlan,
    current_month_year,
)
from invoicely.observability.metrics import track_document_usage_increment
from invoicely.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


@dataclass
class Entitlement:
    """What a user may consume right now."""

    subscription: Subscription
    plan: SubscriptionPlan | None
    document_limit: int

    @property
    def is_unlimited(self) -> bool:
        return self.document_limit == UNLIMITED_DOCUMENTS


class UsageMeter:
    """
    Admit or deny document processing against the monthly quota.

    Responsibilities:
    - Resolve the user's current plan (free plan when nothing applies)
    - Read the month's counter
    - Increment it atomically, never past the limit
    """

    def __init__(
        self,
        db: BillingDatabase,
        default_document_limit: int = DEFAULT_DOCUMENT_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize usage meter.

        Args:
            db: Billing database
            default_document_limit: Limit when no plan can be resolved
            clock: Returns the current time (tests pin it)
        """
        self.db = db
        self.default_document_limit = default_document_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_entitlement(self, user_id: str) -> Entitlement:
        """
        Resolve the user's current subscription and plan.

        No customer or no subscription row → synthetic free subscription.
        The subscribed plan applies while the subscription keeps it
        (active, trialing, past_due, or canceled before period end);
        otherwise the free plan applies.
        """
        now = self._clock()
        customer = await self.db.get_customer_by_user_id(user_id)

        subscription = None
        if customer is not None:
            subscription = await self.db.get_current_subscription(customer.id)
        if subscription is None:
            subscription = Subscription.synthetic_free(customer.id if customer else None)

        plan = None
        if subscription.plan_id and subscription.keeps_plan(now):
            plan = await self.db.get_plan(subscription.plan_id)
        else:
            plan = await self.db.get_free_plan()

        document_limit = plan.document_limit if plan is not None else self.default_document_limit
        return Entitlement(subscription=subscription, plan=plan, document_limit=document_limit)

    async def get_document_limit(self, user_id: str) -> int:
        return (await self.get_entitlement(user_id)).document_limit

    async def get_document_count(self, user_id: str) -> int:
        usage = await self.db.get_document_usage(user_id, self._month_year())
        return usage.document_count if usage else 0

    async def can_upload_document(self, user_id: str) -> bool:
        """True if one more document fits in this month's quota."""
        limit = await self.get_document_limit(user_id)
        if limit == UNLIMITED_DOCUMENTS:
            return True
        return await self.get_document_count(user_id) < limit

    async def increment_usage(self, user_id: str) -> bool:
        """
        Count one processed document.

        Returns:
            bool: True if counted, False if the quota was already reached
            (the counter is left unchanged)
        """
        limit = await self.get_document_limit(user_id)
        month_year = self._month_year()

        new_count = await self.db.increment_document_usage(user_id, month_year, limit)
        incremented = new_count is not None
        track_document_usage_increment(incremented)

        if incremented:
            logger.info(
                "Document usage incremented",
                extra={"user_id": user_id, "month_year": month_year, "document_count": new_count},
            )
        else:
            logger.warning(
                "Document quota exceeded",
                extra={"user_id": user_id, "month_year": month_year, "document_limit": limit},
            )
        return incremented

    async def get_remaining_documents(self, user_id: str) -> int:
        """
        Documents left this month.

        Returns:
            int: max(0, limit - count), or UNLIMITED_DOCUMENTS (-1) for unlimited plans
        """
        limit = await self.get_document_limit(user_id)
        if limit == UNLIMITED_DOCUMENTS:
            return UNLIMITED_DOCUMENTS
        return max(0, limit - await self.get_document_count(user_id))

    async def get_usage_summary(self, user_id: str) -> dict[str, Any]:
        """
        Usage summary for the settings page.

        Returns:
            dict with plan, status, counts and whether another upload fits
        """
        entitlement = await self.get_entitlement(user_id)
        count = await self.get_document_count(user_id)

        if entitlement.is_unlimited:
            remaining = UNLIMITED_DOCUMENTS
            can_upload = True
            usage_percentage = 0.0
        else:
            remaining = max(0, entitlement.document_limit - count)
            can_upload = count < entitlement.document_limit
            usage_percentage = (
                round(count / entitlement.document_limit * 100, 2)
                if entitlement.document_limit > 0
                else 100.0
            )

        return {
            "user_id": user_id,
            "month_year": self._month_year(),
            "plan": entitlement.plan.name if entitlement.plan else None,
            "status": entitlement.subscription.status.value,
            "document_count": count,
            "document_limit": entitlement.document_limit,
            "remaining": remaining,
            "unlimited": entitlement.is_unlimited,
            "usage_percentage": usage_percentage,
            "can_upload": can_upload,
        }

    def _month_year(self) -> str:
        return current_month_year(self._clock())
