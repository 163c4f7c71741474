"""
Billing data models: customers, plans, subscriptions and monthly document usage.

A Customer links an authenticated user to their Polar billing customer.
Subscriptions reference a SubscriptionPlan, whose document_limit drives
the usage meter (-1 means unlimited).
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

UNLIMITED_DOCUMENTS = -1
DEFAULT_DOCUMENT_LIMIT = 10
FREE_PLAN_PRODUCT_ID = "free"


class SubscriptionStatus(str, Enum):
    """Internal subscription status."""

    FREE = "free"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"


# Statuses that keep the subscribed plan's entitlements.
ENTITLED_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


def current_month_year(now: datetime | None = None) -> str:
    """Usage period key (YYYY-MM) for the given instant, UTC wall clock."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).strftime("%Y-%m")


class Customer(BaseModel):
    """Billing customer; one per user."""

    id: str
    user_id: str
    external_billing_id: str | None = None
    email: str
    name: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SubscriptionPlan(BaseModel):
    """Catalog entry mapped to a Polar product."""

    id: str
    external_product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    document_limit: int = Field(default=DEFAULT_DOCUMENT_LIMIT, ge=UNLIMITED_DOCUMENTS)
    features: list[str] = Field(default_factory=list)
    price_monthly: float | None = Field(default=None, ge=0)
    price_yearly: float | None = Field(default=None, ge=0)
    is_active: bool = True

    @property
    def is_unlimited(self) -> bool:
        return self.document_limit == UNLIMITED_DOCUMENTS


class SubscriptionPlanCreate(BaseModel):
    """Schema for seeding or updating a catalog entry."""

    external_product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    document_limit: int = Field(default=DEFAULT_DOCUMENT_LIMIT, ge=UNLIMITED_DOCUMENTS)
    features: list[str] = Field(default_factory=list)
    price_monthly: float | None = Field(default=None, ge=0)
    price_yearly: float | None = Field(default=None, ge=0)
    is_active: bool = True


class Subscription(BaseModel):
    """
    A customer's subscription.

    The synthetic free subscription (id=None) stands in for customers with no
    stored row and is never persisted.
    """

    id: str | None = None
    customer_id: str | None = None
    plan_id: str | None = None
    external_subscription_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.FREE
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def synthetic_free(cls, customer_id: str | None = None) -> "Subscription":
        return cls(customer_id=customer_id, status=SubscriptionStatus.FREE)

    @property
    def is_synthetic(self) -> bool:
        return self.id is None

    def keeps_plan(self, now: datetime | None = None) -> bool:
        """
        Whether the subscribed plan's entitlements still apply.

        A canceled subscription keeps its plan until the paid period ends.
        """
        if self.status in ENTITLED_STATUSES:
            return True
        if self.status == SubscriptionStatus.CANCELED and self.current_period_end is not None:
            now = now or datetime.now(UTC)
            return self.current_period_end > now
        return False


class SubscriptionUpsert(BaseModel):
    """Fields written when reconciling a provider subscription event."""

    customer_id: str
    plan_id: str | None = None
    external_subscription_id: str = Field(..., min_length=1)
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class DocumentUsage(BaseModel):
    """Per-user, per-month processed-document counter."""

    user_id: str
    month_year: str
    document_count: int = Field(default=0, ge=0)

    @field_validator("month_year")
    @classmethod
    def validate_month_year(cls, v: str) -> str:
        try:
            datetime.strptime(v, "%Y-%m")
        except ValueError as e:
            raise ValueError(f"month_year must be YYYY-MM, got {v!r}") from e
        return v


class CheckoutRequest(BaseModel):
    """Body of the checkout endpoint. product_id is validated by the service."""

    product_id: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    checkout_url: str
