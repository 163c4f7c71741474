"""
Checkout initiation.

Flow for an authenticated user:
1. Look up the user's billing customer; if absent, create it in Polar and
   store it locally together with a free subscription (one transaction).
2. Create a Polar checkout session for the requested product.
3. Return the hosted checkout URL.

A customer created in step 1 is kept even if step 2 fails, so a retry
reuses it.
"""

import logging

from invoicely.auth.supabase import AuthenticatedUser
from invoicely.billing.polar_client import PolarClient, PolarError
from invoicely.errors import InternalError, InvalidRequestError, UpstreamError
from invoicely.models.billing import Customer
from invoicely.observability.metrics import track_checkout_session
from invoicely.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


def default_redirect_urls(origin: str) -> tuple[str, str]:
    """(success_url, cancel_url) pointing back at the settings page."""
    return (
        f"{origin}/settings?checkout=success",
        f"{origin}/settings?checkout=canceled",
    )


class CheckoutService:
    """Creates Polar checkout sessions for authenticated users."""

    def __init__(self, db: BillingDatabase, polar: PolarClient, frontend_url: str):
        """
        Args:
            db: Billing database
            polar: Polar API client
            frontend_url: Redirect base used when the request has no Origin
        """
        self.db = db
        self.polar = polar
        self.frontend_url = frontend_url.rstrip("/")

    async def create_checkout_session(
        self,
        user: AuthenticatedUser,
        product_id: str | None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        origin: str | None = None,
    ) -> str:
        """
        Create a checkout session and return its URL.

        Raises:
            InvalidRequestError: product_id missing
            UpstreamError: Polar rejected customer or checkout creation
            InternalError: Customer row could not be stored or re-read
        """
        if not product_id:
            track_checkout_session("invalid_request")
            raise InvalidRequestError("Product ID is required")

        customer = await self.get_or_create_customer(user)

        default_success, default_cancel = default_redirect_urls(origin or self.frontend_url)

        try:
            checkout = await self.polar.create_checkout(
                product_id=product_id,
                customer_id=customer.external_billing_id,
                success_url=success_url or default_success,
                cancel_url=cancel_url or default_cancel,
                metadata={"user_id": user.id},
            )
        except PolarError as e:
            track_checkout_session("upstream_error")
            raise UpstreamError(
                "Failed to create checkout",
                details={"status_code": e.status_code},
            ) from e

        track_checkout_session("created")
        logger.info(
            "Checkout session created",
            extra={"user_id": user.id, "product_id": product_id, "checkout_id": checkout.get("id")},
        )
        return checkout["url"]

    async def get_or_create_customer(self, user: AuthenticatedUser) -> Customer:
        """
        Return the user's billing customer, creating it on first checkout.

        Concurrent first checkouts may both create a Polar customer; the
        UNIQUE constraint on user_id lets exactly one local row win and the
        loser re-reads it.
        """
        customer = await self.db.get_customer_by_user_id(user.id)
        if customer is not None:
            return customer

        try:
            polar_customer = await self.polar.create_customer(
                email=user.email,
                name=user.display_name,
                external_id=user.id,
            )
        except PolarError as e:
            track_checkout_session("upstream_error")
            raise UpstreamError(
                "Failed to create customer",
                details={"status_code": e.status_code},
            ) from e

        customer = await self.db.create_customer_with_free_subscription(
            user_id=user.id,
            email=user.email,
            name=polar_customer.get("name") or user.display_name,
            external_billing_id=polar_customer["id"],
        )
        if customer is None:
            customer = await self.db.get_customer_by_user_id(user.id)
            if customer is None:
                raise InternalError("Customer could not be stored")
            logger.warning(
                "Concurrent checkout created the customer first; orphaned Polar customer left",
                extra={"user_id": user.id, "polar_customer_id": polar_customer["id"]},
            )
        else:
            logger.info(
                "Created billing customer",
                extra={"user_id": user.id, "polar_customer_id": polar_customer["id"]},
            )

        return customer
