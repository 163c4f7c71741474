"""
Billing API endpoints.

- POST /checkout: start a Polar checkout for the authenticated user
- POST /webhooks/polar: Polar subscription lifecycle deliveries (signed)
- GET /subscription: current subscription, plan and usage
- GET /plans: public plan catalog

Webhook deliveries carry no user token; authenticity comes from the
Standard Webhooks signature checked by PolarWebhookHandler.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from invoicely.auth.dependencies import get_current_user, get_request_origin
from invoicely.auth.supabase import AuthenticatedUser
from invoicely.billing.checkout import CheckoutService
from invoicely.billing.polar_client import PolarClient, get_polar_client
from invoicely.billing.usage_tracking import UsageMeter
from invoicely.billing.webhooks import (
    InvalidPayloadError,
    InvalidSignatureError,
    PolarWebhookHandler,
)
from invoicely.config import Settings, get_settings
from invoicely.errors import InvalidRequestError, UnauthorizedError
from invoicely.models.billing import CheckoutRequest, CheckoutResponse, SubscriptionPlan
from invoicely.storage.database import BillingDatabase, get_billing_db
from invoicely.webhooks.signing import PolarWebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])


# Dependency providers


async def get_checkout_service(
    db: BillingDatabase = Depends(get_billing_db),
    polar: PolarClient = Depends(get_polar_client),
    settings: Settings = Depends(get_settings),
) -> CheckoutService:
    return CheckoutService(db=db, polar=polar, frontend_url=settings.service.frontend_url)


async def get_webhook_handler(
    db: BillingDatabase = Depends(get_billing_db),
    settings: Settings = Depends(get_settings),
) -> PolarWebhookHandler:
    verifier = PolarWebhookVerifier(settings.polar.webhook_secret)
    return PolarWebhookHandler(db=db, verifier=verifier)


async def get_usage_meter(
    db: BillingDatabase = Depends(get_billing_db),
    settings: Settings = Depends(get_settings),
) -> UsageMeter:
    return UsageMeter(db=db, default_document_limit=settings.usage.default_document_limit)


# Endpoints


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: Request,
    checkout_request: CheckoutRequest | None = Body(default=None),
    user: AuthenticatedUser = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """
    Create a hosted checkout session.

    Redirect URLs default to the caller's Origin (or SERVICE_FRONTEND_URL)
    settings page.

    Raises:
        400: product_id missing
        401: Missing or invalid bearer token
        500: Polar rejected the customer or checkout
    """
    checkout_request = checkout_request or CheckoutRequest()
    checkout_url = await checkout_service.create_checkout_session(
        user=user,
        product_id=checkout_request.product_id,
        success_url=checkout_request.success_url,
        cancel_url=checkout_request.cancel_url,
        origin=get_request_origin(request),
    )
    return CheckoutResponse(checkout_url=checkout_url)


@router.post("/webhooks/polar")
async def polar_webhook(
    request: Request,
    handler: PolarWebhookHandler = Depends(get_webhook_handler),
) -> dict[str, Any]:
    """
    Receive a Polar webhook delivery.

    The raw body is verified before parsing; replays of a processed
    delivery are harmless.

    Raises:
        400: Body is not a valid event
        401: Signature missing, invalid or older than five minutes
    """
    payload = await request.body()

    try:
        result = await handler.handle_event(payload, request.headers)
    except InvalidSignatureError as e:
        raise UnauthorizedError("Invalid webhook signature") from e
    except InvalidPayloadError as e:
        raise InvalidRequestError(str(e)) from e

    return {"received": True, "status": result["status"]}


@router.get("/subscription")
async def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
) -> dict[str, Any]:
    """Current subscription (synthetic free when none is stored), plan and usage."""
    entitlement = await meter.get_entitlement(user.id)
    usage = await meter.get_usage_summary(user.id)

    subscription = entitlement.subscription
    return {
        "subscription": {
            "id": subscription.id,
            "status": subscription.status.value,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
        },
        "plan": entitlement.plan.model_dump() if entitlement.plan else None,
        "usage": usage,
    }


@router.get("/plans", response_model=list[SubscriptionPlan])
async def list_plans(
    db: BillingDatabase = Depends(get_billing_db),
) -> list[SubscriptionPlan]:
    """Active plans, cheapest first."""
    return await db.list_active_plans()
