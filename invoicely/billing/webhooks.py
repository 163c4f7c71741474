"""
Polar webhook event handlers.

Reconciles subscription lifecycle events into local state:
- subscription.created / subscription.updated → upsert by external subscription id
- subscription.canceled → mark canceled at period end
- checkout.created / order.paid → acknowledged and logged
- anything else → ignored

Deliveries are verified (Standard Webhooks signatures) before any processing and
every event is recorded in the audit log. Handlers are idempotent: replaying
a delivery leaves the store unchanged.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from invoicely.models.billing import SubscriptionStatus, SubscriptionUpsert
from invoicely.observability.metrics import track_webhook_event
from invoicely.storage.database import BillingDatabase
from invoicely.webhooks.signing import (
    WEBHOOK_ID_HEADER,
    PolarWebhookVerifier,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """Base exception for webhook processing errors."""


class InvalidPayloadError(WebhookError):
    """Body is not a JSON object with a type and data."""


class InvalidSignatureError(WebhookError):
    """Delivery failed signature verification."""


class PolarSubscriptionStatus(str, Enum):
    """Subscription statuses Polar sends."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


POLAR_STATUS_MAP: dict[PolarSubscriptionStatus, SubscriptionStatus] = {
    PolarSubscriptionStatus.INCOMPLETE: SubscriptionStatus.INCOMPLETE,
    PolarSubscriptionStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.CANCELED,
    PolarSubscriptionStatus.TRIALING: SubscriptionStatus.TRIALING,
    PolarSubscriptionStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    PolarSubscriptionStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    PolarSubscriptionStatus.CANCELED: SubscriptionStatus.CANCELED,
    PolarSubscriptionStatus.UNPAID: SubscriptionStatus.PAST_DUE,
}

if set(POLAR_STATUS_MAP) != set(PolarSubscriptionStatus):
    raise RuntimeError("POLAR_STATUS_MAP must cover every PolarSubscriptionStatus")


def map_polar_status(raw_status: str | None) -> SubscriptionStatus:
    """
    Map a Polar status string to the internal status.

    Unknown or missing statuses map to free.
    """
    try:
        polar_status = PolarSubscriptionStatus(raw_status)
    except ValueError:
        if raw_status is not None:
            logger.warning("Unknown Polar subscription status", extra={"status": raw_status})
        return SubscriptionStatus.FREE
    return POLAR_STATUS_MAP[polar_status]


class PolarSubscriptionPayload(BaseModel):
    """The fields of a Polar subscription object we reconcile."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    customer_id: str | None = None
    product_id: str | None = None
    status: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class PolarWebhookHandler:
    """
    Handle Polar webhook events.

    Processes subscription events and updates subscription records accordingly.
    """

    def __init__(self, db: BillingDatabase, verifier: PolarWebhookVerifier):
        """
        Initialize webhook handler.

        Args:
            db: Billing database
            verifier: Verifier configured with the Polar webhook secret
        """
        self.db = db
        self.verifier = verifier

    async def handle_event(self, payload: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        """
        Verify and process a Polar webhook delivery.

        Args:
            payload: Raw request body
            headers: Request headers

        Returns:
            dict: Processing result with status and message

        Raises:
            InvalidSignatureError: Signature missing or invalid (nothing processed)
            InvalidPayloadError: Body is not a valid event
        """
        try:
            event = self.verifier.verify(payload, headers)
        except WebhookVerificationError as e:
            track_webhook_event("unknown", "invalid_signature")
            logger.warning("Rejected webhook delivery", extra={"reason": str(e)})
            raise InvalidSignatureError(str(e)) from e
        except ValueError as e:
            track_webhook_event("unknown", "invalid_payload")
            raise InvalidPayloadError("Invalid JSON payload") from e

        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            track_webhook_event("unknown", "invalid_payload")
            raise InvalidPayloadError("Event has no type")

        event_type = event["type"]
        event_data = event.get("data")
        if not isinstance(event_data, dict):
            event_data = {}
        subject_id = event_data.get("id")
        if not isinstance(subject_id, str):
            subject_id = None
        webhook_id = headers.get(WEBHOOK_ID_HEADER)

        logger.info(
            "Processing Polar webhook event",
            extra={"event_type": event_type, "webhook_id": webhook_id},
        )

        handlers = {
            "subscription.created": self._handle_subscription_upsert,
            "subscription.updated": self._handle_subscription_upsert,
            "subscription.canceled": self._handle_subscription_canceled,
            "checkout.created": self._handle_informational,
            "order.paid": self._handle_informational,
        }

        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled webhook event type", extra={"event_type": event_type})
            track_webhook_event(event_type, "ignored")
            await self.db.record_billing_event(
                event_type, webhook_id, subject_id, outcome="ignored"
            )
            return {"status": "ignored", "message": f"Unhandled event: {event_type}"}

        try:
            result = await handler(event_type, event_data)
        except InvalidPayloadError:
            track_webhook_event(event_type, "invalid_payload")
            raise
        except Exception:
            track_webhook_event(event_type, "error")
            logger.exception("Webhook event processing failed", extra={"event_type": event_type})
            raise

        track_webhook_event(event_type, "processed")
        await self.db.record_billing_event(
            event_type, webhook_id, subject_id, outcome=result
        )
        logger.info("Webhook event processed", extra={"event_type": event_type, "result": result})
        return {"status": "success", "message": result}

    async def _handle_subscription_upsert(self, event_type: str, data: dict[str, Any]) -> str:
        """Create or update the subscription row for this Polar subscription."""
        subscription = self._parse_subscription(data)

        customer = (
            await self.db.get_customer_by_external_id(subscription.customer_id)
            if subscription.customer_id
            else None
        )
        if customer is None:
            logger.warning(
                "Subscription event for unknown customer",
                extra={
                    "polar_customer_id": subscription.customer_id,
                    "subscription_id": subscription.id,
                },
            )
            return "Unknown customer"

        plan = (
            await self.db.get_plan_by_external_product_id(subscription.product_id)
            if subscription.product_id
            else None
        )
        if plan is None:
            logger.warning(
                "Subscription event for unknown product",
                extra={"product_id": subscription.product_id, "subscription_id": subscription.id},
            )

        status = map_polar_status(subscription.status)
        stored, created = await self.db.upsert_subscription(
            SubscriptionUpsert(
                customer_id=customer.id,
                plan_id=plan.id if plan else None,
                external_subscription_id=subscription.id,
                status=status,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
            )
        )

        logger.info(
            "Subscription created" if created else "Subscription updated",
            extra={
                "user_id": customer.user_id,
                "subscription_id": subscription.id,
                "status": status.value,
                "plan_id": stored.plan_id,
            },
        )
        return f"Subscription {'created' if created else 'updated'}: {subscription.id}"

    async def _handle_subscription_canceled(self, event_type: str, data: dict[str, Any]) -> str:
        """Mark the subscription canceled; nothing else about it changes."""
        subscription_id = data.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise InvalidPayloadError("Subscription event without id")

        if not await self.db.cancel_subscription(subscription_id):
            logger.warning(
                "Cancellation for unknown subscription",
                extra={"subscription_id": subscription_id},
            )
            return "Unknown subscription"

        logger.warning("Subscription canceled", extra={"subscription_id": subscription_id})
        return f"Subscription canceled: {subscription_id}"

    async def _handle_informational(self, event_type: str, data: dict[str, Any]) -> str:
        logger.info(
            "Billing event received",
            extra={"event_type": event_type, "object_id": data.get("id")},
        )
        return f"Acknowledged {event_type}"

    @staticmethod
    def _parse_subscription(data: dict[str, Any]) -> PolarSubscriptionPayload:
        try:
            return PolarSubscriptionPayload.model_validate(data)
        except ValidationError as e:
            raise InvalidPayloadError(f"Invalid subscription object: {e.error_count()} errors") from e
