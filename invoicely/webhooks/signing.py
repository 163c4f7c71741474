"""
Polar webhook signature verification.

Polar signs deliveries with the Standard Webhooks scheme (headers
webhook-id, webhook-timestamp and webhook-signature). Verification is done
by the standardwebhooks library, which also rejects deliveries whose
timestamp is more than five minutes away from the current time.

The secret shown in the Polar dashboard is used as raw bytes. Polar's own
SDK base64-encodes it before handing it to Standard Webhooks, and so do we.
"""

import base64
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from standardwebhooks.webhooks import Webhook, WebhookVerificationError

WEBHOOK_ID_HEADER = "webhook-id"
WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"
WEBHOOK_SIGNATURE_HEADER = "webhook-signature"

__all__ = [
    "WEBHOOK_ID_HEADER",
    "WEBHOOK_SIGNATURE_HEADER",
    "WEBHOOK_TIMESTAMP_HEADER",
    "PolarWebhookVerifier",
    "WebhookVerificationError",
]


class PolarWebhookVerifier:
    """Verify (and, for senders and tests, sign) Polar webhook deliveries."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Webhook secret must not be empty")

        self._webhook = Webhook(base64.b64encode(secret.encode("utf-8")).decode("ascii"))

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> Any:
        """
        Verify a delivery and return its decoded JSON body.

        Args:
            payload: Raw request body (exact bytes received)
            headers: Request headers, any case

        Raises:
            WebhookVerificationError: Headers missing, timestamp outside the
                tolerance, or no signature matches
            ValueError: Signature is valid but the body is not JSON
        """
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookVerificationError("Payload is not UTF-8") from e

        return self._webhook.verify(body, dict(headers.items()))

    def sign(self, webhook_id: str, timestamp: datetime, payload: bytes) -> str:
        """Signature header value ("v1,<base64>") for a delivery."""
        return self._webhook.sign(webhook_id, timestamp, payload.decode("utf-8"))

    def create_headers(
        self, webhook_id: str, payload: bytes, timestamp: datetime | None = None
    ) -> dict[str, str]:
        """
        Create the headers Polar would attach to this payload.

        Usage:
            headers = verifier.create_headers("msg_1", body)
            client.post("/api/v1/billing/webhooks/polar", content=body, headers=headers)
        """
        ts = timestamp or datetime.now(UTC)
        return {
            WEBHOOK_ID_HEADER: webhook_id,
            WEBHOOK_TIMESTAMP_HEADER: str(int(ts.timestamp())),
            WEBHOOK_SIGNATURE_HEADER: self.sign(webhook_id, ts, payload),
            "Content-Type": "application/json",
        }
