"""Inbound webhook signature verification."""

from invoicely.webhooks.signing import PolarWebhookVerifier, WebhookVerificationError

__all__ = ["PolarWebhookVerifier", "WebhookVerificationError"]
