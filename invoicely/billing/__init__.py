"""
Billing and subscription management.

Polar integration for:
- Checkout sessions (hosted payment page)
- Subscription lifecycle webhooks
- Monthly document quota metering
"""

from invoicely.billing.checkout import CheckoutService
from invoicely.billing.polar_client import PolarClient
from invoicely.billing.usage_tracking import UsageMeter
from invoicely.billing.webhooks import PolarWebhookHandler, map_polar_status

__all__ = [
    "CheckoutService",
    "PolarClient",
    "PolarWebhookHandler",
    "UsageMeter",
    "map_polar_status",
]
