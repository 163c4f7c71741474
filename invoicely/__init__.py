"""
Invoicely billing service.

Subscription billing and quota enforcement for the Invoicely invoice-intake
app: Polar checkout and webhooks, monthly document quotas, Gmail watch
renewal and password-protected upload links.

Example:
    >>> from invoicely import get_settings
    >>> settings = get_settings()
    >>> print(settings.polar.api_base_url)
"""

from invoicely.config import get_settings

__all__ = ["get_settings"]
