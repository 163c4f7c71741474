"""
Rate limiting for public endpoints.

Uses slowapi with in-memory storage, keyed by client address. The only
unauthenticated endpoint worth guarding is upload-link verification,
where the limit slows down password guessing.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address)


def verify_upload_link_limit() -> str:
    """
    Current limit for upload-link verification (UPLOAD_LINK_VERIFY_RATE_LIMIT).

    slowapi calls this per request, so the value follows configuration.
    """
    from invoicely.config import get_settings

    return get_settings().upload_links.verify_rate_limit or DEFAULT_VERIFY_LIMIT
