"""
Resilience patterns for external dependencies.

Connection-level failures to Polar and Google are retried with backoff.
"""

from invoicely.resilience.retry import TRANSIENT_HTTP_ERRORS, transient_retrying

__all__ = [
    "TRANSIENT_HTTP_ERRORS",
    "transient_retrying",
]
