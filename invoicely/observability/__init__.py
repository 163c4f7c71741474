"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- logging_middleware.py / middleware.py: per-request logging and metrics
"""

from invoicely.observability.metrics import (
    track_checkout_session,
    track_document_usage_increment,
    track_gmail_watch_renewal,
    track_request,
    track_upload_link_verification,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_checkout_session",
    "track_webhook_event",
    "track_document_usage_increment",
    "track_upload_link_verification",
    "track_gmail_watch_renewal",
]
