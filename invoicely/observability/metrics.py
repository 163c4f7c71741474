"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Auth token cache hit rate (counter)
- Polar / Google call latency (histogram)
- Checkout sessions, webhook events, usage increments,
  upload link verifications and Gmail watch renewals (counters by outcome)

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "invoicely_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,
        0.010,
        0.025,
        0.050,
        0.100,
        0.250,
        0.500,  # bcrypt verification lands here
        1.000,
        2.500,  # provider round-trips
        5.000,
        10.000,
    ),
)

http_requests_total = Counter(
    "invoicely_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "invoicely_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

errors_total = Counter(
    "invoicely_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# AUTHENTICATION METRICS
# ============================================================================

auth_token_cache_hits_total = Counter(
    "invoicely_auth_token_cache_hits_total",
    "Bearer tokens resolved from the local cache",
)

auth_token_cache_misses_total = Counter(
    "invoicely_auth_token_cache_misses_total",
    "Bearer tokens validated against the auth backend",
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

provider_call_duration_seconds = Histogram(
    "invoicely_provider_call_duration_seconds",
    "Outbound provider call latency",
    labelnames=["provider", "operation", "success"],
    buckets=(0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 15.000),
)

# ============================================================================
# BILLING METRICS
# ============================================================================

checkout_sessions_total = Counter(
    "invoicely_checkout_sessions_total",
    "Checkout session attempts",
    labelnames=["outcome"],
)

webhook_events_total = Counter(
    "invoicely_webhook_events_total",
    "Billing webhook events received",
    labelnames=["event_type", "outcome"],
)

document_usage_increments_total = Counter(
    "invoicely_document_usage_increments_total",
    "Document usage increment attempts",
    labelnames=["outcome"],  # incremented | quota_exceeded
)

# ============================================================================
# UPLOAD LINK METRICS
# ============================================================================

upload_link_verifications_total = Counter(
    "invoicely_upload_link_verifications_total",
    "Upload link password verifications",
    labelnames=["outcome"],  # success | bad_request | not_found | unauthorized
)

# ============================================================================
# GMAIL METRICS
# ============================================================================

gmail_watch_renewals_total = Counter(
    "invoicely_gmail_watch_renewals_total",
    "Gmail watch renewal outcomes per connection",
    labelnames=["outcome"],  # renewed | failed | deactivated
)

gmail_active_connections = Gauge(
    "invoicely_gmail_active_connections",
    "Active Gmail connections seen by the last renewal run",
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Normalized API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_error(error_type: str, endpoint: str) -> None:
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def track_auth_cache_hit() -> None:
    auth_token_cache_hits_total.inc()


def track_auth_cache_miss() -> None:
    auth_token_cache_misses_total.inc()


def track_provider_call(
    provider: str, operation: str, duration_seconds: float, success: bool
) -> None:
    """
    Track an outbound call to Polar or Google.

    Args:
        provider: "polar" | "google" | "supabase"
        operation: Short operation name (create_customer, refresh_token, watch, ...)
        duration_seconds: Wall time including retries
        success: Whether the provider returned a usable response
    """
    provider_call_duration_seconds.labels(
        provider=provider,
        operation=operation,
        success=str(success).lower(),
    ).observe(duration_seconds)


def track_checkout_session(outcome: str) -> None:
    checkout_sessions_total.labels(outcome=outcome).inc()


def track_webhook_event(event_type: str, outcome: str) -> None:
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_document_usage_increment(incremented: bool) -> None:
    outcome = "incremented" if incremented else "quota_exceeded"
    document_usage_increments_total.labels(outcome=outcome).inc()


def track_upload_link_verification(outcome: str) -> None:
    upload_link_verifications_total.labels(outcome=outcome).inc()


def track_gmail_watch_renewal(outcome: str) -> None:
    gmail_watch_renewals_total.labels(outcome=outcome).inc()


def set_gmail_active_connections(count: int) -> None:
    gmail_active_connections.set(count)


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
