"""
HTTP metrics middleware.

Requests are labelled by route template (/api/v1/upload-links/{link_id}),
not raw path, to keep label cardinality bounded.
"""

import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from invoicely.observability.metrics import http_requests_active, track_error, track_request

_UPLOAD_LINK_ID = re.compile(r"/upload-links/(?!verify$)[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Fallback label for paths no route matched.

        /api/v1/upload-links/3f2a...-9c → /api/v1/upload-links/{link_id}
        /api/v1/upload-links/verify → unchanged
    """
    return _UPLOAD_LINK_ID.sub("/upload-links/{link_id}", path)


def endpoint_label(request: Request) -> str:
    """Route template once routing has run, else the normalized path."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or normalize_endpoint(request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record latency, count and in-flight requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        in_flight = http_requests_active.labels(
            method=method, endpoint=normalize_endpoint(request.url.path)
        )
        in_flight.inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            endpoint = endpoint_label(request)
            track_error(error_type=type(exc).__name__, endpoint=endpoint)
            track_request(method, endpoint, 500, time.perf_counter() - start_time)
            raise
        finally:
            in_flight.dec()

        track_request(
            method=method,
            endpoint=endpoint_label(request),
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - start_time,
        )
        return response
