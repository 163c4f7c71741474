"""
Per-request structured logging.

Every request runs inside a RequestContext, so log lines emitted while it is
handled carry its request_id and trace_id (and user_id once the bearer
token is validated). The completion line is promoted to WARNING or ERROR
when the request is slow.
"""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from invoicely.observability.logging import (
    RequestContext,
    get_logger,
    new_request_id,
    new_trace_id,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
TRACE_ID_HEADER = "X-Trace-ID"

# Probe and scrape endpoints are not worth a log line per hit
EXCLUDED_PATHS = frozenset({"/health", "/metrics", "/docs", "/redoc", "/openapi.json"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each request once, on completion, with status and latency.

    X-Request-ID and X-Trace-ID are taken from the caller when present,
    generated otherwise, and echoed on the response.

    Latency thresholds (LOGGING_SLOW_REQUEST_*_MS): checkout and watch
    renewal wait on third-party providers, so the defaults are generous.
    """

    def __init__(
        self,
        app: ASGIApp,
        slow_warning_ms: float = 500.0,
        slow_error_ms: float = 2000.0,
    ):
        super().__init__(app)
        self.slow_warning_ms = slow_warning_ms
        self.slow_error_ms = slow_error_ms

    def completion_level(self, latency_ms: float, status_code: int) -> str:
        if latency_ms > self.slow_error_ms or status_code >= 500:
            return "error"
        if latency_ms > self.slow_warning_ms:
            return "warning"
        return "info"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
        trace_id = request.headers.get(TRACE_ID_HEADER) or new_trace_id()
        path = request.url.path

        with RequestContext(request_id=request_id, trace_id=trace_id):
            start_time = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000
            if path not in EXCLUDED_PATHS:
                level = self.completion_level(latency_ms, response.status_code)
                fields = {
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                    "client_host": request.client.host if request.client else None,
                }
                if latency_ms > self.slow_warning_ms:
                    fields["slow"] = True
                getattr(logger, level)("HTTP request completed", **fields)

            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[TRACE_ID_HEADER] = trace_id
            return response
