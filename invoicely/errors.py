"""
Service error taxonomy.

Each error carries the HTTP status it maps to. The exception handler in
main.py renders them as {"error": code, "message": text}. Server-side
failures (5xx) only expose a generic message; the detail is logged.
"""

from typing import Any


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    error_code: str = "internal_error"
    public_message: str | None = None

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def client_message(self) -> str:
        """Message safe to return to the caller."""
        return self.public_message or self.message


class UnauthorizedError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidRequestError(ServiceError):
    status_code = 400
    error_code = "invalid_request"


# Upload-link verification speaks of "bad request"; same thing.
BadRequestError = InvalidRequestError


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class QuotaExceededError(ServiceError):
    """Monthly document quota exhausted."""

    status_code = 429
    error_code = "quota_exceeded"


class UpstreamError(ServiceError):
    """A third-party provider (Polar, Google) rejected or failed a call."""

    status_code = 500
    error_code = "upstream_error"
    public_message = "Upstream provider request failed"


class InternalError(ServiceError):
    status_code = 500
    error_code = "internal_error"
    public_message = "Internal server error"
