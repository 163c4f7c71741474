"""
FastAPI dependencies for authentication and authorization.

Security:
- User identity comes only from a validated bearer token; user ids in
  request bodies are never trusted
- Internal cron endpoints require the service-role credential
  (constant-time comparison)

Performance:
- Validated tokens cached in-memory (60 second TTL)
"""

import hashlib
import hmac
import logging

from cachetools import TTLCache
from fastapi import Depends, Header, Request

from invoicely.auth.supabase import (
    AuthBackendError,
    AuthenticatedUser,
    SupabaseAuthClient,
    get_auth_client,
)
from invoicely.config import Settings, get_settings
from invoicely.errors import InternalError, UnauthorizedError
from invoicely.observability.logging import set_user_id
from invoicely.observability.metrics import track_auth_cache_hit, track_auth_cache_miss

logger = logging.getLogger(__name__)

# Validated tokens, keyed by SHA-256 of the token so raw tokens are not held in memory.
# Trade-off: up to one TTL of stale data vs. a network round-trip on every request.
USER_TOKEN_CACHE: TTLCache = TTLCache(maxsize=1000, ttl=60)


def extract_bearer_token(authorization: str | None) -> str:
    """
    Parse "Bearer <token>".

    Raises:
        UnauthorizedError: Header missing or malformed
    """
    if not authorization:
        raise UnauthorizedError("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise UnauthorizedError("Invalid Authorization header format. Use: 'Bearer {token}'")
    return parts[1]


async def get_current_user(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthenticatedUser:
    """
    Validate the bearer token and return the authenticated user.

    Raises:
        UnauthorizedError: Missing, malformed, invalid or expired token
        InternalError: Auth backend unavailable
    """
    token = extract_bearer_token(authorization)
    cache_key = hashlib.sha256(token.encode("utf-8")).hexdigest()

    user = USER_TOKEN_CACHE.get(cache_key)
    if user is not None:
        track_auth_cache_hit()
    else:
        track_auth_cache_miss()
        try:
            user = await auth_client.get_user(token)
        except AuthBackendError as e:
            logger.error("Token validation failed", extra={"error": str(e)})
            raise InternalError("Auth backend unavailable") from e

        if user is None:
            raise UnauthorizedError("Unauthorized")

        USER_TOKEN_CACHE[cache_key] = user

    request.state.user = user
    set_user_id(user.id)
    return user


async def require_service_role(
    authorization: str | None = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Allow only callers presenting the service-role credential (cron jobs).

    Raises:
        UnauthorizedError: Credential missing or wrong
    """
    token = extract_bearer_token(authorization)
    expected = settings.supabase.service_role_key
    if not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected internal call with invalid service credential")
        raise UnauthorizedError("Unauthorized")


def get_request_origin(request: Request) -> str | None:
    """Origin header of a browser request, ignoring the opaque "null" origin."""
    origin = request.headers.get("origin")
    if not origin or origin == "null":
        return None
    return origin.rstrip("/")
