"""
Client for the hosted auth backend (Supabase GoTrue).

A user's bearer token is valid when GET {SUPABASE_URL}/auth/v1/user
returns the user object for it.
"""

import logging
import time

import httpx
from pydantic import BaseModel

from invoicely.config import SupabaseConfig
from invoicely.observability.metrics import track_provider_call

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    """The caller behind a validated bearer token."""

    id: str
    email: str
    full_name: str | None = None

    @property
    def display_name(self) -> str:
        """Full name, or the local part of the email address."""
        return self.full_name or self.email.split("@")[0]


class AuthBackendError(Exception):
    """The auth backend could not be reached or answered unexpectedly."""


class SupabaseAuthClient:
    def __init__(self, config: SupabaseConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.url,
            timeout=config.request_timeout_seconds,
            transport=transport,
            headers={"apikey": config.service_role_key},
        )

    async def get_user(self, access_token: str) -> AuthenticatedUser | None:
        """
        Resolve a bearer token to its user.

        Returns:
            AuthenticatedUser, or None if the token is invalid or expired

        Raises:
            AuthBackendError: On transport failure or a 5xx answer
        """
        start = time.perf_counter()
        try:
            response = await self._client.get(
                "/auth/v1/user", headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            track_provider_call("supabase", "get_user", time.perf_counter() - start, success=False)
            raise AuthBackendError(f"Auth backend unreachable: {e}") from e

        duration = time.perf_counter() - start
        if response.status_code >= 500:
            track_provider_call("supabase", "get_user", duration, success=False)
            raise AuthBackendError(f"Auth backend returned {response.status_code}")

        track_provider_call("supabase", "get_user", duration, success=response.is_success)
        if not response.is_success:
            return None

        data = response.json()
        user_id = data.get("id")
        email = data.get("email")
        if not user_id or not email:
            logger.warning("Auth backend returned a user without id or email")
            return None

        metadata = data.get("user_metadata") or {}
        return AuthenticatedUser(id=user_id, email=email, full_name=metadata.get("full_name"))

    async def aclose(self) -> None:
        await self._client.aclose()


_auth_client: SupabaseAuthClient | None = None


def get_auth_client() -> SupabaseAuthClient:
    """Get global auth client instance (singleton)."""
    global _auth_client
    if _auth_client is None:
        from invoicely.config import get_settings

        _auth_client = SupabaseAuthClient(get_settings().supabase)
    return _auth_client


async def close_auth_client() -> None:
    global _auth_client
    if _auth_client is not None:
        await _auth_client.aclose()
        _auth_client = None
