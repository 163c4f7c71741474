"""
Google OAuth token refresh.

POST {GOOGLE_TOKEN_URL} (form-encoded) with the stored refresh token.
An "error" in the answer (e.g. invalid_grant after the user revoked access)
means the refresh token is dead; transport failures are transient.
"""

import logging
import time
from dataclasses import dataclass

import httpx

from invoicely.config import GoogleOAuthConfig
from invoicely.observability.metrics import track_provider_call
from invoicely.resilience.retry import transient_retrying

logger = logging.getLogger(__name__)


class OAuthRefreshError(Exception):
    """Google refused the refresh token."""

    def __init__(self, error: str, description: str | None = None):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description


@dataclass
class TokenRefreshResult:
    access_token: str
    expires_in: int


class GoogleOAuthClient:
    def __init__(
        self, config: GoogleOAuthConfig, transport: httpx.AsyncBaseTransport | None = None
    ):
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=config.request_timeout_seconds, transport=transport
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        """
        Exchange a refresh token for a new access token.

        Raises:
            OAuthRefreshError: Google answered with an error (token revoked/invalid)
            httpx.HTTPError: Network failure after retries
        """
        start = time.perf_counter()
        try:
            async for attempt in transient_retrying(
                self.config.max_retries, self.config.retry_backoff_seconds
            ):
                with attempt:
                    response = await self._client.post(
                        self.config.token_url,
                        data={
                            "refresh_token": refresh_token,
                            "client_id": self.config.client_id,
                            "client_secret": self.config.client_secret,
                            "grant_type": "refresh_token",
                        },
                    )
        except httpx.HTTPError:
            track_provider_call(
                "google", "refresh_token", time.perf_counter() - start, success=False
            )
            raise

        duration = time.perf_counter() - start
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 500 and "error" not in data:
            track_provider_call("google", "refresh_token", duration, success=False)
            response.raise_for_status()

        if "error" in data or not response.is_success or not data.get("access_token"):
            track_provider_call("google", "refresh_token", duration, success=False)
            raise OAuthRefreshError(
                str(data.get("error") or f"http_{response.status_code}"),
                data.get("error_description"),
            )

        track_provider_call("google", "refresh_token", duration, success=True)
        return TokenRefreshResult(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


_oauth_client: GoogleOAuthClient | None = None


def get_google_oauth_client() -> GoogleOAuthClient:
    """Get global Google OAuth client instance (singleton)."""
    global _oauth_client
    if _oauth_client is None:
        from invoicely.config import get_settings

        _oauth_client = GoogleOAuthClient(get_settings().google)
    return _oauth_client


async def close_google_oauth_client() -> None:
    global _oauth_client
    if _oauth_client is not None:
        await _oauth_client.aclose()
        _oauth_client = None
