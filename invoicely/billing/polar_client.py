"""
Polar REST API client.

Only the two calls the checkout flow needs:
- POST /v1/customers/  (create billing customer)
- POST /v1/checkouts/  (create hosted checkout session)
"""

import logging
import time
from typing import Any

import httpx

from invoicely.config import PolarConfig
from invoicely.observability.metrics import track_provider_call
from invoicely.resilience.retry import transient_retrying

logger = logging.getLogger(__name__)


class PolarError(Exception):
    """Polar rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PolarClient:
    """
    Async Polar API client.

    Responses are returned as plain dicts; callers pick the fields they need
    (id, url). Error bodies are kept on the raised PolarError for server-side
    logging and never forwarded to API callers.
    """

    def __init__(self, config: PolarConfig, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize Polar client.

        Args:
            config: Polar configuration
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_base_url,
            timeout=config.request_timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {config.access_token}",
                "Content-Type": "application/json",
            },
        )

    @property
    def is_enabled(self) -> bool:
        return bool(self.config.access_token)

    async def create_customer(self, email: str, name: str, external_id: str) -> dict[str, Any]:
        """
        Create a Polar customer linked to our user id.

        Args:
            email: Billing email
            name: Display name
            external_id: Our user id (lets Polar dashboards link back)

        Returns:
            dict: Polar customer object (contains "id")

        Raises:
            PolarError: If creation fails
        """
        return await self._post(
            "/v1/customers/",
            {"email": email, "name": name, "external_id": external_id},
            operation="create_customer",
        )

    async def create_checkout(
        self,
        product_id: str,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        """
        Create a hosted checkout session.

        Returns:
            dict: Polar checkout object (contains "url")

        Raises:
            PolarError: If creation fails or the response has no url
        """
        checkout = await self._post(
            "/v1/checkouts/",
            {
                "product_id": product_id,
                "customer_id": customer_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            },
            operation="create_checkout",
        )
        if not checkout.get("url"):
            raise PolarError("Checkout response has no url", body=str(checkout))
        return checkout

    async def _post(self, path: str, payload: dict[str, Any], operation: str) -> dict[str, Any]:
        if not self.is_enabled:
            raise PolarError("Polar access token not configured")

        start = time.perf_counter()
        try:
            async for attempt in transient_retrying(
                self.config.max_retries, self.config.retry_backoff_seconds
            ):
                with attempt:
                    response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            track_provider_call("polar", operation, time.perf_counter() - start, success=False)
            logger.error(
                "Polar request failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise PolarError(f"Polar {operation} request failed: {e}") from e

        duration = time.perf_counter() - start
        if response.is_error:
            track_provider_call("polar", operation, duration, success=False)
            logger.error(
                "Polar API error",
                extra={
                    "operation": operation,
                    "status_code": response.status_code,
                    "body": response.text[:2000],
                },
            )
            raise PolarError(
                f"Polar {operation} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            track_provider_call("polar", operation, duration, success=False)
            raise PolarError(f"Polar {operation} returned invalid JSON", body=response.text) from e

        track_provider_call("polar", operation, duration, success=True)
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


# Global Polar client instance
_polar_client: PolarClient | None = None


def get_polar_client() -> PolarClient:
    """Get global Polar client instance (singleton)."""
    global _polar_client
    if _polar_client is None:
        from invoicely.config import get_settings

        _polar_client = PolarClient(get_settings().polar)
    return _polar_client


async def close_polar_client() -> None:
    global _polar_client
    if _polar_client is not None:
        await _polar_client.aclose()
        _polar_client = None
