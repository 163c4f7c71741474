"""
Gmail push-notification watch renewal.

Gmail watches expire after seven days, so a scheduled job re-registers the
watch of every active connection. Per connection:

1. If the access token has expired, refresh it. A refused refresh
   deactivates the connection (the user must reconnect); a network failure
   only counts as failed.
2. Register the watch. Success (historyId present) stores the history id.
   Any other answer counts as failed and leaves the connection active.

One connection's failure never stops the run.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

import httpx

from invoicely.config import GmailWatchConfig
from invoicely.gmail.oauth import GoogleOAuthClient, OAuthRefreshError
from invoicely.models.gmail import GmailConnection, RenewalResult
from invoicely.observability.metrics import (
    set_gmail_active_connections,
    track_gmail_watch_renewal,
    track_provider_call,
)
from invoicely.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    FAILED = "failed"
    DEACTIVATED = "deactivated"


class GmailWatchRenewer:
    """Re-registers Gmail watches for all active connections."""

    def __init__(
        self,
        db: BillingDatabase,
        oauth_client: GoogleOAuthClient,
        config: GmailWatchConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            db: Billing database (holds gmail_connections)
            oauth_client: Google token refresher
            config: Topic, label filter and watch endpoint
            transport: Optional httpx transport for the watch call
            clock: Returns the current time (tests pin it)
        """
        self.db = db
        self.oauth_client = oauth_client
        self.config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._client = httpx.AsyncClient(
            timeout=config.request_timeout_seconds, transport=transport
        )

    async def renew_all(self) -> RenewalResult:
        """
        Renew the watch of every active connection.

        Returns:
            RenewalResult: renewed / failed counts (deactivated ones count as failed)

        Raises:
            sqlite3.Error: Connections could not be listed
        """
        connections = await self.db.list_active_gmail_connections()
        set_gmail_active_connections(len(connections))
        logger.info("Renewing Gmail watches", extra={"connections": len(connections)})

        result = RenewalResult()
        for connection in connections:
            try:
                outcome = await self.renew_connection(connection)
            except Exception:
                # Isolation: a broken connection must not stop the rest of the run.
                logger.exception(
                    "Unexpected error renewing Gmail watch",
                    extra={"connection_id": connection.id},
                )
                outcome = RenewalOutcome.FAILED

            track_gmail_watch_renewal(outcome.value)
            if outcome == RenewalOutcome.RENEWED:
                result.renewed += 1
            else:
                result.failed += 1

        logger.info(
            "Gmail watch renewal finished",
            extra={"renewed": result.renewed, "failed": result.failed},
        )
        return result

    async def renew_connection(self, connection: GmailConnection) -> RenewalOutcome:
        """Refresh the token if needed, then register the watch."""
        access_token = connection.access_token

        if connection.token_expired(self._clock(), self.config.token_expiry_margin_seconds):
            try:
                refreshed = await self.oauth_client.refresh_access_token(connection.refresh_token)
            except OAuthRefreshError as e:
                logger.warning(
                    "Token refresh refused, deactivating Gmail connection",
                    extra={"connection_id": connection.id, "error": e.error},
                )
                await self.db.deactivate_gmail_connection(
                    connection.id, reason=f"token_refresh_failed:{e.error}"
                )
                return RenewalOutcome.DEACTIVATED
            except httpx.HTTPError as e:
                logger.warning(
                    "Token refresh unreachable, will retry next run",
                    extra={"connection_id": connection.id, "error": str(e)},
                )
                return RenewalOutcome.FAILED

            access_token = refreshed.access_token
            expires_at = self._clock() + timedelta(seconds=refreshed.expires_in)
            await self.db.update_gmail_access_token(connection.id, access_token, expires_at)

        history_id = await self._register_watch(connection.id, access_token)
        if history_id is None:
            return RenewalOutcome.FAILED

        await self.db.update_gmail_history_id(connection.id, history_id)
        logger.info(
            "Gmail watch renewed",
            extra={"connection_id": connection.id, "history_id": history_id},
        )
        return RenewalOutcome.RENEWED

    async def _register_watch(self, connection_id: str, access_token: str) -> str | None:
        """Call users.watch; return the historyId, or None on any failure."""
        start = time.perf_counter()
        try:
            response = await self._client.post(
                self.config.watch_url,
                headers={"Authorization": f"Bearer {access_token}"},
                json={"topicName": self.config.topic_name, "labelIds": self.config.label_ids},
            )
        except httpx.HTTPError as e:
            track_provider_call("google", "watch", time.perf_counter() - start, success=False)
            logger.warning(
                "Gmail watch request failed",
                extra={"connection_id": connection_id, "error": str(e)},
            )
            return None

        duration = time.perf_counter() - start
        try:
            data = response.json()
        except ValueError:
            data = {}

        history_id = data.get("historyId") if isinstance(data, dict) else None
        if not response.is_success or not history_id:
            track_provider_call("google", "watch", duration, success=False)
            logger.warning(
                "Gmail watch registration rejected",
                extra={
                    "connection_id": connection_id,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            return None

        track_provider_call("google", "watch", duration, success=True)
        return str(history_id)

    async def aclose(self) -> None:
        await self._client.aclose()
