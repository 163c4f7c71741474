"""
Gmail maintenance endpoints, called by the scheduler with the service-role
credential.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends

from invoicely.auth.dependencies import require_service_role
from invoicely.config import Settings, get_settings
from invoicely.gmail.oauth import GoogleOAuthClient, get_google_oauth_client
from invoicely.gmail.watch import GmailWatchRenewer
from invoicely.storage.database import BillingDatabase, get_billing_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/gmail", tags=["Gmail"])


async def get_gmail_watch_renewer(
    db: BillingDatabase = Depends(get_billing_db),
    oauth_client: GoogleOAuthClient = Depends(get_google_oauth_client),
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[GmailWatchRenewer]:
    renewer = GmailWatchRenewer(db=db, oauth_client=oauth_client, config=settings.gmail_watch)
    try:
        yield renewer
    finally:
        await renewer.aclose()


@router.post("/watch/renew", dependencies=[Depends(require_service_role)])
async def renew_gmail_watches(
    renewer: GmailWatchRenewer = Depends(get_gmail_watch_renewer),
) -> dict[str, Any]:
    """
    Re-register the Gmail watch of every active connection.

    Individual failures are counted, not raised; only a failure to list
    connections yields a 500.
    """
    result = await renewer.renew_all()
    return {"ok": True, "renewed": result.renewed, "failed": result.failed}
