#!/usr/bin/env python3
"""
Gmail watch renewal job.

Gmail push watches expire after seven days; schedule this at least every
few days (or call POST /api/v1/gmail/watch/renew with the service-role
credential instead).

Usage:
  python scripts/renew_gmail_watches.py

Exit codes:
  0  every active connection renewed
  2  at least one connection failed or was deactivated
  1  connections could not be listed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add repo root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


logger = logging.getLogger(__name__)


async def run_job() -> int:
    from invoicely.config import get_settings
    from invoicely.gmail.oauth import close_google_oauth_client, get_google_oauth_client
    from invoicely.gmail.watch import GmailWatchRenewer
    from invoicely.observability.logging import OperationContext
    from invoicely.storage.database import close_billing_db, get_billing_db

    settings = get_settings()
    db = await get_billing_db()
    renewer = GmailWatchRenewer(
        db=db,
        oauth_client=get_google_oauth_client(),
        config=settings.gmail_watch,
    )

    try:
        with OperationContext("gmail_watch_renewal") as op:
            result = await renewer.renew_all()
            op.record(renewed=result.renewed, failed=result.failed)
    except Exception as e:
        logger.error(f"Gmail watch renewal aborted: {e}", exc_info=True)
        return 1
    finally:
        await renewer.aclose()
        await close_google_oauth_client()
        close_billing_db()

    return 0 if result.failed == 0 else 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Renew Gmail push watches for active connections")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    from invoicely.config import get_settings
    from invoicely.observability.logging import configure_logging

    log_settings = get_settings().logging
    configure_logging(
        log_level="DEBUG" if args.verbose else log_settings.level,
        json_output=log_settings.json_output,
        colorized=log_settings.colorized,
        service_name=f"{log_settings.service_name}-cron",
        service_version=log_settings.service_version,
        environment=log_settings.environment,
    )

    raise SystemExit(asyncio.run(run_job()))


if __name__ == "__main__":
    main()
