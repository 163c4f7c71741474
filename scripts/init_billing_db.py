#!/usr/bin/env python3
"""
Database initialization script for billing.

Creates the SQLite schema, seeds the free plan and optionally loads the
paid plan catalog from a JSON file (a list of objects with
external_product_id, name, document_limit, features, price_monthly, ...).

Usage:
    python scripts/init_billing_db.py [--db-path PATH] [--plans FILE]

This script is idempotent - plans are upserted by external_product_id.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from invoicely.models.billing import SubscriptionPlanCreate
from invoicely.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {
    "customers",
    "subscription_plans",
    "subscriptions",
    "document_usage",
    "upload_links",
    "gmail_connections",
    "audit_log",
}


def load_plans(plans_file: str) -> list[SubscriptionPlanCreate]:
    """Read and validate a plan catalog file."""
    with open(plans_file, encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError("Plan file must contain a JSON list")
    return [SubscriptionPlanCreate.model_validate(item) for item in raw]


async def init_database(db_path: str, plans: list[SubscriptionPlanCreate]) -> bool:
    """
    Initialize billing schema and seed plans.

    Returns:
        bool: True if initialization succeeded
    """
    db = BillingDatabase(db_path=db_path)
    try:
        logger.info(f"Initializing billing database at {db_path}")
        await db.initialize()

        conn = db._get_connection()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        missing = EXPECTED_TABLES - tables
        if missing:
            logger.error(f"Missing tables: {missing}")
            return False
        logger.info(f"Found tables: {', '.join(sorted(tables & EXPECTED_TABLES))}")

        for plan in plans:
            stored = await db.upsert_plan(plan)
            limit = "unlimited" if stored.is_unlimited else stored.document_limit
            logger.info(f"  plan {stored.name} ({stored.external_product_id}): {limit} documents/month")

        active = await db.list_active_plans()
        logger.info(f"Active plans: {len(active)}")
        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False
    finally:
        db.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Initialize billing database schema")
    parser.add_argument(
        "--db-path",
        default="./data/invoicely.db",
        help="Path to SQLite database file (default: ./data/invoicely.db)",
    )
    parser.add_argument(
        "--plans",
        help="JSON file with the plan catalog to upsert",
    )
    args = parser.parse_args()

    plans: list[SubscriptionPlanCreate] = []
    if args.plans:
        try:
            plans = load_plans(args.plans)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Could not load plans from {args.plans}: {e}")
            sys.exit(1)

    if not asyncio.run(init_database(args.db_path, plans)):
        logger.error("Database initialization failed")
        sys.exit(1)

    logger.info(f"Database ready: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
