"""
Storage layer for billing state, upload links and Gmail connections.

Uses SQLite for bootstrapping (free, embedded).
Migration path to PostgreSQL for production scale.
"""

from invoicely.storage.database import BillingDatabase, get_billing_db

__all__ = ["BillingDatabase", "get_billing_db"]
