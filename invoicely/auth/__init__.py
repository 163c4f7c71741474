"""
Authentication and authorization for the billing API.

- End users: bearer tokens validated against the hosted auth backend
- Cron jobs: service-role credential
"""

from invoicely.auth.dependencies import (
    get_current_user,
    get_request_origin,
    require_service_role,
)
from invoicely.auth.supabase import AuthenticatedUser

__all__ = [
    "AuthenticatedUser",
    "get_current_user",
    "get_request_origin",
    "require_service_role",
]
