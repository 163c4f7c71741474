"""API routers."""

from invoicely.routers.billing import router as billing_router
from invoicely.routers.gmail import router as gmail_router
from invoicely.routers.upload_links import router as upload_links_router
from invoicely.routers.usage import router as usage_router

__all__ = ["billing_router", "gmail_router", "upload_links_router", "usage_router"]
