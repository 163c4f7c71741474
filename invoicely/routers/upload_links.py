"""
Upload link endpoints.

Owners manage their links with a bearer token. Verification is public and
rate limited per client address.
"""

import logging

from fastapi import APIRouter, Body, Depends, Request, Response, status

from invoicely.auth.dependencies import get_current_user
from invoicely.auth.supabase import AuthenticatedUser
from invoicely.config import Settings, get_settings
from invoicely.models.upload_link import (
    UploadLink,
    UploadLinkCreate,
    UploadLinkCreated,
    UploadLinkUpdate,
    VerifiedUploadLink,
    VerifyUploadLinkRequest,
)
from invoicely.rate_limits import limiter, verify_upload_link_limit
from invoicely.storage.database import BillingDatabase, get_billing_db
from invoicely.uploads.links import UploadLinkService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/upload-links", tags=["Upload Links"])


async def get_upload_link_service(
    db: BillingDatabase = Depends(get_billing_db),
    settings: Settings = Depends(get_settings),
) -> UploadLinkService:
    return UploadLinkService(db=db, config=settings.upload_links)


@router.post("/verify", response_model=VerifiedUploadLink)
@limiter.limit(verify_upload_link_limit)
async def verify_upload_link(
    request: Request,
    verify_request: VerifyUploadLinkRequest | None = Body(default=None),
    service: UploadLinkService = Depends(get_upload_link_service),
) -> VerifiedUploadLink:
    """
    Unlock an upload link.

    Raises:
        400: Code or password missing
        404: No active link with this code
        401: Wrong password
        429: Too many attempts from this address
    """
    verify_request = verify_request or VerifyUploadLinkRequest()
    return await service.verify(verify_request.link_code, verify_request.password)


@router.get("", response_model=list[UploadLink])
async def list_upload_links(
    user: AuthenticatedUser = Depends(get_current_user),
    service: UploadLinkService = Depends(get_upload_link_service),
) -> list[UploadLink]:
    return await service.list_links(user.id)


@router.post("", response_model=UploadLinkCreated, status_code=status.HTTP_201_CREATED)
async def create_upload_link(
    link_data: UploadLinkCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    service: UploadLinkService = Depends(get_upload_link_service),
    settings: Settings = Depends(get_settings),
) -> UploadLinkCreated:
    """
    Create a link. The password is never returned or stored in plain text.

    Raises:
        400: Password too short or too long
    """
    link = await service.create_link(user.id, link_data.password, link_data.name)
    return UploadLinkService.with_upload_url(link, settings.service.frontend_url)


@router.patch("/{link_id}", response_model=UploadLink)
async def update_upload_link(
    link_id: str,
    update_data: UploadLinkUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    service: UploadLinkService = Depends(get_upload_link_service),
) -> UploadLink:
    """Activate or deactivate one of the caller's links (404 for anyone else's)."""
    return await service.set_link_active(user.id, link_id, update_data.is_active)


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_upload_link(
    link_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: UploadLinkService = Depends(get_upload_link_service),
) -> Response:
    await service.delete_link(user.id, link_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
