"""
Upload link models.

An upload link lets an anonymous sender drop invoices into a user's inbox
after entering a password. The password hash stays inside the storage and
service layers; API responses use UploadLink, which has no hash field.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class UploadLink(BaseModel):
    id: str
    user_id: str
    link_code: str
    name: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UploadLinkRecord(UploadLink):
    """Stored representation, including the password hash."""

    password_hash: str

    def to_public(self) -> UploadLink:
        return UploadLink(**self.model_dump(exclude={"password_hash"}))


class UploadLinkCreate(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    # Minimum length is enforced by the service from configuration.
    password: str = Field(..., min_length=1, max_length=200)


class UploadLinkUpdate(BaseModel):
    is_active: bool


class UploadLinkCreated(BaseModel):
    link: UploadLink
    upload_url: str


class VerifyUploadLinkRequest(BaseModel):
    """Both fields are optional here so a missing one surfaces as 400, not 422."""

    link_code: str | None = None
    password: str | None = None


class VerifiedUploadLink(BaseModel):
    user_id: str
    name: str | None = None
    link_code: str
