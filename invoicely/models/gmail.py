"""Gmail connection models."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class GmailConnection(BaseModel):
    """OAuth credentials for one connected mailbox."""

    id: str
    user_id: str
    email: str
    access_token: str = Field(repr=False)
    refresh_token: str = Field(repr=False)
    token_expires_at: datetime
    last_history_id: str | None = None
    last_sync_at: datetime | None = None
    is_active: bool = True

    def token_expired(self, now: datetime | None = None, margin_seconds: int = 0) -> bool:
        now = now or datetime.now(UTC)
        return self.token_expires_at.timestamp() - margin_seconds <= now.timestamp()


class RenewalResult(BaseModel):
    """Aggregate outcome of one watch renewal run."""

    renewed: int = 0
    failed: int = 0
