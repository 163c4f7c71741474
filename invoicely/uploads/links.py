"""
Password-protected upload links.

Owners create links (random 8-character code + password) and share the URL
with their suppliers. An anonymous visitor unlocks a link by presenting the
code and password; on success the visitor learns which user the uploads
belong to.

Passwords are stored as bcrypt hashes. Links created before salted hashing
carry a bare SHA-256 hex digest; those still verify and are re-hashed with
bcrypt on the first successful verification.
"""

import hashlib
import hmac
import logging
import re
import secrets
import string

import bcrypt

from invoicely.config import UploadLinkConfig
from invoicely.errors import BadRequestError, InternalError, NotFoundError, UnauthorizedError
from invoicely.models.upload_link import UploadLink, UploadLinkCreated, VerifiedUploadLink
from invoicely.observability.metrics import track_upload_link_verification
from invoicely.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

LINK_CODE_ALPHABET = string.ascii_lowercase + string.digits
BCRYPT_MAX_PASSWORD_BYTES = 72
MAX_CODE_ATTEMPTS = 5

_LEGACY_SHA256_HASH = re.compile(r"^[0-9a-f]{64}$")


def generate_link_code(length: int = 8) -> str:
    """Random code of lowercase letters and digits."""
    return "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(length))


def hash_password(password: str, rounds: int = 12) -> str:
    """bcrypt hash of the password (salted, cost factor = rounds)."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def is_legacy_hash(password_hash: str) -> bool:
    return bool(_LEGACY_SHA256_HASH.match(password_hash))


def verify_password(password: str, password_hash: str) -> bool:
    """
    Check a password against a stored hash (bcrypt or legacy SHA-256 hex).

    Constant-time in both cases.
    """
    password_bytes = password.encode("utf-8")

    if is_legacy_hash(password_hash):
        digest = hashlib.sha256(password_bytes).hexdigest()
        return hmac.compare_digest(digest, password_hash)

    if len(password_bytes) > BCRYPT_MAX_PASSWORD_BYTES:
        return False

    try:
        return bcrypt.checkpw(password_bytes, password_hash.encode("utf-8"))
    except ValueError:
        logger.error("Stored upload link hash is not a valid bcrypt hash")
        return False


class UploadLinkService:
    """Owner management and public verification of upload links."""

    def __init__(self, db: BillingDatabase, config: UploadLinkConfig):
        self.db = db
        self.config = config

    async def create_link(self, user_id: str, password: str, name: str | None = None) -> UploadLink:
        """
        Create a link with a fresh random code.

        Raises:
            BadRequestError: Password too short or longer than bcrypt accepts
            InternalError: No free code found after several attempts
        """
        if len(password) < self.config.min_password_length:
            raise BadRequestError(
                f"Password must be at least {self.config.min_password_length} characters"
            )
        if len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
            raise BadRequestError(
                f"Password must be at most {BCRYPT_MAX_PASSWORD_BYTES} bytes"
            )

        password_hash = hash_password(password, self.config.bcrypt_rounds)
        name = name.strip() if name and name.strip() else None

        for _ in range(MAX_CODE_ATTEMPTS):
            link = await self.db.create_upload_link(
                user_id=user_id,
                link_code=generate_link_code(self.config.link_code_length),
                password_hash=password_hash,
                name=name,
            )
            if link is not None:
                logger.info(
                    "Upload link created",
                    extra={"user_id": user_id, "link_id": link.id},
                )
                return link

        raise InternalError("Could not allocate a unique link code")

    async def list_links(self, user_id: str) -> list[UploadLink]:
        return await self.db.list_upload_links(user_id)

    async def set_link_active(self, user_id: str, link_id: str, is_active: bool) -> UploadLink:
        link = await self.db.set_upload_link_active(link_id, user_id, is_active)
        if link is None:
            raise NotFoundError("Link not found")
        return link

    async def delete_link(self, user_id: str, link_id: str) -> None:
        if not await self.db.delete_upload_link(link_id, user_id):
            raise NotFoundError("Link not found")

    async def verify(self, link_code: str | None, password: str | None) -> VerifiedUploadLink:
        """
        Unlock a link with its password.

        Raises:
            BadRequestError: Code or password missing
            NotFoundError: No active link with this code
            UnauthorizedError: Wrong password
        """
        if not link_code or not password:
            track_upload_link_verification("bad_request")
            raise BadRequestError("Missing link code or password")

        link = await self.db.get_upload_link_by_code(link_code)
        if link is None or not link.is_active:
            track_upload_link_verification("not_found")
            raise NotFoundError("Link not found or inactive")

        if not verify_password(password, link.password_hash):
            track_upload_link_verification("unauthorized")
            logger.warning("Upload link password rejected", extra={"link_id": link.id})
            raise UnauthorizedError("Invalid password")

        if is_legacy_hash(link.password_hash):
            await self.db.update_upload_link_password_hash(
                link.id, hash_password(password, self.config.bcrypt_rounds)
            )
            logger.info("Upgraded legacy upload link hash", extra={"link_id": link.id})

        track_upload_link_verification("success")
        return VerifiedUploadLink(user_id=link.user_id, name=link.name, link_code=link.link_code)

    @staticmethod
    def with_upload_url(link: UploadLink, base_url: str) -> UploadLinkCreated:
        return UploadLinkCreated(link=link, upload_url=f"{base_url.rstrip('/')}/upload/{link.link_code}")
