"""Password-protected upload links."""

from invoicely.uploads.links import UploadLinkService, hash_password, verify_password

__all__ = ["UploadLinkService", "hash_password", "verify_password"]
