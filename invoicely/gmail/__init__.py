"""Gmail connection maintenance: OAuth token refresh and push watch renewal."""

from invoicely.gmail.oauth import GoogleOAuthClient, OAuthRefreshError
from invoicely.gmail.watch import GmailWatchRenewer, RenewalOutcome

__all__ = [
    "GmailWatchRenewer",
    "GoogleOAuthClient",
    "OAuthRefreshError",
    "RenewalOutcome",
]
