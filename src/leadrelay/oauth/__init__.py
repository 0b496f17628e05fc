"""OAuth module: token endpoint client and credential stores.

Usage:
    from leadrelay.oauth import OAuthClient, FileTokenStorage

    client = OAuthClient(client_id="app.123", client_secret="...")
    url = client.get_authorization_url("portal.bitrix24.com")

    # User grants access; the portal redirects with ?code=...
    tokens = await client.exchange_code(code)
"""

from .client import OAuthClient, OAuthTokens
from .sql_storage import SQLTokenStorage
from .storage import (
    AcquisitionMethod,
    CredentialRecord,
    FileTokenStorage,
    TokenStore,
    mask_secret,
    utc_now,
)

__all__ = [
    "OAuthClient",
    "OAuthTokens",
    "AcquisitionMethod",
    "CredentialRecord",
    "TokenStore",
    "FileTokenStorage",
    "SQLTokenStorage",
    "mask_secret",
    "utc_now",
]
