"""Authentication module: credential acquisition and lifecycle.

Usage:
    from leadrelay.auth import CredentialAcquirer, TokenManager

    acquirer = CredentialAcquirer(storage, oauth_client)
    acquirer.from_install_request(form)

    manager = TokenManager(storage, oauth_client)
    record = await manager.get_valid_credential()
"""

from .acquirer import CredentialAcquirer
from .manager import TokenManager

__all__ = [
    "CredentialAcquirer",
    "TokenManager",
]
