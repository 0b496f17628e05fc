"""Explicit construction of the token store, lifecycle manager and executor."""

from __future__ import annotations

from dataclasses import dataclass

from .api.client import CRMClient
from .auth.acquirer import CredentialAcquirer
from .auth.manager import TokenManager
from .config import Settings
from .oauth.client import OAuthClient
from .oauth.sql_storage import SQLTokenStorage
from .oauth.storage import Clock, FileTokenStorage, TokenStore, utc_now


@dataclass
class Services:
    """Everything an outer layer (routes, webhook handler, CLI) needs."""

    settings: Settings
    storage: TokenStore
    oauth_client: OAuthClient
    acquirer: CredentialAcquirer
    manager: TokenManager
    crm: CRMClient

    async def aclose(self) -> None:
        await self.crm.close()
        if isinstance(self.storage, SQLTokenStorage):
            self.storage.close()


def build_storage(settings: Settings, clock: Clock = utc_now) -> TokenStore:
    if settings.uses_sql_storage:
        return SQLTokenStorage(settings.storage_url, clock=clock)
    return FileTokenStorage(settings.storage_dir, clock=clock)


def build_services(settings: Settings | None = None, clock: Clock = utc_now) -> Services:
    """Store first, then the manager that depends on it, then the executor."""
    settings = settings or Settings()
    storage = build_storage(settings, clock=clock)
    oauth_client = OAuthClient.from_settings(settings)
    manager = TokenManager(storage, oauth_client, clock=clock)
    return Services(
        settings=settings,
        storage=storage,
        oauth_client=oauth_client,
        acquirer=CredentialAcquirer(storage, oauth_client, clock=clock),
        manager=manager,
        crm=CRMClient.from_settings(manager, settings),
    )
