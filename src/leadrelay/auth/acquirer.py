"""Credential acquisition: the three ways an installation gets authorized.

(a) simplified install POST carrying a non-expiring ``AUTH_ID``
(b) ``ONAPPINSTALL`` event carrying a full OAuth grant
(c) authorization-code exchange against the token endpoint

Each path builds a :class:`CredentialRecord` and saves it, superseding any
previous credential.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..errors import InvalidInstallationPayload, OAuthExchangeError
from ..oauth.client import DEFAULT_EXPIRES_IN, OAuthClient
from ..oauth.storage import (
    AcquisitionMethod,
    Clock,
    CredentialRecord,
    TokenStore,
    mask_secret,
    utc_now,
)

logger = logging.getLogger(__name__)

INSTALL_EVENT = "ONAPPINSTALL"


class CredentialAcquirer:
    """Turns provider install callbacks and consent codes into stored credentials.

    Usage:
        acquirer = CredentialAcquirer(storage, oauth_client)

        # Install handler (form POST from the portal)
        record = acquirer.from_install_request(request_form)

        # OAuth callback handler
        record = await acquirer.exchange_code(code, domain, state=state)
    """

    def __init__(self, storage: TokenStore, oauth_client: OAuthClient, clock: Clock = utc_now):
        self.storage = storage
        self.oauth_client = oauth_client
        self._clock = clock

    def authorization_url(self, domain: str, state: str | None = None) -> str:
        return self.oauth_client.get_authorization_url(domain, state=state)

    def from_simplified(
        self,
        access_token: str,
        installation_id: str,
        domain: str | None = None,
        status: str | None = None,
    ) -> CredentialRecord:
        """Store a provider-issued simplified token verbatim. It never expires."""
        if not access_token:
            raise InvalidInstallationPayload("Simplified install is missing AUTH_ID")
        if not installation_id:
            raise InvalidInstallationPayload("Simplified install is missing the installation id")

        now = self._clock()
        record = CredentialRecord(
            access_token=access_token,
            refresh_token=None,
            expires_in=None,
            issued_at=now,
            installation_id=installation_id,
            domain=OAuthClient.clean_domain(domain) if domain else None,
            status=status,
            acquisition_method=AcquisitionMethod.SIMPLIFIED,
            created_at=now,
            updated_at=now,
        )
        return self._store(record)

    def from_installation_event(self, auth: Mapping[str, Any]) -> CredentialRecord:
        """Store the grant delivered inline by an ``ONAPPINSTALL`` callback."""
        access_token = auth.get("access_token")
        if not access_token:
            raise InvalidInstallationPayload("Install event auth block has no access_token")

        domain = auth.get("domain")
        installation_id = auth.get("member_id") or domain
        if not installation_id:
            raise InvalidInstallationPayload("Install event auth block has neither member_id nor domain")

        now = self._clock()
        record = CredentialRecord(
            access_token=access_token,
            refresh_token=auth.get("refresh_token") or None,
            expires_in=_int_or_default(auth.get("expires_in")),
            issued_at=now,
            scope=auth.get("scope") or "",
            domain=OAuthClient.clean_domain(domain) if domain else None,
            client_endpoint=auth.get("client_endpoint"),
            server_endpoint=auth.get("server_endpoint"),
            installation_id=str(installation_id),
            status=auth.get("status"),
            application_token=auth.get("application_token"),
            acquisition_method=AcquisitionMethod.INSTALLATION_EVENT,
            created_at=now,
            updated_at=now,
        )
        return self._store(record)

    def from_install_request(self, form: Mapping[str, Any]) -> CredentialRecord:
        """Dispatch a raw install POST to the matching acquisition path."""
        if form.get("event") == INSTALL_EVENT and isinstance(form.get("auth"), Mapping):
            return self.from_installation_event(form["auth"])

        if form.get("AUTH_ID"):
            domain = form.get("DOMAIN") or form.get("domain")
            return self.from_simplified(
                access_token=form["AUTH_ID"],
                installation_id=form.get("member_id") or domain or "",
                domain=domain,
                status=form.get("status"),
            )

        raise InvalidInstallationPayload(
            f"Unrecognized install payload (keys: {sorted(form.keys())})"
        )

    async def exchange_code(
        self,
        code: str,
        domain: str,
        state: str | None = None,
        verify_state: bool = False,
    ) -> CredentialRecord:
        """Complete the authorization-code flow and store the result.

        Raises:
            OAuthExchangeError: State mismatch or provider rejected the code.
                Not retried: codes are single-use and short-lived.
        """
        if verify_state and not self.oauth_client.verify_state(state or ""):
            raise OAuthExchangeError("State mismatch - possible CSRF attack", error_code="state_mismatch")

        portal = OAuthClient.clean_domain(domain)
        try:
            tokens = await self.oauth_client.exchange_code(code)
        except OAuthExchangeError as e:
            logger.error(
                "Authorization-code exchange rejected for %s: %s (%s)",
                portal,
                e.error_code,
                e.error_description,
            )
            raise

        now = self._clock()
        token_domain = OAuthClient.clean_domain(tokens.domain) if tokens.domain else portal
        record = CredentialRecord(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            issued_at=now,
            scope=tokens.scope,
            domain=token_domain,
            client_endpoint=tokens.client_endpoint or f"https://{token_domain}/rest/",
            server_endpoint=tokens.server_endpoint,
            installation_id=tokens.member_id or token_domain,
            status=tokens.status,
            acquisition_method=AcquisitionMethod.AUTHORIZATION_CODE,
            created_at=now,
            updated_at=now,
        )
        return self._store(record)

    def _store(self, record: CredentialRecord) -> CredentialRecord:
        self.storage.save(record)
        logger.info(
            "Acquired %s credential for installation %s (domain=%s, expires_at=%s, access_token=%s, refresh_token=%s)",
            record.acquisition_method.value,
            record.installation_id,
            record.domain,
            record.expires_at.isoformat() if record.expires_at else "never",
            mask_secret(record.access_token),
            mask_secret(record.refresh_token),
        )
        return record


def _int_or_default(value: Any, default: int = DEFAULT_EXPIRES_IN) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default
