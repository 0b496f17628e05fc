"""OAuth 2.0 client for the CRM's token endpoint.

Handles the wire side of the Authorization Code flow:
1. Generate the consent URL on the customer's portal
2. Exchange the authorization code for access + refresh tokens
3. Refresh tokens when expired
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from ..errors import (
    OAuthError,
    OAuthExchangeError,
    RefreshFailedError,
    RemoteUnavailableError,
    is_transient_status,
)
from .storage import mask_secret

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://oauth.bitrix.info/oauth/token/"
DEFAULT_EXPIRES_IN = 3600


@dataclass
class OAuthTokens:
    """Token grant returned by the provider."""

    access_token: str
    refresh_token: str | None
    expires_in: int  # seconds
    scope: str = ""
    domain: str | None = None
    client_endpoint: str | None = None
    server_endpoint: str | None = None
    member_id: str | None = None
    status: str | None = None


class OAuthClient:
    """OAuth 2.0 client for the CRM app.

    Usage:
        client = OAuthClient(client_id="app.123", client_secret="...")

        # Send the user to the consent page of their portal
        url = client.get_authorization_url("portal.bitrix24.com")

        # Portal redirects back with ?code=xxx&state=xxx&domain=...
        tokens = await client.exchange_code(code)

        # Later, when the access token has expired
        tokens = await client.refresh_tokens(tokens.refresh_token)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or []
        self.token_url = token_url
        self.timeout = timeout

        self._state: str | None = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "OAuthClient":
        return cls(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            redirect_uri=settings.redirect_uri,
            scopes=settings.scope_list,
            token_url=settings.token_url,
            timeout=settings.api_timeout_seconds,
        )

    @staticmethod
    def clean_domain(domain: str) -> str:
        """Reduce user input like ``https://portal.bitrix24.com/crm/`` to ``portal.bitrix24.com``."""
        cleaned = re.sub(r"^https?://", "", domain.strip(), flags=re.IGNORECASE)
        return cleaned.split("/")[0].strip().lower()

    def generate_state(self) -> str:
        """Generate a random state value for CSRF protection."""
        self._state = secrets.token_urlsafe(32)
        return self._state

    def verify_state(self, state: str) -> bool:
        """Verify the state parameter from callback matches."""
        if not self._state or not state:
            return False
        return secrets.compare_digest(self._state, state)

    def get_authorization_url(
        self,
        domain: str,
        state: str | None = None,
        scopes: list[str] | None = None,
    ) -> str:
        """Consent URL on the customer's portal.

        Args:
            domain: Portal domain, with or without scheme
            state: CSRF token (generated if not provided)
            scopes: Override default scopes
        """
        target = self.clean_domain(domain)
        if not target:
            raise ValueError("Portal domain is required for the authorization URL")

        if state:
            self._state = state
        elif not self._state:
            self.generate_state()

        params = {
            "client_id": self.client_id,
            "response_type": "code",
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        params["state"] = self._state

        scope_list = scopes or self.scopes
        if scope_list:
            params["scope"] = ",".join(scope_list)

        return f"https://{target}/oauth/authorize/?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: Provider rejected the code
            RemoteUnavailableError: Token endpoint unreachable, 5xx or 429
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri

        logger.info("Exchanging authorization code at %s (code=%s)", self.token_url, mask_secret(code))
        return await self._token_request(data, OAuthExchangeError, "exchange")

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        """Mint a new access token from a refresh token.

        Raises:
            RefreshFailedError: Provider rejected the refresh token
            RemoteUnavailableError: Token endpoint unreachable, 5xx or 429
        """
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }
        logger.info("Refreshing access token at %s (refresh_token=%s)", self.token_url, mask_secret(refresh_token))
        return await self._token_request(data, RefreshFailedError, "refresh")

    async def _token_request(
        self,
        data: dict[str, str],
        error_cls: type[OAuthError],
        action: str,
    ) -> OAuthTokens:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"Token {action} failed: {e.__class__.__name__}: {e}") from e

        payload = _response_json(response)

        if is_transient_status(response.status_code):
            raise RemoteUnavailableError(
                f"Token {action} failed: {response.status_code}",
                status_code=response.status_code,
            )

        if payload.get("error"):
            description = payload.get("error_description") or payload["error"]
            raise error_cls(
                f"Token {action} failed: {description}",
                error_code=str(payload["error"]),
                details=payload,
            )

        if response.status_code != 200:
            raise error_cls(
                f"Token {action} failed: {response.status_code}",
                error_code=f"{action}_failed",
                details=payload,
            )

        return self._parse_token_response(payload, error_cls)

    def _parse_token_response(self, data: dict[str, Any], error_cls: type[OAuthError]) -> OAuthTokens:
        """Parse a token response.

        Raises:
            OAuthError subclass: If required fields are missing
        """
        try:
            return OAuthTokens(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN),
                scope=data.get("scope") or "",
                domain=data.get("domain"),
                client_endpoint=data.get("client_endpoint"),
                server_endpoint=data.get("server_endpoint"),
                member_id=data.get("member_id"),
                status=data.get("status"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise error_cls(
                f"Invalid token response: {e}",
                error_code="invalid_response",
                details={"response_keys": list(data.keys())},
            ) from e


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"raw_response": response.text[:500]}
    return data if isinstance(data, dict) else {"raw_response": data}
