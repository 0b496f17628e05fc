"""Tests for OAuth client."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from leadrelay.errors import (
    OAuthExchangeError,
    ReauthorizationRequiredError,
    RefreshFailedError,
    RemoteUnavailableError,
)
from leadrelay.oauth.client import DEFAULT_EXPIRES_IN, DEFAULT_TOKEN_URL, OAuthClient

from tests.conftest import SAMPLE_CLIENT_ID, SAMPLE_CLIENT_SECRET, SAMPLE_DOMAIN, SAMPLE_MEMBER_ID


def _grant_payload(**overrides):
    payload = {
        "access_token": "access123",
        "refresh_token": "refresh456",
        "expires_in": 3600,
        "scope": "crm",
        "domain": SAMPLE_DOMAIN,
        "client_endpoint": f"https://{SAMPLE_DOMAIN}/rest/",
        "server_endpoint": "https://oauth.bitrix.info/rest/",
        "member_id": SAMPLE_MEMBER_ID,
        "status": "L",
    }
    payload.update(overrides)
    return payload


class TestAuthorizationUrl:
    """Tests for consent URL generation."""

    def test_get_authorization_url(self, oauth_client):
        """Should generate a consent URL on the portal."""
        url = oauth_client.get_authorization_url(SAMPLE_DOMAIN, state="test_state")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.netloc == SAMPLE_DOMAIN
        assert parsed.path == "/oauth/authorize/"
        assert params["client_id"] == [SAMPLE_CLIENT_ID]
        assert params["response_type"] == ["code"]
        assert params["state"] == ["test_state"]
        assert params["redirect_uri"] == ["https://relay.example.com/oauth/callback"]
        assert params["scope"] == ["crm"]

    def test_scopes_are_comma_joined(self, oauth_client):
        url = oauth_client.get_authorization_url(SAMPLE_DOMAIN, state="s", scopes=["crm", "user"])

        assert parse_qs(urlparse(url).query)["scope"] == ["crm,user"]

    def test_domain_with_scheme_and_path(self, oauth_client):
        url = oauth_client.get_authorization_url("https://Portal.Bitrix24.com/crm/lead/", state="s")

        assert urlparse(url).netloc == SAMPLE_DOMAIN

    def test_generates_state_when_missing(self, oauth_client):
        url = oauth_client.get_authorization_url(SAMPLE_DOMAIN)

        state = parse_qs(urlparse(url).query)["state"][0]
        assert len(state) > 20
        assert oauth_client.verify_state(state) is True

    def test_empty_domain(self, oauth_client):
        with pytest.raises(ValueError):
            oauth_client.get_authorization_url("https://")


class TestState:
    def test_verify_state(self, oauth_client):
        state = oauth_client.generate_state()

        assert oauth_client.verify_state(state) is True
        assert oauth_client.verify_state("wrong") is False
        assert oauth_client.verify_state("") is False

    def test_verify_without_generated_state(self, oauth_client):
        assert oauth_client.verify_state("anything") is False


class TestCleanDomain:
    @pytest.mark.parametrize(
        "raw",
        [
            "portal.bitrix24.com",
            "https://portal.bitrix24.com",
            "http://portal.bitrix24.com/",
            "  PORTAL.bitrix24.com/rest/ ",
        ],
    )
    def test_clean_domain(self, raw):
        assert OAuthClient.clean_domain(raw) == SAMPLE_DOMAIN


class TestExchangeCode:
    """Tests for authorization-code exchange."""

    @pytest.mark.asyncio
    async def test_exchange_success(self, oauth_client, mock_response, patch_token_endpoint):
        post = patch_token_endpoint(mock_response(_grant_payload()))

        tokens = await oauth_client.exchange_code("auth_code_123")

        assert tokens.access_token == "access123"
        assert tokens.refresh_token == "refresh456"
        assert tokens.expires_in == 3600
        assert tokens.member_id == SAMPLE_MEMBER_ID
        assert tokens.client_endpoint == f"https://{SAMPLE_DOMAIN}/rest/"

        args, kwargs = post.call_args
        assert args[0] == DEFAULT_TOKEN_URL
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["data"]["code"] == "auth_code_123"
        assert kwargs["data"]["client_id"] == SAMPLE_CLIENT_ID
        assert kwargs["data"]["client_secret"] == SAMPLE_CLIENT_SECRET

    @pytest.mark.asyncio
    async def test_token_request_uses_explicit_timeout(self, mock_response, patch_token_endpoint):
        client = OAuthClient(SAMPLE_CLIENT_ID, SAMPLE_CLIENT_SECRET, timeout=7.5)
        patch_token_endpoint(mock_response(_grant_payload()), mock_response(_grant_payload()))

        await client.exchange_code("code")
        assert httpx.AsyncClient.call_args.kwargs["timeout"] == 7.5

        await client.refresh_tokens("refresh456")
        assert httpx.AsyncClient.call_args.kwargs["timeout"] == 7.5

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults(self, oauth_client, mock_response, patch_token_endpoint):
        payload = _grant_payload()
        del payload["expires_in"]
        patch_token_endpoint(mock_response(payload))

        tokens = await oauth_client.exchange_code("code")

        assert tokens.expires_in == DEFAULT_EXPIRES_IN

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, oauth_client, mock_response, patch_token_endpoint):
        patch_token_endpoint(mock_response(
            {"error": "invalid_grant", "error_description": "Code expired"},
            status_code=400,
        ))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await oauth_client.exchange_code("bad_code")

        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.error_description == "Code expired"

    @pytest.mark.asyncio
    async def test_error_in_200_body(self, oauth_client, mock_response, patch_token_endpoint):
        patch_token_endpoint(mock_response({"error": "invalid_client"}, status_code=200))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await oauth_client.exchange_code("code")

        assert exc_info.value.error_code == "invalid_client"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, oauth_client, mock_response, patch_token_endpoint):
        patch_token_endpoint(mock_response({"refresh_token": "r"}))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await oauth_client.exchange_code("code")

        assert exc_info.value.error_code == "invalid_response"

    @pytest.mark.asyncio
    async def test_non_json_error_response(self, oauth_client, mock_response, patch_token_endpoint):
        response = mock_response(None, status_code=403)
        response.json.side_effect = ValueError("not json")
        response.text = "<html>Forbidden</html>"
        patch_token_endpoint(response)

        with pytest.raises(OAuthExchangeError) as exc_info:
            await oauth_client.exchange_code("code")

        assert exc_info.value.error_code == "exchange_failed"
        assert "Forbidden" in exc_info.value.details["raw_response"]

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, oauth_client, mock_response, patch_token_endpoint):
        patch_token_endpoint(mock_response({"error": "internal"}, status_code=503))

        with pytest.raises(RemoteUnavailableError) as exc_info:
            await oauth_client.exchange_code("code")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_network_failure(self, oauth_client, patch_token_endpoint):
        patch_token_endpoint(httpx.ConnectError("connection refused"))

        with pytest.raises(RemoteUnavailableError):
            await oauth_client.exchange_code("code")


class TestRefreshTokens:
    """Tests for token refresh."""

    @pytest.mark.asyncio
    async def test_refresh_success(self, oauth_client, mock_response, patch_token_endpoint):
        post = patch_token_endpoint(mock_response(_grant_payload(access_token="new_access", refresh_token="new_refresh")))

        tokens = await oauth_client.refresh_tokens("old_refresh")

        assert tokens.access_token == "new_access"
        assert tokens.refresh_token == "new_refresh"
        data = post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "old_refresh"

    @pytest.mark.asyncio
    async def test_refresh_rejected_requires_reauthorization(
        self, oauth_client, mock_response, patch_token_endpoint
    ):
        patch_token_endpoint(mock_response(
            {"error": "invalid_grant", "error_description": "Refresh token expired"},
            status_code=401,
        ))

        with pytest.raises(RefreshFailedError) as exc_info:
            await oauth_client.refresh_tokens("stale")

        assert isinstance(exc_info.value, ReauthorizationRequiredError)
        assert exc_info.value.error_code == "invalid_grant"

    @pytest.mark.asyncio
    async def test_rate_limited(self, oauth_client, mock_response, patch_token_endpoint):
        patch_token_endpoint(mock_response({}, status_code=429))

        with pytest.raises(RemoteUnavailableError):
            await oauth_client.refresh_tokens("r")

    @pytest.mark.asyncio
    async def test_secrets_not_logged(self, oauth_client, mock_response, patch_token_endpoint, caplog):
        patch_token_endpoint(mock_response(_grant_payload()))

        with caplog.at_level("DEBUG"):
            await oauth_client.refresh_tokens("very-secret-refresh")

        assert "very-secret-refresh" not in caplog.text
        assert SAMPLE_CLIENT_SECRET not in caplog.text


class TestFromSettings:
    def test_from_settings(self):
        from leadrelay.config import Settings

        settings = Settings(
            _env_file=None,
            client_id="cid",
            client_secret="secret",
            scopes="crm, user",
            api_timeout_seconds=5,
        )

        client = OAuthClient.from_settings(settings)

        assert client.client_id == "cid"
        assert client.scopes == ["crm", "user"]
        assert client.timeout == 5
        assert client.token_url == DEFAULT_TOKEN_URL
