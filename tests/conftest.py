"""Shared test fixtures for the leadrelay test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadrelay.oauth.client import OAuthClient, OAuthTokens
from leadrelay.oauth.storage import AcquisitionMethod, CredentialRecord, FileTokenStorage

# Sample values used across tests
SAMPLE_DOMAIN = "portal.bitrix24.com"
SAMPLE_MEMBER_ID = "member_abc123"
SAMPLE_CLIENT_ID = "local.app123"
SAMPLE_CLIENT_SECRET = "secret_xyz"
START_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def storage(tmp_path, clock):
    """FileTokenStorage in a temporary directory."""
    return FileTokenStorage(tmp_path, clock=clock)


@pytest.fixture
def oauth_client():
    return OAuthClient(
        client_id=SAMPLE_CLIENT_ID,
        client_secret=SAMPLE_CLIENT_SECRET,
        redirect_uri="https://relay.example.com/oauth/callback",
        scopes=["crm"],
    )


@pytest.fixture
def make_record(clock):
    """Factory for credential records issued at the clock's current time."""
    def _make(
        method: AcquisitionMethod = AcquisitionMethod.AUTHORIZATION_CODE,
        access_token: str = "T1",
        refresh_token: str | None = "R1",
        expires_in: int | None = 3600,
        **kwargs: Any,
    ) -> CredentialRecord:
        now = clock()
        values = dict(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            issued_at=now,
            installation_id=SAMPLE_MEMBER_ID,
            domain=SAMPLE_DOMAIN,
            client_endpoint=f"https://{SAMPLE_DOMAIN}/rest/",
            acquisition_method=method,
            created_at=now,
            updated_at=now,
        )
        values.update(kwargs)
        return CredentialRecord(**values)
    return _make


@pytest.fixture
def token_grant():
    """Factory for OAuthTokens as returned by OAuthClient."""
    def _grant(access_token: str = "T2", refresh_token: str | None = "R2", expires_in: int = 3600) -> OAuthTokens:
        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            scope="crm",
            domain=SAMPLE_DOMAIN,
            client_endpoint=f"https://{SAMPLE_DOMAIN}/rest/",
            member_id=SAMPLE_MEMBER_ID,
        )
    return _grant


@pytest.fixture
def mock_response():
    """Factory fixture to create mock HTTP responses."""
    def _create_response(data: Any, status_code: int = 200):
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = data
        response.text = str(data)
        return response
    return _create_response


@pytest.fixture
def patch_token_endpoint(monkeypatch):
    """Patch httpx.AsyncClient used by OAuthClient; returns the mocked post()."""
    def _patch(*responses):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=list(responses))
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        monkeypatch.setattr("httpx.AsyncClient", MagicMock(return_value=mock_client))
        return mock_client.post
    return _patch


# ============================================================================
# CLI Testing Fixtures
# ============================================================================

@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner."""
    from typer.testing import CliRunner
    return CliRunner()
