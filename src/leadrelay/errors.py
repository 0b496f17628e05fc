"""Error taxonomy for leadrelay.

Every failure the token lifecycle can surface is one of the classes below.
Provider error codes are classified in exactly one place,
:func:`classify_provider_error`, using :data:`PROVIDER_ERROR_CODES`.
"""

from __future__ import annotations

from enum import Enum


class LeadRelayError(Exception):
    """Base exception for leadrelay."""


class ConfigurationError(LeadRelayError):
    """Required settings (OAuth app credentials, portal domain) are missing."""


class StorageError(LeadRelayError):
    """Token store I/O, decode or database failure."""


class NoCredentialError(LeadRelayError):
    """Raised when no installation has authorized yet."""

    def __init__(self, message: str | None = None):
        default_msg = (
            "No stored credential found.\n\n"
            "Install the app in the CRM portal or run 'leadrelay auth url <domain>' "
            "to start an authorization-code flow."
        )
        super().__init__(message or default_msg)


class InvalidInstallationPayload(LeadRelayError, ValueError):
    """Install callback payload lacks the fields needed to build a credential."""


class OAuthError(LeadRelayError):
    """Provider rejected an OAuth token-endpoint request."""

    def __init__(self, message: str, error_code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}

    @property
    def error_description(self) -> str | None:
        return self.details.get("error_description")


class OAuthExchangeError(OAuthError):
    """Authorization-code exchange failed. Codes are single-use, so never retried."""


class ReauthorizationRequiredError(LeadRelayError):
    """The stored credential can no longer be made valid without a new install/consent."""


class NoRefreshTokenError(ReauthorizationRequiredError):
    """Credential has no refresh token (simplified auth or a bare install grant)."""


class RefreshFailedError(OAuthError, ReauthorizationRequiredError):
    """Provider rejected the refresh token."""


class RemoteApplicationError(LeadRelayError):
    """CRM call failed for a non-auth, non-transient reason."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        description: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.description = description
        self.status_code = status_code


class RemoteUnavailableError(LeadRelayError):
    """Network failure, 5xx or 429 from the provider."""

    def __init__(self, message: str, status_code: int | None = None, attempts: int = 1):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class ProviderErrorKind(str, Enum):
    TOKEN = "token"
    TRANSIENT = "transient"
    APPLICATION = "application"


PROVIDER_ERROR_CODES: dict[str, ProviderErrorKind] = {
    # Credential rejected; a refresh may fix it.
    "expired_token": ProviderErrorKind.TOKEN,
    "invalid_token": ProviderErrorKind.TOKEN,
    "wrong_auth_type": ProviderErrorKind.TOKEN,
    "no_auth_found": ProviderErrorKind.TOKEN,
    "unauthorized": ProviderErrorKind.TOKEN,
    "authorization_error": ProviderErrorKind.TOKEN,
    # Provider busy or broken.
    "query_limit_exceeded": ProviderErrorKind.TRANSIENT,
    "internal_server_error": ProviderErrorKind.TRANSIENT,
    "error_unexpected_answer": ProviderErrorKind.TRANSIENT,
    # Request itself is wrong, or the portal is gone.
    "portal_deleted": ProviderErrorKind.APPLICATION,
    "error_method_not_found": ProviderErrorKind.APPLICATION,
    "insufficient_scope": ProviderErrorKind.APPLICATION,
    "access_denied": ProviderErrorKind.APPLICATION,
    "invalid_request": ProviderErrorKind.APPLICATION,
    "invalid_grant": ProviderErrorKind.APPLICATION,
    "invalid_client": ProviderErrorKind.APPLICATION,
    "error_core": ProviderErrorKind.APPLICATION,
    "error_argument": ProviderErrorKind.APPLICATION,
    "method_confirm_waiting": ProviderErrorKind.APPLICATION,
    "method_confirm_denied": ProviderErrorKind.APPLICATION,
}


def classify_provider_error(error_code: str | None, status_code: int | None = None) -> ProviderErrorKind:
    """Map a provider error code (and HTTP status) to a :class:`ProviderErrorKind`.

    Known codes win; unknown or missing codes fall back to the HTTP status:
    401 is a token error, 429 and 5xx are transient, anything else is an
    application error.
    """
    if isinstance(error_code, str) and error_code:
        kind = PROVIDER_ERROR_CODES.get(error_code.strip().lower())
        if kind is not None:
            return kind

    if status_code == 401:
        return ProviderErrorKind.TOKEN
    if is_transient_status(status_code):
        return ProviderErrorKind.TRANSIENT
    return ProviderErrorKind.APPLICATION


def is_transient_status(status_code: int | None) -> bool:
    return status_code is not None and (status_code == 429 or status_code >= 500)
