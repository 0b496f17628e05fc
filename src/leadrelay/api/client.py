"""CRM REST client: executes one method call with a managed credential.

Bearer-style credentials (install event, authorization code) are sent as
``POST {endpoint}{method}`` with an ``Authorization: Bearer`` header.
Simplified credentials use the webhook convention ``POST {portal}/rest/{token}/{method}``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import (
    ProviderErrorKind,
    ReauthorizationRequiredError,
    RemoteApplicationError,
    RemoteUnavailableError,
    classify_provider_error,
)
from ..oauth.storage import CredentialRecord

if TYPE_CHECKING:
    from ..auth.manager import TokenManager
    from ..config import Settings
    from .leads import LeadsAPI

logger = logging.getLogger(__name__)

RESULT_KEYS = ("result", "total", "time", "next")
MAX_AUTH_ATTEMPTS = 2


class CRMClient:
    """Authenticated call executor.

    Usage:
        async with CRMClient(manager) as crm:
            user = await crm.call("user.current")
            lead = await crm.call("crm.lead.add", {"fields": {...}})
            lead_id = await crm.leads.add(submission)
    """

    def __init__(
        self,
        manager: "TokenManager",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.manager = manager
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._client = http_client or httpx.AsyncClient(
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=timeout,
        )
        self._leads: LeadsAPI | None = None

    @classmethod
    def from_settings(cls, manager: "TokenManager", settings: "Settings") -> "CRMClient":
        return cls(
            manager,
            timeout=settings.api_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay_seconds,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    @property
    def leads(self) -> "LeadsAPI":
        if self._leads is None:
            from .leads import LeadsAPI

            self._leads = LeadsAPI(self)
        return self._leads

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a CRM REST method and return its ``result``/``total``/``time``/``next``.

        A token error triggers one forced refresh and one retry. Network
        failures, 5xx and 429 are retried ``retry_attempts`` times with a
        ``retry_delay * attempt`` pause.

        Raises:
            NoCredentialError: Nothing has been acquired yet
            ReauthorizationRequiredError: Token rejected again after a refresh,
                or the credential cannot be refreshed
            RemoteApplicationError: CRM refused the call (bad params, scope...)
            RemoteUnavailableError: Retries exhausted
        """
        params = params or {}
        attempt = 0
        auth_attempts = 0
        rejected: CredentialRecord | None = None

        while True:
            attempt += 1
            try:
                if rejected is not None:
                    credential = await self.manager.force_refresh(rejected)
                    rejected = None
                else:
                    credential = await self.manager.get_valid_credential()
                response = await self._send(credential, method, params)
            except RemoteUnavailableError as e:
                if attempt >= self.retry_attempts:
                    logger.error("CRM call %s failed after %d attempts: %s", method, attempt, e)
                    raise RemoteUnavailableError(
                        f"CRM call {method} failed after {attempt} attempts: {e}",
                        status_code=e.status_code,
                        attempts=attempt,
                    ) from e
                logger.warning("CRM call %s attempt %d failed (%s), retrying", method, attempt, e)
                await asyncio.sleep(self.retry_delay * attempt)
                continue

            payload = _response_json(response)
            error = payload.get("error")
            error_code = str(error) if error else None
            if not error_code and response.status_code < 400:
                logger.info(
                    "CRM call %s succeeded (method=%s, total=%s)",
                    method,
                    credential.acquisition_method.value,
                    payload.get("total"),
                )
                return {key: payload[key] for key in RESULT_KEYS if key in payload}

            kind = classify_provider_error(error_code, response.status_code)
            description = payload.get("error_description") or error_code or f"HTTP {response.status_code}"

            if kind is ProviderErrorKind.TOKEN:
                auth_attempts += 1
                if auth_attempts >= MAX_AUTH_ATTEMPTS:
                    logger.error("CRM call %s rejected the refreshed token: %s", method, description)
                    raise ReauthorizationRequiredError(
                        f"CRM rejected the credential after a refresh ({error_code or response.status_code}): {description}"
                    )
                logger.warning("CRM call %s token error (%s), forcing refresh", method, error_code)
                rejected = credential
                attempt -= 1
                continue

            if kind is ProviderErrorKind.TRANSIENT:
                if attempt >= self.retry_attempts:
                    logger.error("CRM call %s unavailable after %d attempts: %s", method, attempt, description)
                    raise RemoteUnavailableError(
                        f"CRM call {method} failed after {attempt} attempts: {description}",
                        status_code=response.status_code,
                        attempts=attempt,
                    )
                logger.warning("CRM call %s attempt %d got %s, retrying", method, attempt, description)
                await asyncio.sleep(self.retry_delay * attempt)
                continue

            if error_code == "ERROR_METHOD_NOT_FOUND" and not credential.acquisition_method.uses_bearer_header:
                description = f"{description} (method not available with simplified auth; install with OAuth for CRM scope)"
            logger.error("CRM call %s failed: %s (%s)", method, error_code, description)
            raise RemoteApplicationError(
                f"CRM API error: {description}",
                error_code=error_code or f"http_{response.status_code}",
                description=payload.get("error_description"),
                status_code=response.status_code,
            )

    def build_request(self, credential: CredentialRecord, method: str) -> tuple[str, dict[str, str]]:
        """URL and auth headers for ``method`` under ``credential``'s calling convention."""
        base = credential.endpoint_base
        if credential.acquisition_method.uses_bearer_header:
            url = f"{base.rstrip('/')}/{method}"
            return url, {"Authorization": f"Bearer {credential.access_token}"}
        return f"{base.rstrip('/')}/{credential.access_token}/{method}", {}

    async def _send(self, credential: CredentialRecord, method: str, params: dict[str, Any]) -> httpx.Response:
        url, headers = self.build_request(credential, method)
        try:
            return await self._client.post(url, json=params, headers=headers, timeout=self.timeout)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{e.__class__.__name__}: {e}") from e


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"result": data}
