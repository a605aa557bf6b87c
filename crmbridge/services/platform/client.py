from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from crmbridge.core.config import Settings, get_settings
from crmbridge.core.errors import PlatformConfigError, PlatformError
from crmbridge.services.platform.parsing import (
    DiscoveredSubAccount,
    OAuthTokenGrant,
    listing_page_length,
    parse_sub_account_listing,
    parse_token_response,
)
from crmbridge.services.resilience import RetryPolicy, default_retry_policy, retry_async
from crmbridge.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

USER_TYPE_ACCOUNT = "Company"
USER_TYPE_SUB_ACCOUNT = "Location"


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


class PlatformClient:
    """Thin async client for the platform OAuth and REST endpoints.

    Owns one ``httpx.AsyncClient``; pass ``http_client`` to share a client or to
    inject a mock transport in tests.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=self._settings.ext_call_timeout_ms / 1000.0,
        )
        self._retry_policy = retry_policy or default_retry_policy()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> PlatformClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self._settings.platform_base_url.rstrip('/')}{path}"

    def _bearer_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Version": self._settings.platform_api_version,
        }

    async def _send(self, integration: str, method: str, path: str, **kwargs: Any) -> Any:
        # Send one request with bounded retries for transient failures and map errors.
        url = self._url(path)

        async def _call() -> Any:
            start = time.monotonic()
            try:
                response = await self._http.request(method, url, **kwargs)
            except httpx.HTTPError:
                record_external_call(
                    integration=integration,
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    success=False,
                )
                raise
            latency_ms = (time.monotonic() - start) * 1000.0
            body = _decode_body(response)
            if response.status_code >= 400:
                record_external_call(integration=integration, latency_ms=latency_ms, success=False)
                raise PlatformError(
                    f"{method} {path} failed with status {response.status_code}",
                    status_code=response.status_code,
                    body=body,
                )
            record_external_call(integration=integration, latency_ms=latency_ms, success=True)
            return body

        return await retry_async(_call, policy=self._retry_policy)

    def _client_credentials(self) -> dict[str, str]:
        if not self._settings.platform_client_id or not self._settings.platform_client_secret:
            raise PlatformConfigError("platform_client_id / platform_client_secret are not configured")
        return {
            "client_id": self._settings.platform_client_id,
            "client_secret": self._settings.platform_client_secret,
        }

    async def _token_request(self, form: dict[str, str]) -> OAuthTokenGrant:
        body = await self._send(
            "platform.oauth_token",
            "POST",
            "/oauth/token",
            data=form,
            headers={"Accept": "application/json"},
        )
        try:
            return parse_token_response(body)
        except ValueError as exc:
            raise PlatformError(str(exc), status_code=None, body=body) from exc

    async def exchange_authorization_code(
        self,
        code: str,
        *,
        user_type: str | None = None,
    ) -> OAuthTokenGrant:
        form = {
            **self._client_credentials(),
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.oauth_redirect_uri,
        }
        if user_type:
            form["user_type"] = user_type
        return await self._token_request(form)

    async def refresh_access_token(
        self,
        refresh_token: str,
        *,
        user_type: str | None = None,
    ) -> OAuthTokenGrant:
        form = {
            **self._client_credentials(),
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if user_type:
            form["user_type"] = user_type
        return await self._token_request(form)

    async def mint_sub_account_token(
        self,
        parent_access_token: str,
        *,
        account_id: str,
        sub_account_id: str,
    ) -> OAuthTokenGrant:
        body = await self._send(
            "platform.mint_token",
            "POST",
            "/oauth/locationToken",
            json={"companyId": account_id, "locationId": sub_account_id},
            headers=self._bearer_headers(parent_access_token),
        )
        try:
            return parse_token_response(body)
        except ValueError as exc:
            raise PlatformError(str(exc), status_code=None, body=body) from exc

    async def list_installed_sub_accounts(
        self,
        access_token: str,
        *,
        account_id: str,
    ) -> list[DiscoveredSubAccount]:
        integration_id = self._settings.platform_integration_id
        if not integration_id:
            raise PlatformConfigError("platform_integration_id is not configured")
        body = await self._send(
            "platform.installed_sub_accounts",
            "GET",
            "/oauth/installedLocations",
            params={"companyId": account_id, "appId": integration_id, "isInstalled": "true"},
            headers=self._bearer_headers(access_token),
        )
        return parse_sub_account_listing(body)

    async def list_sub_accounts_page(
        self,
        access_token: str,
        *,
        account_id: str,
        page: int,
        limit: int,
    ) -> tuple[list[DiscoveredSubAccount], int]:
        # Return parsed sub-accounts plus the raw item count used for exhaustion checks.
        body = await self._send(
            "platform.list_sub_accounts",
            "GET",
            f"/companies/{account_id}/locations",
            params={"page": str(page), "limit": str(limit)},
            headers=self._bearer_headers(access_token),
        )
        return parse_sub_account_listing(body), listing_page_length(body)

    async def get_contact(self, access_token: str, contact_id: str) -> dict[str, Any]:
        body = await self._send(
            "platform.get_contact",
            "GET",
            f"/contacts/{contact_id}",
            headers=self._bearer_headers(access_token),
        )
        return body if isinstance(body, dict) else {}
