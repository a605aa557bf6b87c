from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Awaitable, Callable

import httpx

from crmbridge.core.config import Settings, get_settings
from crmbridge.core.errors import (
    InstallExchangeError,
    InvalidStateError,
    PlatformConfigError,
    PlatformError,
)
from crmbridge.persistence.db import SessionFactory
from crmbridge.persistence.repos.accounts import upsert_account, upsert_account_mirror, upsert_sub_account
from crmbridge.services.outcomes import SoftFailure, report_soft_failure
from crmbridge.services.platform.client import (
    USER_TYPE_ACCOUNT,
    USER_TYPE_SUB_ACCOUNT,
    PlatformClient,
)
from crmbridge.services.platform.parsing import DiscoveredSubAccount, OAuthTokenGrant
from crmbridge.services.telemetry import increment_counter
from crmbridge.services.tokens.store import (
    TOKEN_SOURCE_MINTED,
    TOKEN_SOURCE_OAUTH,
    store_account_grant,
    store_sub_account_grant,
)


logger = logging.getLogger(__name__)

_EXCHANGE_ERRORS = (PlatformError, PlatformConfigError, httpx.HTTPError, asyncio.TimeoutError)


class InstallStage(str, Enum):
    RECEIVED = "received"
    EXCHANGED = "exchanged"
    PERSISTED = "persisted"
    DISCOVERED = "discovered"
    MINTED = "minted"
    REDIRECTED = "redirected"


@dataclass(frozen=True)
class OAuthState:
    nonce: str
    return_to: str | None


@dataclass
class InstallOutcome:
    account_id: str | None
    sub_account_id: str | None
    install_target: str
    stage: InstallStage = InstallStage.EXCHANGED
    redirect_url: str | None = None
    discovered: list[str] = field(default_factory=list)
    minted: list[str] = field(default_factory=list)
    failures: list[SoftFailure] = field(default_factory=list)


def encode_oauth_state(nonce: str, return_to: str | None = None) -> str:
    if not return_to:
        return nonce
    encoded = base64.urlsafe_b64encode(return_to.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{nonce}|{encoded}"


def parse_oauth_state(state: str | None) -> OAuthState | None:
    # State format: "<nonce>|<base64url(return_to)>"; the url half is optional.
    if not state:
        return None
    nonce, _, encoded = state.partition("|")
    return_to = None
    if encoded:
        padded = encoded + "=" * (-len(encoded) % 4)
        try:
            return_to = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            return_to = None
    return OAuthState(nonce=nonce, return_to=return_to)


def verify_oauth_state(
    state: str | None,
    cookie_nonce: str | None,
    *,
    require_state: bool,
) -> OAuthState | None:
    parsed = parse_oauth_state(state)
    if parsed is None:
        if require_state:
            raise InvalidStateError("Missing OAuth state")
        return None
    if not cookie_nonce or cookie_nonce != parsed.nonce:
        raise InvalidStateError("OAuth state does not match the browser session")
    return parsed


def normalize_user_type(value: str | None) -> str | None:
    lowered = (value or "").strip().lower()
    if lowered == "location":
        return USER_TYPE_SUB_ACCOUNT
    if lowered == "company":
        return USER_TYPE_ACCOUNT
    return None


def build_redirect_url(
    return_to: str | None,
    *,
    default_url: str,
    account_id: str | None,
    sub_account_id: str | None,
) -> str:
    target = default_url
    if return_to and return_to.startswith(("http://", "https://")):
        target = return_to
    params = {"installed": "1"}
    if account_id:
        params["accountId"] = account_id
    if sub_account_id:
        params["subAccountId"] = sub_account_id
    return str(httpx.URL(target).copy_merge_params(params))


class InstallHandler:
    """Turn an OAuth callback into persisted credentials and a UI redirect.

    Only the code exchange is fatal. Persistence, discovery and per-sub-account
    minting are best-effort: their failures are recorded on the outcome and the
    user is still redirected.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        platform_client: PlatformClient,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._client = platform_client
        self._settings = settings or get_settings()
        self._sleep = sleep

    async def handle_callback(
        self,
        code: str,
        *,
        state: OAuthState | None = None,
        user_type: str | None = None,
    ) -> InstallOutcome:
        token_user_type = normalize_user_type(user_type)
        logger.info("install_received user_type=%s has_state=%s", token_user_type, state is not None)
        try:
            grant = await self._client.exchange_authorization_code(code, user_type=token_user_type)
        except _EXCHANGE_ERRORS as exc:
            increment_counter("install_exchange_failures_total")
            logger.warning("install_exchange_failed error=%s", exc)
            raise InstallExchangeError(str(exc)) from exc

        install_target = USER_TYPE_SUB_ACCOUNT if grant.sub_account_id else USER_TYPE_ACCOUNT
        outcome = InstallOutcome(
            account_id=grant.account_id,
            sub_account_id=grant.sub_account_id,
            install_target=install_target,
        )

        if await self._persist(grant, outcome):
            outcome.stage = InstallStage.PERSISTED

        if grant.account_id and install_target == USER_TYPE_ACCOUNT:
            discovered = await self._discover(grant, outcome)
            outcome.discovered = [item.id for item in discovered]
            outcome.stage = InstallStage.DISCOVERED
            await self._store_discovered(grant.account_id, discovered, outcome)
            for item in discovered:
                if await self._mint(grant, item.id, outcome):
                    outcome.minted.append(item.id)
            outcome.stage = InstallStage.MINTED

        outcome.redirect_url = build_redirect_url(
            state.return_to if state else None,
            default_url=f"{self._settings.app_base_url.rstrip('/')}/app",
            account_id=grant.account_id,
            sub_account_id=grant.sub_account_id,
        )
        outcome.stage = InstallStage.REDIRECTED
        increment_counter("installs_total")
        logger.info(
            "install_completed target=%s account_id=%s sub_account_id=%s discovered=%s minted=%s failures=%s",
            install_target,
            grant.account_id,
            grant.sub_account_id,
            len(outcome.discovered),
            len(outcome.minted),
            len(outcome.failures),
        )
        return outcome

    async def _persist(self, grant: OAuthTokenGrant, outcome: InstallOutcome) -> bool:
        provider = self._settings.platform_provider_name
        try:
            async with self._session_factory() as session:
                if grant.account_id:
                    if outcome.install_target == USER_TYPE_ACCOUNT:
                        await store_account_grant(
                            session,
                            account_id=grant.account_id,
                            provider=provider,
                            grant=grant,
                        )
                    else:
                        # A sub-account grant cannot refresh as the parent; record the tenant only.
                        await upsert_account(
                            session,
                            account_id=grant.account_id,
                            provider=provider,
                            scopes=grant.scopes,
                        )
                if grant.sub_account_id:
                    await store_sub_account_grant(
                        session,
                        sub_account_id=grant.sub_account_id,
                        provider=provider,
                        grant=grant,
                        source=TOKEN_SOURCE_OAUTH,
                        account_id=grant.account_id,
                        installed=True,
                    )
                    if grant.account_id:
                        await upsert_account_mirror(
                            session,
                            account_id=grant.account_id,
                            sub_account_id=grant.sub_account_id,
                        )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - best-effort stage, reported on the outcome
            outcome.failures.append(
                report_soft_failure(
                    "install_persist",
                    exc,
                    account_id=grant.account_id,
                    sub_account_id=grant.sub_account_id,
                )
            )
            return False
        return True

    async def _discover(self, grant: OAuthTokenGrant, outcome: InstallOutcome) -> list[DiscoveredSubAccount]:
        account_id = grant.account_id or ""
        attempts = max(1, int(self._settings.install_discovery_attempts))
        delay_s = self._settings.install_discovery_retry_delay_ms / 1000.0
        if self._settings.platform_integration_id:
            for attempt in range(1, attempts + 1):
                try:
                    found = await self._client.list_installed_sub_accounts(
                        grant.access_token,
                        account_id=account_id,
                    )
                except Exception as exc:  # noqa: BLE001 - fall through to retry or listing fallback
                    logger.warning(
                        "install_discovery_failed account_id=%s attempt=%s error=%s",
                        account_id,
                        attempt,
                        exc,
                    )
                else:
                    logger.info(
                        "install_discovery account_id=%s attempt=%s count=%s",
                        account_id,
                        attempt,
                        len(found),
                    )
                    if found:
                        return found
                # The installed index lags right after install; retry on empty or error.
                if attempt < attempts:
                    await self._sleep(delay_s)
        return await self._discover_by_listing(grant, outcome)

    async def _discover_by_listing(
        self,
        grant: OAuthTokenGrant,
        outcome: InstallOutcome,
    ) -> list[DiscoveredSubAccount]:
        account_id = grant.account_id or ""
        limit = max(1, int(self._settings.install_listing_page_size))
        found: list[DiscoveredSubAccount] = []
        seen: set[str] = set()
        for page in range(1, int(self._settings.install_listing_max_pages) + 1):
            try:
                items, raw_length = await self._client.list_sub_accounts_page(
                    grant.access_token,
                    account_id=account_id,
                    page=page,
                    limit=limit,
                )
            except Exception as exc:  # noqa: BLE001 - keep what earlier pages produced
                outcome.failures.append(
                    report_soft_failure("install_discovery", exc, account_id=account_id, page=page)
                )
                break
            for item in items:
                if item.id not in seen:
                    seen.add(item.id)
                    found.append(item)
            if raw_length < limit:
                break
        logger.info("install_discovery_listing account_id=%s count=%s", account_id, len(found))
        return found

    async def _store_discovered(
        self,
        account_id: str,
        discovered: list[DiscoveredSubAccount],
        outcome: InstallOutcome,
    ) -> None:
        if not discovered:
            return
        provider = self._settings.platform_provider_name
        try:
            async with self._session_factory() as session:
                for item in discovered:
                    await upsert_sub_account(
                        session,
                        sub_account_id=item.id,
                        provider=provider,
                        account_id=account_id,
                        name=item.name,
                        installed=item.installed,
                    )
                    await upsert_account_mirror(
                        session,
                        account_id=account_id,
                        sub_account_id=item.id,
                        name=item.name,
                    )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - best-effort stage, reported on the outcome
            outcome.failures.append(
                report_soft_failure("install_discovery_persist", exc, account_id=account_id)
            )

    async def _mint(self, grant: OAuthTokenGrant, sub_account_id: str, outcome: InstallOutcome) -> bool:
        # Each sub-account is independent; one failure never stops the loop.
        account_id = grant.account_id or ""
        try:
            minted = await self._client.mint_sub_account_token(
                grant.access_token,
                account_id=account_id,
                sub_account_id=sub_account_id,
            )
            async with self._session_factory() as session:
                await store_sub_account_grant(
                    session,
                    sub_account_id=sub_account_id,
                    provider=self._settings.platform_provider_name,
                    grant=minted,
                    source=TOKEN_SOURCE_MINTED,
                    account_id=account_id,
                    installed=True if minted.refresh_token else None,
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - best-effort stage, reported on the outcome
            outcome.failures.append(
                report_soft_failure(
                    "install_mint",
                    exc,
                    account_id=account_id,
                    sub_account_id=sub_account_id,
                )
            )
            return False
        if not minted.refresh_token:
            # The access token stays cached but the sub-account is not installed.
            outcome.failures.append(
                report_soft_failure(
                    "install_mint_refresh_missing",
                    "mint response carried no refresh token",
                    account_id=account_id,
                    sub_account_id=sub_account_id,
                )
            )
            return False
        return True
