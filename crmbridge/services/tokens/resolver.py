from __future__ import annotations

import asyncio
import logging

import httpx

from crmbridge.core.config import Settings, get_settings
from crmbridge.core.errors import PlatformConfigError, PlatformError, TokenUnavailableError
from crmbridge.persistence.db import SessionFactory
from crmbridge.persistence.repos.accounts import get_account, get_sub_account
from crmbridge.services.platform.client import (
    USER_TYPE_ACCOUNT,
    USER_TYPE_SUB_ACCOUNT,
    PlatformClient,
)
from crmbridge.services.telemetry import increment_counter
from crmbridge.services.tokens.store import (
    TOKEN_SOURCE_MINTED,
    TOKEN_SOURCE_OAUTH,
    cached_token_is_fresh,
    store_account_grant,
    store_sub_account_grant,
)


logger = logging.getLogger(__name__)

# Failures of one step in the fallback chain; anything else is a bug and propagates.
_STEP_ERRORS = (PlatformError, PlatformConfigError, httpx.HTTPError, asyncio.TimeoutError)


class TokenResolver:
    """Return a currently-valid access token for a sub-account.

    Order: cached token (outside the expiry skew), direct refresh, then mint
    from the owning account's token. Every successful exchange is committed
    before the token is handed out so a rotated refresh token is never lost.
    The resolver holds no per-call state and can be shared across tasks.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        platform_client: PlatformClient,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = platform_client
        self._settings = settings or get_settings()

    @property
    def platform_client(self) -> PlatformClient:
        return self._client

    async def resolve(self, sub_account_id: str) -> str:
        skew_s = self._settings.token_expiry_skew_s
        async with self._session_factory() as session:
            sub_account = await get_sub_account(session, sub_account_id)
            if sub_account is None:
                increment_counter("token_unavailable_total")
                raise TokenUnavailableError(sub_account_id, "unknown sub-account")
            if cached_token_is_fresh(
                sub_account.access_token,
                sub_account.access_token_expires_at,
                skew_s=skew_s,
            ):
                increment_counter("token_cache_hits_total")
                return sub_account.access_token  # type: ignore[return-value]
            refresh_token = sub_account.refresh_token
            account_id = sub_account.account_id
            provider = sub_account.provider

        reasons: list[str] = []
        if refresh_token:
            try:
                grant = await self._client.refresh_access_token(
                    refresh_token,
                    user_type=USER_TYPE_SUB_ACCOUNT,
                )
            except _STEP_ERRORS as exc:
                reasons.append(f"refresh failed: {exc}")
                logger.warning(
                    "token_refresh_failed sub_account_id=%s error=%s",
                    sub_account_id,
                    exc,
                )
            else:
                async with self._session_factory() as session:
                    await store_sub_account_grant(
                        session,
                        sub_account_id=sub_account_id,
                        provider=provider,
                        grant=grant,
                        source=TOKEN_SOURCE_OAUTH,
                    )
                    await session.commit()
                increment_counter("token_refresh_total")
                logger.info("token_refreshed sub_account_id=%s", sub_account_id)
                return grant.access_token
        else:
            reasons.append("no refresh token")

        if not account_id:
            reasons.append("no owning account")
        else:
            try:
                minted = await self._mint(sub_account_id, account_id, provider)
            except TokenUnavailableError as exc:
                reasons.append(f"parent token unavailable: {exc.reason}")
            except _STEP_ERRORS as exc:
                reasons.append(f"mint failed: {exc}")
                logger.warning(
                    "token_mint_failed sub_account_id=%s account_id=%s error=%s",
                    sub_account_id,
                    account_id,
                    exc,
                )
            else:
                return minted

        increment_counter("token_unavailable_total")
        logger.warning(
            "token_unavailable sub_account_id=%s reasons=%s",
            sub_account_id,
            reasons,
        )
        raise TokenUnavailableError(sub_account_id, "; ".join(reasons))

    async def _mint(self, sub_account_id: str, account_id: str, provider: str) -> str:
        parent_token = await self.resolve_account(account_id)
        grant = await self._client.mint_sub_account_token(
            parent_token,
            account_id=account_id,
            sub_account_id=sub_account_id,
        )
        async with self._session_factory() as session:
            await store_sub_account_grant(
                session,
                sub_account_id=sub_account_id,
                provider=provider,
                grant=grant,
                source=TOKEN_SOURCE_MINTED,
                account_id=account_id,
            )
            await session.commit()
        increment_counter("token_mint_total")
        logger.info("token_minted sub_account_id=%s account_id=%s", sub_account_id, account_id)
        return grant.access_token

    async def resolve_account(self, account_id: str) -> str:
        """Return a parent-scoped access token from cache or by refresh."""
        async with self._session_factory() as session:
            account = await get_account(session, account_id)
            if account is None:
                raise TokenUnavailableError(account_id, "unknown account")
            if cached_token_is_fresh(
                account.access_token,
                account.access_token_expires_at,
                skew_s=self._settings.token_expiry_skew_s,
            ):
                return account.access_token  # type: ignore[return-value]
            refresh_token = account.refresh_token
            provider = account.provider
        if not refresh_token:
            raise TokenUnavailableError(account_id, "account has no refresh token")
        try:
            grant = await self._client.refresh_access_token(refresh_token, user_type=USER_TYPE_ACCOUNT)
        except _STEP_ERRORS as exc:
            logger.warning("account_token_refresh_failed account_id=%s error=%s", account_id, exc)
            raise TokenUnavailableError(account_id, f"account refresh failed: {exc}") from exc
        async with self._session_factory() as session:
            await store_account_grant(session, account_id=account_id, provider=provider, grant=grant)
            await session.commit()
        logger.info("account_token_refreshed account_id=%s", account_id)
        return grant.access_token
