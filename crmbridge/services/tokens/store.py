from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import Account, SubAccount
from crmbridge.persistence.db import as_utc, utc_now
from crmbridge.persistence.repos.accounts import upsert_account, upsert_sub_account
from crmbridge.services.platform.parsing import OAuthTokenGrant


TOKEN_SOURCE_OAUTH = "oauth"
TOKEN_SOURCE_MINTED = "minted"


def cached_token_is_fresh(
    access_token: str | None,
    expires_at: datetime | None,
    *,
    skew_s: int,
    now: datetime | None = None,
) -> bool:
    # A token without a known expiry is never trusted from cache.
    expires = as_utc(expires_at)
    if not access_token or expires is None:
        return False
    now = now or utc_now()
    return expires > now + timedelta(seconds=skew_s)


async def store_sub_account_grant(
    session: AsyncSession,
    *,
    sub_account_id: str,
    provider: str,
    grant: OAuthTokenGrant,
    source: str,
    account_id: str | None = None,
    installed: bool | None = None,
    name: str | None = None,
) -> SubAccount:
    """Merge a token grant into the sub-account token cache.

    The refresh token is written only when the grant carries one, so a mint
    response without a refresh token never clears a stored one.
    """
    now = utc_now()
    return await upsert_sub_account(
        session,
        sub_account_id=sub_account_id,
        provider=provider,
        account_id=account_id,
        name=name,
        installed=installed,
        refresh_token=grant.refresh_token,
        access_token=grant.access_token,
        access_token_expires_at=grant.expires_at(now),
        token_scopes=grant.scope or None,
        token_source=source,
    )


async def store_account_grant(
    session: AsyncSession,
    *,
    account_id: str,
    provider: str,
    grant: OAuthTokenGrant,
) -> Account:
    now = utc_now()
    return await upsert_account(
        session,
        account_id=account_id,
        provider=provider,
        scopes=grant.scopes,
        refresh_token=grant.refresh_token,
        access_token=grant.access_token,
        access_token_expires_at=grant.expires_at(now),
    )
