from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import Account, AccountSubAccount, SubAccount
from crmbridge.persistence.db import utc_now


def _merge(row: Any, values: dict[str, Any]) -> None:
    # Merge-write: absent (None) values never clear stored fields.
    for key, value in values.items():
        if value is None:
            continue
        setattr(row, key, value)


async def get_account(session: AsyncSession, account_id: str) -> Account | None:
    return await session.get(Account, account_id)


async def get_sub_account(session: AsyncSession, sub_account_id: str) -> SubAccount | None:
    return await session.get(SubAccount, sub_account_id)


async def upsert_account(
    session: AsyncSession,
    *,
    account_id: str,
    provider: str,
    scopes: list[str] | None = None,
    refresh_token: str | None = None,
    access_token: str | None = None,
    access_token_expires_at: datetime | None = None,
) -> Account:
    account = await session.get(Account, account_id)
    if account is None:
        account = Account(id=account_id, provider=provider, installed_at=utc_now())
        session.add(account)
    elif account.installed_at is None:
        account.installed_at = utc_now()
    _merge(
        account,
        {
            "provider": provider,
            "scopes": scopes or None,
            "refresh_token": refresh_token,
            "access_token": access_token,
            "access_token_expires_at": access_token_expires_at,
        },
    )
    account.updated_at = utc_now()
    return account


async def upsert_sub_account(
    session: AsyncSession,
    *,
    sub_account_id: str,
    provider: str,
    account_id: str | None = None,
    name: str | None = None,
    installed: bool | None = None,
    refresh_token: str | None = None,
    access_token: str | None = None,
    access_token_expires_at: datetime | None = None,
    token_scopes: str | None = None,
    token_source: str | None = None,
) -> SubAccount:
    sub_account = await session.get(SubAccount, sub_account_id)
    if sub_account is None:
        sub_account = SubAccount(
            id=sub_account_id,
            provider=provider,
            installed=False,
            active_record_count=0,
        )
        session.add(sub_account)
    # An installed sub-account always carries a refresh token.
    if installed and not (refresh_token or sub_account.refresh_token):
        installed = None
    if installed and sub_account.installed_at is None:
        sub_account.installed_at = utc_now()
    _merge(
        sub_account,
        {
            "provider": provider,
            "account_id": account_id,
            "name": name,
            "installed": installed,
            "refresh_token": refresh_token,
            "access_token": access_token,
            "access_token_expires_at": access_token_expires_at,
            "token_scopes": token_scopes,
            "token_source": token_source,
        },
    )
    sub_account.updated_at = utc_now()
    return sub_account


async def upsert_account_mirror(
    session: AsyncSession,
    *,
    account_id: str,
    sub_account_id: str,
    name: str | None = None,
) -> AccountSubAccount:
    mirror = await session.get(AccountSubAccount, (account_id, sub_account_id))
    if mirror is None:
        mirror = AccountSubAccount(
            account_id=account_id,
            sub_account_id=sub_account_id,
            installed_at=utc_now(),
        )
        session.add(mirror)
    if name is not None:
        mirror.name = name
    mirror.updated_at = utc_now()
    return mirror


async def mark_sub_account_uninstalled(session: AsyncSession, sub_account_id: str) -> bool:
    result = await session.execute(
        update(SubAccount)
        .where(SubAccount.id == sub_account_id)
        .values(installed=False, updated_at=utc_now())
    )
    return bool(result.rowcount)


async def list_sub_account_ids(
    session: AsyncSession,
    account_id: str,
    *,
    after: str | None,
    limit: int,
) -> list[str]:
    # Cursor pagination on id keeps scans stable while rows are deleted.
    stmt = select(SubAccount.id).where(SubAccount.account_id == account_id)
    if after is not None:
        stmt = stmt.where(SubAccount.id > after)
    result = await session.execute(stmt.order_by(SubAccount.id).limit(limit))
    return list(result.scalars().all())

