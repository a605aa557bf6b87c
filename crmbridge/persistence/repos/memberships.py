from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import LocalUser, Membership


async def list_membership_user_ids(
    session: AsyncSession,
    sub_account_id: str,
    *,
    after: str | None,
    limit: int,
) -> list[str]:
    stmt = select(Membership.user_id).where(Membership.sub_account_id == sub_account_id)
    if after is not None:
        stmt = stmt.where(Membership.user_id > after)
    result = await session.execute(stmt.order_by(Membership.user_id).limit(limit))
    return list(result.scalars().all())


async def list_orphan_user_ids(
    session: AsyncSession,
    sub_account_id: str,
    *,
    after: str | None,
    limit: int,
) -> list[str]:
    # Users that still point at the sub-account after their membership row is gone.
    stmt = select(LocalUser.id).where(LocalUser.sub_account_id == sub_account_id)
    if after is not None:
        stmt = stmt.where(LocalUser.id > after)
    result = await session.execute(stmt.order_by(LocalUser.id).limit(limit))
    return list(result.scalars().all())


async def add_member(
    session: AsyncSession,
    *,
    sub_account_id: str,
    user_id: str,
    email: str | None = None,
    display_name: str | None = None,
    platform_user_id: str | None = None,
    is_admin: bool = False,
) -> Membership:
    user = await session.get(LocalUser, user_id)
    if user is None:
        user = LocalUser(
            id=user_id,
            email=email,
            display_name=display_name,
            sub_account_id=sub_account_id,
            active_record_count=0,
        )
        session.add(user)
    membership = await session.get(Membership, (sub_account_id, user_id))
    if membership is None:
        membership = Membership(
            sub_account_id=sub_account_id,
            user_id=user_id,
            platform_user_id=platform_user_id,
            is_admin=is_admin,
        )
        session.add(membership)
    return membership
