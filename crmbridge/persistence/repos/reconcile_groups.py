from __future__ import annotations

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import ReconcileGroup
from crmbridge.persistence.db import utc_now


async def get_group(session: AsyncSession, sub_account_id: str, group_key: str) -> ReconcileGroup | None:
    return await session.get(ReconcileGroup, (sub_account_id, group_key))


async def mark_group_pending(session: AsyncSession, sub_account_id: str, group_key: str) -> ReconcileGroup:
    # Attempts are preserved so a fresh delete event never resets the cap.
    group = await session.get(ReconcileGroup, (sub_account_id, group_key))
    now = utc_now()
    if group is None:
        group = ReconcileGroup(
            sub_account_id=sub_account_id,
            group_key=group_key,
            attempts=0,
        )
        session.add(group)
    group.pending = True
    group.requested_at = now
    group.updated_at = now
    return group


async def record_attempt(
    session: AsyncSession,
    sub_account_id: str,
    group_key: str,
    *,
    attempts: int,
    last_count: int,
) -> ReconcileGroup:
    group = await session.get(ReconcileGroup, (sub_account_id, group_key))
    now = utc_now()
    if group is None:
        group = ReconcileGroup(sub_account_id=sub_account_id, group_key=group_key, attempts=0)
        session.add(group)
    group.pending = True
    # Monotonic: a late duplicate delivery never lowers the stored attempt.
    group.attempts = max(int(group.attempts or 0), attempts)
    group.last_count = last_count
    group.last_reconciled_at = now
    group.updated_at = now
    return group


async def delete_group(session: AsyncSession, sub_account_id: str, group_key: str) -> None:
    await session.execute(
        delete(ReconcileGroup).where(
            ReconcileGroup.sub_account_id == sub_account_id,
            ReconcileGroup.group_key == group_key,
        )
    )
