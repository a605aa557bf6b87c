from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import CachedRecord, RecordReference


async def list_records_by_external_id(
    session: AsyncSession,
    sub_account_id: str,
    external_id: str,
) -> list[CachedRecord]:
    stmt = (
        select(CachedRecord)
        .join(RecordReference, RecordReference.record_id == CachedRecord.id)
        .where(
            RecordReference.sub_account_id == sub_account_id,
            RecordReference.external_id == external_id,
        )
        .order_by(CachedRecord.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().unique().all())


async def list_group_records(
    session: AsyncSession,
    sub_account_id: str,
    group_key: str,
) -> list[CachedRecord]:
    result = await session.execute(
        select(CachedRecord)
        .where(CachedRecord.sub_account_id == sub_account_id, CachedRecord.group_key == group_key)
        .order_by(CachedRecord.id)
    )
    return list(result.scalars().all())


async def list_record_ids(
    session: AsyncSession,
    sub_account_id: str,
    *,
    after: str | None,
    limit: int,
) -> list[str]:
    stmt = select(CachedRecord.id).where(CachedRecord.sub_account_id == sub_account_id)
    if after is not None:
        stmt = stmt.where(CachedRecord.id > after)
    result = await session.execute(stmt.order_by(CachedRecord.id).limit(limit))
    return list(result.scalars().all())


async def external_ids_for_records(
    session: AsyncSession,
    record_ids: Iterable[str],
) -> list[str]:
    # Union of every external id referenced by the given records, stable order.
    ids = list(record_ids)
    if not ids:
        return []
    result = await session.execute(
        select(RecordReference.external_id)
        .where(RecordReference.record_id.in_(ids))
        .distinct()
        .order_by(RecordReference.external_id)
    )
    return list(result.scalars().all())


async def geohashes_with_records(
    session: AsyncSession,
    sub_account_id: str,
    geohashes: Iterable[str],
    *,
    exclude_record_ids: Iterable[str] = (),
) -> set[str]:
    # Geohashes that still have records once the excluded records are gone.
    hashes = list(geohashes)
    if not hashes:
        return set()
    stmt = select(CachedRecord.geohash).where(
        CachedRecord.sub_account_id == sub_account_id,
        CachedRecord.geohash.in_(hashes),
    )
    excluded = list(exclude_record_ids)
    if excluded:
        stmt = stmt.where(CachedRecord.id.not_in(excluded))
    result = await session.execute(
        stmt
        .group_by(CachedRecord.geohash)
        .having(func.count(CachedRecord.id) > 0)
    )
    return {value for value in result.scalars().all() if value}
