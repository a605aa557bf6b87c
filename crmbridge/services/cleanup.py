from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import logging
from typing import Sequence

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import CachedRecord, LocalUser, MapMarker, RecordReference, SubAccount
from crmbridge.persistence.batching import BatchWriter
from crmbridge.persistence.repos.records import geohashes_with_records


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    records_deleted: int = 0
    markers_deleted: int = 0
    users_updated: int = 0
    sub_account_updated: bool = False


def _decrement(column, amount: int):
    # Counters never go below zero even if an earlier cleanup raced this one.
    return case((column - amount < 0, 0), else_=column - amount)


async def cleanup_records(
    session: AsyncSession,
    sub_account_id: str,
    records: Sequence[CachedRecord],
    *,
    limit: int | None = None,
) -> CleanupResult:
    """Delete cached records with their references, stale markers and counters."""
    if not records:
        return CleanupResult()

    record_ids = [record.id for record in records]
    geohashes = {record.geohash for record in records if record.geohash}
    user_counts = Counter(record.created_by_user_id for record in records if record.created_by_user_id)

    # Markers shared with records that survive this cleanup stay in place.
    still_used = await geohashes_with_records(
        session,
        sub_account_id,
        geohashes,
        exclude_record_ids=record_ids,
    )
    stale_geohashes = sorted(geohashes - still_used)

    existing_users: set[str] = set()
    if user_counts:
        result = await session.execute(select(LocalUser.id).where(LocalUser.id.in_(list(user_counts))))
        existing_users = set(result.scalars().all())
    sub_account_exists = await session.get(SubAccount, sub_account_id) is not None

    writer = BatchWriter(session, limit=limit)
    if sub_account_exists:
        await writer.add(
            update(SubAccount)
            .where(SubAccount.id == sub_account_id)
            .values(active_record_count=_decrement(SubAccount.active_record_count, len(record_ids)))
        )
    users_updated = 0
    for user_id, count in sorted(user_counts.items()):
        if user_id not in existing_users:
            continue
        await writer.add(
            update(LocalUser)
            .where(LocalUser.id == user_id)
            .values(active_record_count=_decrement(LocalUser.active_record_count, count))
        )
        users_updated += 1
    for geohash in stale_geohashes:
        await writer.add(
            delete(MapMarker).where(
                MapMarker.sub_account_id == sub_account_id,
                MapMarker.geohash == geohash,
            )
        )
    for record_id in record_ids:
        await writer.add(delete(RecordReference).where(RecordReference.record_id == record_id))
        await writer.add(delete(CachedRecord).where(CachedRecord.id == record_id))
    await writer.flush()

    logger.info(
        "records_cleaned sub_account_id=%s records=%s markers=%s users=%s batches=%s",
        sub_account_id,
        len(record_ids),
        len(stale_geohashes),
        users_updated,
        writer.committed_batches,
    )
    return CleanupResult(
        records_deleted=len(record_ids),
        markers_deleted=len(stale_geohashes),
        users_updated=users_updated,
        sub_account_updated=sub_account_exists,
    )
