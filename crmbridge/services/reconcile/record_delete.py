from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import update

from crmbridge.domain.models import CachedRecord
from crmbridge.persistence.batching import BatchWriter
from crmbridge.persistence.db import SessionFactory, utc_now
from crmbridge.persistence.repos import reconcile_groups as groups_repo
from crmbridge.persistence.repos.records import list_records_by_external_id
from crmbridge.services.cleanup import cleanup_records
from crmbridge.services.reconcile.queue import ReconcileQueueClient
from crmbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordDeleteResult:
    records_deleted: int = 0
    markers_deleted: int = 0
    users_updated: int = 0
    records_marked: int = 0
    reconcile_queued: int = 0
    reconcile_deduped: int = 0


async def process_record_delete(
    session_factory: SessionFactory,
    queue: ReconcileQueueClient,
    *,
    sub_account_id: str,
    external_id: str,
) -> RecordDeleteResult:
    """Apply a platform-side record deletion to the local cache.

    Ungrouped records are removed at once. Grouped records are only marked and
    handed to the reconcile queue, because the rest of their group may still
    exist on the platform.
    """
    async with session_factory() as session:
        records = await list_records_by_external_id(session, sub_account_id, external_id)
        if not records:
            logger.info(
                "record_delete_no_match sub_account_id=%s external_id=%s",
                sub_account_id,
                external_id,
            )
            return RecordDeleteResult()

        immediate = [record for record in records if not record.group_key]
        grouped: dict[str, list[str]] = {}
        for record in records:
            if record.group_key:
                grouped.setdefault(record.group_key, []).append(record.id)

        cleanup = await cleanup_records(session, sub_account_id, immediate)

        records_marked = 0
        if grouped:
            now = utc_now()
            writer = BatchWriter(session)
            for group_key, record_ids in sorted(grouped.items()):
                await groups_repo.mark_group_pending(session, sub_account_id, group_key)
                for record_id in record_ids:
                    await writer.add(
                        update(CachedRecord)
                        .where(CachedRecord.id == record_id)
                        .values(reconcile_pending=True, reconcile_requested_at=now, updated_at=now)
                    )
                    records_marked += 1
            await writer.flush()
            # Markers must be durable before any task can observe them.
            await session.commit()

    queued = 0
    deduped = 0
    for group_key in sorted(grouped):
        result = await queue.enqueue(sub_account_id, group_key, 0)
        queued += int(result.queued)
        deduped += int(result.deduped)

    increment_counter("record_delete_events_total")
    logger.info(
        "record_delete_processed sub_account_id=%s external_id=%s deleted=%s marked=%s groups=%s queued=%s deduped=%s",
        sub_account_id,
        external_id,
        cleanup.records_deleted,
        records_marked,
        len(grouped),
        queued,
        deduped,
    )
    return RecordDeleteResult(
        records_deleted=cleanup.records_deleted,
        markers_deleted=cleanup.markers_deleted,
        users_updated=cleanup.users_updated,
        records_marked=records_marked,
        reconcile_queued=queued,
        reconcile_deduped=deduped,
    )
