from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.core.config import Settings, get_settings
from crmbridge.core.errors import (
    PlatformConfigError,
    PlatformError,
    ReconcileAttemptError,
    TokenUnavailableError,
)
from crmbridge.domain.models import CachedRecord
from crmbridge.persistence.batching import BatchWriter
from crmbridge.persistence.db import SessionFactory, utc_now
from crmbridge.persistence.repos import reconcile_groups as groups_repo
from crmbridge.persistence.repos.records import external_ids_for_records, list_group_records
from crmbridge.services.cleanup import CleanupResult, cleanup_records
from crmbridge.services.outcomes import SoftFailure, report_soft_failure
from crmbridge.services.reconcile.queue import EnqueueResult, ReconcileQueueClient
from crmbridge.services.telemetry import increment_counter
from crmbridge.services.tokens.resolver import TokenResolver


logger = logging.getLogger(__name__)

_LOOKUP_ERRORS = (PlatformError, PlatformConfigError, httpx.HTTPError, asyncio.TimeoutError)


class ReconcileStatus(str, Enum):
    SKIPPED = "skipped"
    RESOLVED = "resolved"
    REQUEUED = "requeued"
    EXHAUSTED = "exhausted"
    UNVERIFIABLE = "unverifiable"
    TOKEN_UNAVAILABLE = "token_unavailable"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    sub_account_id: str
    group_key: str
    attempt: int
    count: int | None = None
    cleanup: CleanupResult | None = None
    enqueue: EnqueueResult | None = None
    failure: SoftFailure | None = None


class ReconcileWorker:
    """Re-check a group of cached records against the platform.

    The platform deletes a group's external records one at a time and its
    lookups lag, so a single delete event says nothing about the rest of the
    group. Each run recounts the surviving external records: zero means the
    group is gone and is cleaned up locally, anything else schedules another
    attempt until the cap, after which the records are kept (fail-open).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver: TokenResolver,
        queue: ReconcileQueueClient,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._resolver = resolver
        self._queue = queue
        self._settings = settings or get_settings()

    @property
    def max_attempts(self) -> int:
        return max(1, int(self._settings.reconcile_max_attempts))

    async def run(self, sub_account_id: str, group_key: str, attempt: int = 0) -> ReconcileOutcome:
        requested = max(0, int(attempt))
        # Read state, then release the session before any network call.
        async with self._session_factory() as session:
            records = await list_group_records(session, sub_account_id, group_key)
            if not records:
                await groups_repo.delete_group(session, sub_account_id, group_key)
                await session.commit()
                logger.info(
                    "reconcile_skipped sub_account_id=%s group_key=%s reason=no_records",
                    sub_account_id,
                    group_key,
                )
                increment_counter("reconcile_skipped_total")
                return ReconcileOutcome(
                    status=ReconcileStatus.SKIPPED,
                    sub_account_id=sub_account_id,
                    group_key=group_key,
                    attempt=requested,
                )
            group = await groups_repo.get_group(session, sub_account_id, group_key)
            stored = int(group.attempts or 0) if group is not None else 0
            external_ids = await external_ids_for_records(session, [record.id for record in records])
        current = max(requested, stored)

        if not external_ids:
            # No external reference to check, so nothing proves the group is gone.
            return await self._exhaust(
                sub_account_id,
                group_key,
                current,
                None,
                status=ReconcileStatus.UNVERIFIABLE,
                stage="reconcile_unverifiable",
                message="Group records carry no external references",
            )

        try:
            access_token = await self._resolver.resolve(sub_account_id)
        except TokenUnavailableError as exc:
            failure = report_soft_failure(
                "reconcile_token_unavailable",
                exc,
                sub_account_id=sub_account_id,
                group_key=group_key,
                attempt=current,
            )
            return ReconcileOutcome(
                status=ReconcileStatus.TOKEN_UNAVAILABLE,
                sub_account_id=sub_account_id,
                group_key=group_key,
                attempt=current,
                failure=failure,
            )

        count = await self.count_surviving(access_token, external_ids)
        logger.info(
            "reconcile_group_count sub_account_id=%s group_key=%s attempt=%s count=%s ids=%s",
            sub_account_id,
            group_key,
            current,
            count,
            len(external_ids),
        )

        if count == 0:
            return await self._resolve(sub_account_id, group_key, current)
        if current < self.max_attempts - 1:
            return await self._requeue(sub_account_id, group_key, current, count)
        return await self._exhaust(sub_account_id, group_key, current, count)

    async def count_surviving(self, access_token: str, external_ids: list[str]) -> int:
        """Count external records that still exist; not-found in any shape means gone."""
        client = self._resolver.platform_client
        count = 0
        for external_id in external_ids:
            try:
                await client.get_contact(access_token, external_id)
            except PlatformError as exc:
                if exc.is_not_found:
                    continue
                raise ReconcileAttemptError(
                    f"Lookup for {external_id} failed with status {exc.status_code}"
                ) from exc
            except _LOOKUP_ERRORS as exc:
                raise ReconcileAttemptError(f"Lookup for {external_id} failed: {exc}") from exc
            count += 1
        return count

    async def _resolve(self, sub_account_id: str, group_key: str, current: int) -> ReconcileOutcome:
        async with self._session_factory() as session:
            records = await list_group_records(session, sub_account_id, group_key)
            cleanup = await cleanup_records(session, sub_account_id, records)
            await groups_repo.delete_group(session, sub_account_id, group_key)
            await session.commit()
        increment_counter("reconcile_resolved_total")
        logger.info(
            "reconcile_resolved sub_account_id=%s group_key=%s attempt=%s records_deleted=%s",
            sub_account_id,
            group_key,
            current,
            cleanup.records_deleted,
        )
        return ReconcileOutcome(
            status=ReconcileStatus.RESOLVED,
            sub_account_id=sub_account_id,
            group_key=group_key,
            attempt=current,
            count=0,
            cleanup=cleanup,
        )

    async def _mark_records(
        self,
        session: AsyncSession,
        sub_account_id: str,
        group_key: str,
        *,
        count: int | None,
        pending: bool,
    ) -> BatchWriter:
        now = utc_now()
        values = {
            "reconcile_pending": pending,
            "last_reconciled_at": now,
            "updated_at": now,
        }
        if count is not None:
            values["external_count"] = count
        if pending:
            values["reconcile_requested_at"] = now
        writer = BatchWriter(session)
        records = await list_group_records(session, sub_account_id, group_key)
        for record in records:
            await writer.add(update(CachedRecord).where(CachedRecord.id == record.id).values(**values))
        return writer

    async def _requeue(self, sub_account_id: str, group_key: str, current: int, count: int) -> ReconcileOutcome:
        next_attempt = current + 1
        async with self._session_factory() as session:
            writer = await self._mark_records(session, sub_account_id, group_key, count=count, pending=True)
            await groups_repo.record_attempt(
                session,
                sub_account_id,
                group_key,
                attempts=next_attempt,
                last_count=count,
            )
            await writer.flush()
            await session.commit()

        enqueue = await self._queue.enqueue(
            sub_account_id,
            group_key,
            next_attempt,
            delay_seconds=self._settings.reconcile_delay_s,
        )
        failure = None
        if not enqueue.queued and not enqueue.deduped:
            failure = report_soft_failure(
                "reconcile_requeue",
                "Follow-up reconcile attempt could not be enqueued",
                sub_account_id=sub_account_id,
                group_key=group_key,
                attempt=next_attempt,
            )
        increment_counter("reconcile_requeued_total")
        return ReconcileOutcome(
            status=ReconcileStatus.REQUEUED,
            sub_account_id=sub_account_id,
            group_key=group_key,
            attempt=current,
            count=count,
            enqueue=enqueue,
            failure=failure,
        )

    async def _exhaust(
        self,
        sub_account_id: str,
        group_key: str,
        current: int,
        count: int | None,
        *,
        status: ReconcileStatus = ReconcileStatus.EXHAUSTED,
        stage: str = "reconcile_exhausted",
        message: str | None = None,
    ) -> ReconcileOutcome:
        # Records stay; only the group marker is removed.
        async with self._session_factory() as session:
            writer = await self._mark_records(session, sub_account_id, group_key, count=count, pending=False)
            await groups_repo.delete_group(session, sub_account_id, group_key)
            await writer.flush()
            await session.commit()
        failure = report_soft_failure(
            stage,
            message or f"Group still has {count} external records after {current + 1} attempts",
            sub_account_id=sub_account_id,
            group_key=group_key,
            attempt=current,
            count=count,
        )
        increment_counter(f"reconcile_{status.value}_total")
        return ReconcileOutcome(
            status=status,
            sub_account_id=sub_account_id,
            group_key=group_key,
            attempt=current,
            count=count,
            failure=failure,
        )
