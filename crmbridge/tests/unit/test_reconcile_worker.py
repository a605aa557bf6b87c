from __future__ import annotations

import httpx
import pytest

from crmbridge.core.config import Settings
from crmbridge.core.errors import ReconcileAttemptError
from crmbridge.domain.models import CachedRecord, MapMarker, ReconcileGroup, RecordReference, SubAccount
from crmbridge.persistence.db import SessionLocal
from crmbridge.persistence.repos.reconcile_groups import mark_group_pending, record_attempt
from crmbridge.services.outcomes import recent_soft_failures
from crmbridge.services.reconcile.queue import ReconcileQueueClient, task_id_for
from crmbridge.services.reconcile.worker import ReconcileStatus, ReconcileWorker
from crmbridge.services.tokens.resolver import TokenResolver
from crmbridge.tests.utils.fakes import RecordingBackend
from crmbridge.tests.utils.seed import count_rows, fetch, seed_record, seed_sub_account


async def _seed_group(sub_account_id: str = "loc_1", group_key: str = "g1") -> None:
    # Three records created together, each pointing at its own external contact.
    await seed_sub_account(sub_account_id, access_token="live-token", expires_in_s=3600)
    for suffix in ("a", "b", "c"):
        await seed_record(
            sub_account_id,
            f"rec-{suffix}",
            {
                "ghl": {"contactId": f"contact-{suffix}"},
                "skiptraceData": {"groupId": group_key},
                "geohash": f"gh-{suffix}",
            },
        )
    async with SessionLocal() as session:
        await mark_group_pending(session, sub_account_id, group_key)
        await session.commit()


def _worker(platform_client, backend: RecordingBackend, settings: Settings | None = None) -> ReconcileWorker:
    settings = settings or Settings(reconcile_max_attempts=6, reconcile_delay_s=30)
    resolver = TokenResolver(SessionLocal, platform_client, settings)
    return ReconcileWorker(SessionLocal, resolver, ReconcileQueueClient(backend, settings), settings)


@pytest.mark.asyncio
async def test_group_with_survivor_is_requeued_then_resolved(fake_platform, platform_client) -> None:
    await _seed_group()
    # Two of three contacts are already gone; one still resolves.
    fake_platform.contacts = {"contact-b"}
    backend = RecordingBackend()
    worker = _worker(platform_client, backend)

    first = await worker.run("loc_1", "g1", 0)

    assert first.status is ReconcileStatus.REQUEUED
    assert first.count == 1
    assert first.enqueue is not None and first.enqueue.queued
    assert backend.submitted == [
        (task_id_for("loc_1", "g1", 1), {"subAccountId": "loc_1", "groupKey": "g1", "attempt": 1}, 30)
    ]
    group = await fetch(ReconcileGroup, ("loc_1", "g1"))
    assert group.attempts == 1
    assert group.last_count == 1
    record = await fetch(CachedRecord, "rec-a")
    assert record.reconcile_pending is True
    assert record.external_count == 1
    assert await count_rows(CachedRecord) == 3

    fake_platform.contacts = set()
    second = await worker.run("loc_1", "g1", 1)

    assert second.status is ReconcileStatus.RESOLVED
    assert second.cleanup.records_deleted == 3
    assert await count_rows(CachedRecord) == 0
    assert await count_rows(RecordReference) == 0
    assert await count_rows(MapMarker) == 0
    assert await fetch(ReconcileGroup, ("loc_1", "g1")) is None
    sub_account = await fetch(SubAccount, "loc_1")
    assert sub_account.active_record_count == 0


@pytest.mark.asyncio
async def test_structured_not_found_counts_as_deleted(fake_platform, platform_client) -> None:
    await _seed_group()
    fake_platform.contacts = {"contact-a"}
    # Deleted contacts sometimes come back as a 400 with a not-found body.
    fake_platform.contact_errors["contact-a"] = httpx.Response(
        400, json={"statusCode": 400, "message": ["Contact not found"]}
    )

    outcome = await _worker(platform_client, RecordingBackend()).run("loc_1", "g1", 0)

    assert outcome.status is ReconcileStatus.RESOLVED
    assert await count_rows(CachedRecord) == 0


@pytest.mark.asyncio
async def test_group_exhausted_keeps_records(fake_platform, platform_client) -> None:
    await _seed_group()
    fake_platform.contacts = {"contact-a", "contact-b"}
    backend = RecordingBackend()
    worker = _worker(platform_client, backend, Settings(reconcile_max_attempts=3))

    outcome = await worker.run("loc_1", "g1", 2)

    assert outcome.status is ReconcileStatus.EXHAUSTED
    assert outcome.count == 2
    assert backend.submitted == []
    assert await count_rows(CachedRecord) == 3
    record = await fetch(CachedRecord, "rec-c")
    assert record.reconcile_pending is False
    assert record.external_count == 2
    assert await fetch(ReconcileGroup, ("loc_1", "g1")) is None
    assert recent_soft_failures("reconcile_exhausted")


@pytest.mark.asyncio
async def test_stored_attempt_wins_over_stale_request(fake_platform, platform_client) -> None:
    await _seed_group()
    async with SessionLocal() as session:
        await record_attempt(session, "loc_1", "g1", attempts=2, last_count=3)
        await session.commit()
    fake_platform.contacts = {"contact-a"}
    backend = RecordingBackend()

    outcome = await _worker(platform_client, backend).run("loc_1", "g1", 0)

    assert outcome.attempt == 2
    assert backend.submitted[0][0] == task_id_for("loc_1", "g1", 3)
    group = await fetch(ReconcileGroup, ("loc_1", "g1"))
    assert group.attempts == 3


@pytest.mark.asyncio
async def test_empty_group_is_skipped(fake_platform, platform_client) -> None:
    await seed_sub_account("loc_1", access_token="live-token", expires_in_s=3600)
    async with SessionLocal() as session:
        await mark_group_pending(session, "loc_1", "ghost")
        await session.commit()

    outcome = await _worker(platform_client, RecordingBackend()).run("loc_1", "ghost", 0)

    assert outcome.status is ReconcileStatus.SKIPPED
    assert fake_platform.requests == []
    assert await fetch(ReconcileGroup, ("loc_1", "ghost")) is None


@pytest.mark.asyncio
async def test_transient_lookup_failure_raises_for_retry(fake_platform, platform_client) -> None:
    await _seed_group()
    fake_platform.contact_errors["contact-a"] = httpx.Response(502, json={"message": "Bad gateway"})

    with pytest.raises(ReconcileAttemptError):
        await _worker(platform_client, RecordingBackend()).run("loc_1", "g1", 0)

    assert await count_rows(CachedRecord) == 3
    group = await fetch(ReconcileGroup, ("loc_1", "g1"))
    assert group.attempts == 0


@pytest.mark.asyncio
async def test_token_unavailable_leaves_group_untouched(fake_platform, platform_client) -> None:
    await _seed_group()
    async with SessionLocal() as session:
        sub_account = await session.get(SubAccount, "loc_1")
        sub_account.access_token = None
        await session.commit()

    outcome = await _worker(platform_client, RecordingBackend()).run("loc_1", "g1", 0)

    assert outcome.status is ReconcileStatus.TOKEN_UNAVAILABLE
    assert outcome.failure is not None
    assert outcome.failure.stage == "reconcile_token_unavailable"
    assert await count_rows(CachedRecord) == 3
    assert await fetch(ReconcileGroup, ("loc_1", "g1")) is not None


@pytest.mark.asyncio
async def test_requeue_failure_is_reported(fake_platform, platform_client) -> None:
    await _seed_group()
    fake_platform.contacts = {"contact-a"}

    outcome = await _worker(platform_client, RecordingBackend(fail=True)).run("loc_1", "g1", 0)

    assert outcome.status is ReconcileStatus.REQUEUED
    assert outcome.failure is not None
    assert outcome.failure.stage == "reconcile_requeue"
    # The attempt is recorded even though the follow-up task was not created.
    group = await fetch(ReconcileGroup, ("loc_1", "g1"))
    assert group.attempts == 1


@pytest.mark.asyncio
async def test_group_without_external_references_is_kept(fake_platform, platform_client) -> None:
    await seed_sub_account("loc_1", access_token="live-token", expires_in_s=3600)
    await seed_record("loc_1", "rec-x", {"groupKey": "g1", "geohash": "gh-x"})
    await seed_record("loc_1", "rec-y", {"skiptraceData": {"groupId": "g1"}})
    async with SessionLocal() as session:
        await mark_group_pending(session, "loc_1", "g1")
        await session.commit()
    backend = RecordingBackend()

    outcome = await _worker(platform_client, backend).run("loc_1", "g1", 0)

    assert outcome.status is ReconcileStatus.UNVERIFIABLE
    assert outcome.failure is not None
    assert outcome.failure.stage == "reconcile_unverifiable"
    assert fake_platform.requests == []
    assert backend.submitted == []
    assert await count_rows(CachedRecord) == 2
    assert await count_rows(MapMarker) == 1
    assert (await fetch(CachedRecord, "rec-x")).reconcile_pending is False
    assert await fetch(ReconcileGroup, ("loc_1", "g1")) is None
