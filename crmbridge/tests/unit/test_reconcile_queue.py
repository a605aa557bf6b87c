from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
import json
import re

import httpx
import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from crmbridge.core.config import Settings
from crmbridge.services.reconcile.queue import (
    RECONCILE_JOB_NAME,
    ArqBackend,
    CloudTasksBackend,
    ReconcileQueueClient,
    ReconcileTaskPayload,
    build_queue_backend,
    task_id_for,
)
from crmbridge.services.telemetry import get_counter
from crmbridge.tests.utils.fakes import RecordingBackend


_FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _cloud_settings(**overrides) -> Settings:
    values = {
        "cloud_tasks_project": "proj",
        "cloud_tasks_location": "us-central1",
        "cloud_tasks_queue": "crm-reconcile",
        "task_base_url": "https://bridge.example.com",
        "reconcile_token": "shared-secret",
    }
    values.update(overrides)
    return Settings(**values)


class _CloudTasksStub:
    def __init__(self, *, create_status: int = 200, token_status: int = 200) -> None:
        self.create_status = create_status
        self.token_status = token_status
        self.created: list[dict] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "metadata.google.internal":
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="denied")
            return httpx.Response(200, json={"access_token": "sa-token", "expires_in": 3599})
        body = json.loads(request.content.decode("utf-8"))
        self.created.append(body["task"])
        return httpx.Response(self.create_status, json={"name": body["task"]["name"]})


def _cloud_backend(stub: _CloudTasksStub, settings: Settings) -> CloudTasksBackend:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    return CloudTasksBackend(settings=settings, http_client=http_client, clock=lambda: _FIXED_NOW)


def test_task_id_is_deterministic_and_sanitized() -> None:
    task_id = task_id_for("loc 1", "batch/7:x", 2)
    assert task_id.startswith("reconcile-loc-1-batch-7-x-a2-")
    assert re.fullmatch(r"[A-Za-z0-9_-]+", task_id)
    assert task_id_for("loc_1", "g1", 3) == task_id_for("loc_1", "g1", 3)
    assert task_id_for("loc_1", "g1", 3) != task_id_for("loc_1", "g1", 4)
    assert len(task_id_for("loc_1", "g" * 1000, 1)) == 400
    assert task_id_for("loc_1", "g" * 1000, 1) != task_id_for("loc_1", "g" * 1001, 1)


def test_task_ids_stay_distinct_when_sanitized_forms_collide() -> None:
    assert task_id_for("loc_1", "batch.7", 0) != task_id_for("loc_1", "batch-7", 0)
    assert task_id_for("a-b", "c", 0) != task_id_for("a", "b-c", 0)


def test_payload_accepts_legacy_aliases_and_coerces_attempt() -> None:
    payload = ReconcileTaskPayload.model_validate({"locationId": " loc_1 ", "groupId": "g1", "attempt": "2"})
    assert payload.sub_account_id == "loc_1"
    assert payload.group_key == "g1"
    assert payload.attempt == 2
    assert payload.model_dump(by_alias=True) == {"subAccountId": "loc_1", "groupKey": "g1", "attempt": 2}

    assert ReconcileTaskPayload.model_validate({"subAccountId": "l", "groupKey": "g", "attempt": -4}).attempt == 0
    assert ReconcileTaskPayload.model_validate({"subAccountId": "l", "groupKey": "g", "attempt": "nan"}).attempt == 0
    assert ReconcileTaskPayload.model_validate({"subAccountId": "l", "groupKey": "g", "attempt": "x"}).attempt == 0
    assert ReconcileTaskPayload.model_validate({"subAccountId": "l", "groupKey": "g"}).attempt == 0


def test_payload_requires_identifiers() -> None:
    with pytest.raises(ValidationError):
        ReconcileTaskPayload.model_validate({"subAccountId": "loc_1"})
    with pytest.raises(ValidationError):
        ReconcileTaskPayload.model_validate({"subAccountId": "  ", "groupKey": "g1"})


@pytest.mark.asyncio
async def test_cloud_tasks_builds_authenticated_delayed_task() -> None:
    stub = _CloudTasksStub()
    backend = _cloud_backend(stub, _cloud_settings())
    payload = ReconcileTaskPayload(sub_account_id="loc_1", group_key="g1", attempt=1)

    result = await backend.submit("reconcile-loc_1-g1-a1", payload, 30)

    assert result.queued is True
    assert result.task_name == (
        "projects/proj/locations/us-central1/queues/crm-reconcile/tasks/reconcile-loc_1-g1-a1"
    )
    metadata_request, create_request = stub.requests
    assert metadata_request.headers["Metadata-Flavor"] == "Google"
    assert create_request.headers["Authorization"] == "Bearer sa-token"
    task = stub.created[0]
    assert task["scheduleTime"] == (_FIXED_NOW + timedelta(seconds=30)).isoformat().replace("+00:00", "Z")
    http_request = task["httpRequest"]
    assert http_request["url"] == "https://bridge.example.com/v1/tasks/reconcile"
    assert http_request["headers"]["x-reconcile-token"] == "shared-secret"
    decoded = json.loads(base64.b64decode(http_request["body"]))
    assert decoded == {"subAccountId": "loc_1", "groupKey": "g1", "attempt": 1}


@pytest.mark.asyncio
async def test_cloud_tasks_conflict_is_reported_as_deduped() -> None:
    stub = _CloudTasksStub(create_status=409)
    client = ReconcileQueueClient(_cloud_backend(stub, _cloud_settings()), _cloud_settings())

    result = await client.enqueue("loc_1", "g1", 0)

    assert result.queued is False
    assert result.deduped is True
    assert get_counter("reconcile_deduped_total") == 1


@pytest.mark.asyncio
async def test_cloud_tasks_failures_never_raise() -> None:
    stub = _CloudTasksStub(create_status=500)
    settings = _cloud_settings()
    result = await ReconcileQueueClient(_cloud_backend(stub, settings), settings).enqueue("loc_1", "g1", 0)
    assert (result.queued, result.deduped) == (False, False)

    stub = _CloudTasksStub(token_status=403)
    result = await _cloud_backend(stub, settings).submit(
        "t1", ReconcileTaskPayload(sub_account_id="loc_1", group_key="g1"), 0
    )
    assert result.queued is False
    assert len(stub.requests) == 1


@pytest.mark.asyncio
async def test_cloud_tasks_unconfigured_makes_no_requests() -> None:
    stub = _CloudTasksStub()
    backend = _cloud_backend(stub, _cloud_settings(cloud_tasks_project=""))

    result = await backend.submit("t1", ReconcileTaskPayload(sub_account_id="loc_1", group_key="g1"), 0)

    assert result.queued is False
    assert stub.requests == []


class _FakeArqPool:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.jobs: dict[str, tuple] = {}

    async def enqueue_job(self, function, *args, _job_id=None, _queue_name=None, _defer_by=None):
        if self.error is not None:
            raise self.error
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = (function, args, _queue_name, _defer_by)
        return object()


@pytest.mark.asyncio
async def test_arq_backend_dedupes_on_existing_job_id() -> None:
    pool = _FakeArqPool()
    backend = ArqBackend(settings=Settings(), pool=pool)
    payload = ReconcileTaskPayload(sub_account_id="loc_1", group_key="g1", attempt=1)

    first = await backend.submit("reconcile-loc_1-g1-a1", payload, 30)
    second = await backend.submit("reconcile-loc_1-g1-a1", payload, 30)

    assert first.queued is True
    assert second.deduped is True
    function, args, queue_name, defer_by = pool.jobs["reconcile-loc_1-g1-a1"]
    assert function == RECONCILE_JOB_NAME
    assert args == ({"subAccountId": "loc_1", "groupKey": "g1", "attempt": 1},)
    assert queue_name == "reconcile"
    assert defer_by == timedelta(seconds=30)


@pytest.mark.asyncio
async def test_arq_backend_redis_failure_is_not_queued() -> None:
    backend = ArqBackend(settings=Settings(), pool=_FakeArqPool(error=RedisConnectionError("down")))

    result = await backend.submit("t1", ReconcileTaskPayload(sub_account_id="loc_1", group_key="g1"), 0)

    assert (result.queued, result.deduped) == (False, False)


@pytest.mark.asyncio
async def test_enqueue_applies_attempt_delays_and_cap() -> None:
    backend = RecordingBackend()
    client = ReconcileQueueClient(
        backend,
        Settings(reconcile_max_attempts=3, reconcile_delay_s=30, reconcile_initial_delay_s=5),
    )

    await client.enqueue("loc_1", "g1", 0)
    await client.enqueue("loc_1", "g1", 2)
    capped = await client.enqueue("loc_1", "g1", 3)

    assert [(task_id, delay) for task_id, _payload, delay in backend.submitted] == [
        (task_id_for("loc_1", "g1", 0), 5),
        (task_id_for("loc_1", "g1", 2), 30),
    ]
    assert capped.queued is False
    assert capped.task_name == task_id_for("loc_1", "g1", 3)
    assert get_counter("reconcile_enqueued_total") == 2


@pytest.mark.asyncio
async def test_repeated_enqueue_is_deduped() -> None:
    client = ReconcileQueueClient(RecordingBackend(), Settings())

    first = await client.enqueue("loc_1", "g1", 0)
    second = await client.enqueue("loc_1", "g1", 0)

    assert first.queued is True
    assert second.deduped is True


def test_build_queue_backend_selects_by_name() -> None:
    assert build_queue_backend(Settings(reconcile_queue_backend="arq")).name == "arq"
    assert build_queue_backend(Settings(reconcile_queue_backend="cloud_tasks")).name == "cloud_tasks"
    with pytest.raises(ValueError):
        build_queue_backend(Settings(reconcile_queue_backend="sqs"))


@pytest.mark.asyncio
async def test_groups_with_colliding_sanitized_keys_both_queue() -> None:
    backend = RecordingBackend()
    client = ReconcileQueueClient(backend, Settings())

    first = await client.enqueue("loc_1", "batch.7", 0)
    second = await client.enqueue("loc_1", "batch-7", 0)

    assert first.queued is True
    assert second.queued is True
    assert second.deduped is False
    assert [payload["groupKey"] for _task_id, payload, _delay in backend.submitted] == ["batch.7", "batch-7"]
