from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
import logging
import math
import re
import time
from typing import Any, Callable, Protocol

from arq import create_pool
from arq.connections import RedisSettings
import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from redis.exceptions import RedisError

from crmbridge.core.config import Settings, get_settings
from crmbridge.persistence.db import utc_now
from crmbridge.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

RECONCILE_JOB_NAME = "reconcile_group"
_TASK_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
_TASK_ID_MAX_LEN = 400
_TASK_ID_DIGEST_LEN = 16


class ReconcileTaskPayload(BaseModel):
    # Body of a reconcile task; legacy producers send locationId/groupId.
    model_config = ConfigDict(populate_by_name=True)

    sub_account_id: str = Field(
        validation_alias=AliasChoices("subAccountId", "locationId", "sub_account_id"),
        serialization_alias="subAccountId",
        min_length=1,
    )
    group_key: str = Field(
        validation_alias=AliasChoices("groupKey", "groupId", "group_key"),
        serialization_alias="groupKey",
        min_length=1,
    )
    attempt: int = 0

    @field_validator("sub_account_id", "group_key", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("attempt", mode="before")
    @classmethod
    def _coerce_attempt(cls, value: Any) -> int:
        # Unparseable or negative attempts count as the first attempt.
        if isinstance(value, bool) or value is None:
            return 0
        try:
            parsed = float(str(value).strip()) if isinstance(value, str) else float(value)
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(parsed):
            return 0
        return max(0, int(parsed))


@dataclass(frozen=True)
class EnqueueResult:
    queued: bool
    deduped: bool
    task_name: str


def task_id_for(sub_account_id: str, group_key: str, attempt: int) -> str:
    """Deterministic task id; the same triple always maps to the same id.

    The readable prefix is sanitized and truncated, so a digest of the raw
    triple keeps distinct triples on distinct ids.
    """
    attempt = max(0, int(attempt))
    digest = hashlib.sha256(
        f"{sub_account_id}\x00{group_key}\x00{attempt}".encode("utf-8")
    ).hexdigest()[:_TASK_ID_DIGEST_LEN]
    prefix = _TASK_ID_UNSAFE.sub("-", f"reconcile-{sub_account_id}-{group_key}-a{attempt}")
    return f"{prefix[: _TASK_ID_MAX_LEN - _TASK_ID_DIGEST_LEN - 1]}-{digest}"


class QueueBackend(Protocol):
    name: str

    async def submit(self, task_id: str, payload: ReconcileTaskPayload, delay_s: int) -> EnqueueResult: ...

    async def aclose(self) -> None: ...


class MetadataTokenProvider:
    """Fetch the service-account bearer token from the instance metadata server."""

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings | None = None) -> None:
        self._http = http_client
        self._settings = settings or get_settings()

    async def get_token(self) -> str | None:
        start = time.monotonic()
        try:
            response = await self._http.get(
                self._settings.metadata_token_url,
                headers={"Metadata-Flavor": "Google"},
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="metadata.token",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("queue_credential_fetch_failed error=%s", exc)
            return None
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration="metadata.token", latency_ms=latency_ms, success=False)
            logger.warning(
                "queue_credential_fetch_failed status=%s body=%s",
                response.status_code,
                response.text[:200],
            )
            return None
        record_external_call(integration="metadata.token", latency_ms=latency_ms, success=True)
        try:
            body = response.json()
        except ValueError:
            logger.warning("queue_credential_invalid_body")
            return None
        token = body.get("access_token") if isinstance(body, dict) else None
        return token if isinstance(token, str) and token else None


class CloudTasksBackend:
    name = "cloud_tasks"

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        token_provider: MetadataTokenProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        self._token_provider = token_provider or MetadataTokenProvider(self._http, self._settings)
        self._clock = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    @property
    def queue_path(self) -> str:
        s = self._settings
        return f"projects/{s.cloud_tasks_project}/locations/{s.cloud_tasks_location}/queues/{s.cloud_tasks_queue}"

    def _task_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = (self._settings.reconcile_token or "").strip()
        if token:
            headers[self._settings.reconcile_token_header] = token
        return headers

    def build_task(self, task_id: str, payload: ReconcileTaskPayload, delay_s: int) -> dict[str, Any]:
        schedule_at = self._clock() + timedelta(seconds=max(0, delay_s))
        body = json.dumps(payload.model_dump(by_alias=True)).encode("utf-8")
        return {
            "name": f"{self.queue_path}/tasks/{task_id}",
            "scheduleTime": schedule_at.isoformat().replace("+00:00", "Z"),
            "httpRequest": {
                "httpMethod": "POST",
                "url": f"{self._settings.task_base_url.rstrip('/')}/v1/tasks/reconcile",
                "headers": self._task_headers(),
                "body": base64.b64encode(body).decode("ascii"),
            },
        }

    async def submit(self, task_id: str, payload: ReconcileTaskPayload, delay_s: int) -> EnqueueResult:
        s = self._settings
        if not (s.cloud_tasks_project and s.cloud_tasks_location and s.cloud_tasks_queue):
            logger.warning("reconcile_queue_not_configured backend=%s", self.name)
            return EnqueueResult(queued=False, deduped=False, task_name="")
        if not s.task_base_url:
            logger.warning("reconcile_queue_missing_base_url backend=%s", self.name)
            return EnqueueResult(queued=False, deduped=False, task_name="")

        access_token = await self._token_provider.get_token()
        if not access_token:
            return EnqueueResult(queued=False, deduped=False, task_name="")

        task = self.build_task(task_id, payload, delay_s)
        task_name = task["name"]
        url = f"{s.cloud_tasks_api_url.rstrip('/')}/{self.queue_path}/tasks"
        start = time.monotonic()
        try:
            response = await self._http.post(
                url,
                json={"task": task},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="cloud_tasks.create",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("reconcile_enqueue_failed task=%s error=%s", task_id, exc)
            return EnqueueResult(queued=False, deduped=False, task_name=task_name)
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code == 409:
            record_external_call(integration="cloud_tasks.create", latency_ms=latency_ms, success=True)
            return EnqueueResult(queued=False, deduped=True, task_name=task_name)
        if response.status_code >= 300:
            record_external_call(integration="cloud_tasks.create", latency_ms=latency_ms, success=False)
            logger.warning(
                "reconcile_enqueue_failed task=%s status=%s body=%s",
                task_id,
                response.status_code,
                response.text[:300],
            )
            return EnqueueResult(queued=False, deduped=False, task_name=task_name)
        record_external_call(integration="cloud_tasks.create", latency_ms=latency_ms, success=True)
        return EnqueueResult(queued=True, deduped=False, task_name=task_name)


class ArqBackend:
    name = "arq"

    def __init__(self, *, settings: Settings | None = None, pool: Any = None) -> None:
        self._settings = settings or get_settings()
        self._pool = pool
        self._owns_pool = pool is None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> Any:
        # Cache the Redis pool to avoid reconnecting on every enqueue.
        if self._pool is not None:
            return self._pool
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.reconcile_queue_name,
                )
        return self._pool

    async def aclose(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    async def submit(self, task_id: str, payload: ReconcileTaskPayload, delay_s: int) -> EnqueueResult:
        try:
            redis = await self._get_pool()
            job = await redis.enqueue_job(
                RECONCILE_JOB_NAME,
                payload.model_dump(by_alias=True),
                _job_id=task_id,
                _queue_name=self._settings.reconcile_queue_name,
                _defer_by=timedelta(seconds=max(0, delay_s)),
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("reconcile_enqueue_failed task=%s error=%s", task_id, exc)
            return EnqueueResult(queued=False, deduped=False, task_name=task_id)
        # arq returns None when a job with this id already exists.
        if job is None:
            return EnqueueResult(queued=False, deduped=True, task_name=task_id)
        return EnqueueResult(queued=True, deduped=False, task_name=task_id)


def build_queue_backend(settings: Settings | None = None) -> QueueBackend:
    settings = settings or get_settings()
    backend = settings.reconcile_queue_backend.lower()
    if backend == "arq":
        return ArqBackend(settings=settings)
    if backend == "cloud_tasks":
        return CloudTasksBackend(settings=settings)
    raise ValueError(f"Unknown reconcile_queue_backend: {settings.reconcile_queue_backend}")


class ReconcileQueueClient:
    """Schedule reconcile attempts; never raises for queue or credential failures.

    Task ids are deterministic per (sub-account, group, attempt), so a repeated
    enqueue is reported as ``deduped`` instead of creating a second task.
    """

    def __init__(self, backend: QueueBackend | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._backend = backend or build_queue_backend(self._settings)

    @property
    def max_attempts(self) -> int:
        return max(1, int(self._settings.reconcile_max_attempts))

    async def aclose(self) -> None:
        await self._backend.aclose()

    async def enqueue(
        self,
        sub_account_id: str,
        group_key: str,
        attempt: int = 0,
        delay_seconds: int | None = None,
    ) -> EnqueueResult:
        attempt = max(0, int(attempt))
        task_id = task_id_for(sub_account_id, group_key, attempt)
        if attempt >= self.max_attempts:
            logger.info(
                "reconcile_enqueue_skipped sub_account_id=%s group_key=%s attempt=%s reason=max_attempts",
                sub_account_id,
                group_key,
                attempt,
            )
            return EnqueueResult(queued=False, deduped=False, task_name=task_id)
        if delay_seconds is None:
            delay_seconds = (
                self._settings.reconcile_initial_delay_s if attempt == 0 else self._settings.reconcile_delay_s
            )
        payload = ReconcileTaskPayload(sub_account_id=sub_account_id, group_key=group_key, attempt=attempt)
        result = await self._backend.submit(task_id, payload, int(delay_seconds))
        if result.queued:
            increment_counter("reconcile_enqueued_total")
        elif result.deduped:
            increment_counter("reconcile_deduped_total")
        else:
            increment_counter("reconcile_enqueue_failures_total")
        logger.info(
            "reconcile_enqueue backend=%s sub_account_id=%s group_key=%s attempt=%s queued=%s deduped=%s",
            self._backend.name,
            sub_account_id,
            group_key,
            attempt,
            result.queued,
            result.deduped,
        )
        return result
