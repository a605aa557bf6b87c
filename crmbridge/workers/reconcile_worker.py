from __future__ import annotations

import logging

from arq import Retry
from arq.connections import RedisSettings

from crmbridge.core.config import get_settings
from crmbridge.core.errors import ReconcileAttemptError
from crmbridge.core.logging import configure_logging
from crmbridge.persistence.db import SessionLocal
from crmbridge.services.platform.client import PlatformClient
from crmbridge.services.reconcile.queue import (
    ArqBackend,
    ReconcileQueueClient,
    ReconcileTaskPayload,
)
from crmbridge.services.reconcile.worker import ReconcileWorker
from crmbridge.services.tokens.resolver import TokenResolver


logger = logging.getLogger(__name__)


async def reconcile_group(ctx, payload: dict) -> str:
    # Validate in the worker so legacy payload shapes keep working.
    task = ReconcileTaskPayload.model_validate(payload)
    worker: ReconcileWorker = ctx["reconcile_worker"]
    job_try = ctx.get("job_try", 1)
    try:
        outcome = await worker.run(task.sub_account_id, task.group_key, task.attempt)
    except ReconcileAttemptError as exc:
        settings = get_settings()
        if job_try < settings.reconcile_worker_max_tries:
            logger.warning(
                "reconcile_job_retry sub_account_id=%s group_key=%s job_try=%s error=%s",
                task.sub_account_id,
                task.group_key,
                job_try,
                exc,
            )
            raise Retry(defer=settings.reconcile_delay_s) from exc
        raise
    return outcome.status.value


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    client = PlatformClient(settings=settings)
    # Follow-up attempts go back through arq with the same redis pool.
    queue = ReconcileQueueClient(ArqBackend(settings=settings, pool=ctx["redis"]), settings)
    ctx["platform_client"] = client
    ctx["reconcile_worker"] = ReconcileWorker(
        SessionLocal,
        TokenResolver(SessionLocal, client, settings),
        queue,
        settings,
    )


async def _shutdown(ctx) -> None:
    client = ctx.get("platform_client")
    if client is not None:
        await client.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.reconcile_queue_name
    max_tries = settings.reconcile_worker_max_tries
    functions = [reconcile_group]
    on_startup = _startup
    on_shutdown = _shutdown
