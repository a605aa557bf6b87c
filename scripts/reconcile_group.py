from __future__ import annotations

import argparse
import asyncio

from crmbridge.core.config import get_settings
from crmbridge.core.logging import configure_logging
from crmbridge.persistence.db import SessionLocal
from crmbridge.services.platform.client import PlatformClient
from crmbridge.services.reconcile.queue import ReconcileQueueClient
from crmbridge.services.reconcile.worker import ReconcileWorker
from crmbridge.services.tokens.resolver import TokenResolver


async def _run(sub_account_id: str, group_key: str, attempt: int, enqueue_only: bool) -> None:
    settings = get_settings()
    queue = ReconcileQueueClient(settings=settings)
    try:
        if enqueue_only:
            result = await queue.enqueue(sub_account_id, group_key, attempt)
            print(f"queued={result.queued} deduped={result.deduped} task_name={result.task_name}")
            return
        async with PlatformClient(settings=settings) as client:
            worker = ReconcileWorker(
                SessionLocal,
                TokenResolver(SessionLocal, client, settings),
                queue,
                settings,
            )
            outcome = await worker.run(sub_account_id, group_key, attempt)
        print(f"status={outcome.status.value} attempt={outcome.attempt} count={outcome.count}")
    finally:
        await queue.aclose()


def main() -> None:
    # Re-run or re-enqueue one reconcile group, e.g. after a token reconnect.
    parser = argparse.ArgumentParser(description="Reconcile one record group against the platform")
    parser.add_argument("sub_account_id")
    parser.add_argument("group_key")
    parser.add_argument("--attempt", type=int, default=0)
    parser.add_argument("--enqueue-only", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.sub_account_id, args.group_key, args.attempt, args.enqueue_only))


if __name__ == "__main__":
    main()
