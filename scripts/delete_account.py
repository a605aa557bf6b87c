from __future__ import annotations

import argparse
import asyncio

from crmbridge.core.logging import configure_logging
from crmbridge.persistence.db import SessionLocal
from crmbridge.services.cascade import CascadeDeleteEngine


async def _run(account_id: str | None, sub_account_id: str | None) -> None:
    engine = CascadeDeleteEngine(SessionLocal)
    if sub_account_id:
        result = await engine.delete_sub_account(sub_account_id, account_id)
        print(
            f"sub_account_id={result.sub_account_id} memberships={result.memberships_deleted} "
            f"orphans={result.orphan_users_deleted} mirrors={result.mirrors_deleted} "
            f"records={result.records_deleted} batches={result.batches}"
        )
        return
    assert account_id is not None
    account_result = await engine.delete_account(account_id)
    print(
        f"account_id={account_id} sub_accounts={len(account_result.sub_accounts)} "
        f"failures={len(account_result.failures)} account_deleted={account_result.account_deleted}"
    )
    for failure in account_result.failures:
        print(f"failed sub_account_id={failure.context.get('sub_account_id')} error={failure.message}")


def main() -> None:
    # Operator cascade for tenants whose uninstall webhook never arrived.
    parser = argparse.ArgumentParser(description="Cascade-delete an account or one sub-account")
    parser.add_argument("--account-id", default=None)
    parser.add_argument("--sub-account-id", default=None)
    args = parser.parse_args()
    if not args.account_id and not args.sub_account_id:
        parser.error("one of --account-id or --sub-account-id is required")
    configure_logging()
    asyncio.run(_run(args.account_id, args.sub_account_id))


if __name__ == "__main__":
    main()
