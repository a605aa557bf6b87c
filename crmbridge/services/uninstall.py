from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import update

from crmbridge.domain.models import SubAccount
from crmbridge.persistence.batching import BatchWriter
from crmbridge.persistence.db import SessionFactory, utc_now
from crmbridge.persistence.repos.accounts import (
    get_sub_account,
    list_sub_account_ids,
    mark_sub_account_uninstalled,
)
from crmbridge.services.cascade import AccountCascadeResult, CascadeDeleteEngine, CascadeResult
from crmbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_UNINSTALL_TYPES = {"UNINSTALL"}
_UNINSTALL_EVENTS = {"AppUninstall"}


@dataclass(frozen=True)
class UninstallEvent:
    account_id: str | None
    sub_account_id: str | None


@dataclass(frozen=True)
class UninstallResult:
    action: str
    account_id: str | None = None
    sub_account_id: str | None = None
    sub_accounts_marked: int = 0
    sub_account_cascade: CascadeResult | None = None
    account_cascade: AccountCascadeResult | None = None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_uninstall_event(payload: dict[str, Any]) -> UninstallEvent | None:
    # Two payload shapes: {"type": "UNINSTALL", ...} and {"event": "AppUninstall", ...}.
    if payload.get("type") not in _UNINSTALL_TYPES and payload.get("event") not in _UNINSTALL_EVENTS:
        return None
    return UninstallEvent(
        account_id=_clean(payload.get("companyId")),
        sub_account_id=_clean(payload.get("locationId")),
    )


async def _mark_account_uninstalled(session_factory: SessionFactory, account_id: str, page_size: int) -> int:
    marked = 0
    after: str | None = None
    async with session_factory() as session:
        writer = BatchWriter(session)
        while True:
            ids = await list_sub_account_ids(session, account_id, after=after, limit=page_size)
            if not ids:
                break
            for sub_account_id in ids:
                await writer.add(
                    update(SubAccount)
                    .where(SubAccount.id == sub_account_id)
                    .values(installed=False, updated_at=utc_now())
                )
                marked += 1
            after = ids[-1]
            if len(ids) < page_size:
                break
        await writer.flush()
    return marked


async def process_uninstall(
    session_factory: SessionFactory,
    cascade: CascadeDeleteEngine,
    event: UninstallEvent,
) -> UninstallResult:
    """Mark uninstalled sub-accounts, then cascade when the owner is known."""
    increment_counter("uninstall_events_total")
    if event.sub_account_id:
        sub_account_id = event.sub_account_id
        async with session_factory() as session:
            sub_account = await get_sub_account(session, sub_account_id)
            owner_id = event.account_id or (sub_account.account_id if sub_account else None)
            await mark_sub_account_uninstalled(session, sub_account_id)
            await session.commit()
        if not owner_id:
            # No owner: mark only, nothing is deleted.
            logger.info(
                "uninstall_owner_unknown sub_account_id=%s action=marked_only",
                sub_account_id,
            )
            return UninstallResult(action="marked", sub_account_id=sub_account_id, sub_accounts_marked=1)
        cascade_result = await cascade.delete_sub_account(sub_account_id, owner_id)
        logger.info("uninstall_sub_account sub_account_id=%s account_id=%s", sub_account_id, owner_id)
        return UninstallResult(
            action="sub_account_deleted",
            account_id=owner_id,
            sub_account_id=sub_account_id,
            sub_accounts_marked=1,
            sub_account_cascade=cascade_result,
        )

    if event.account_id:
        account_id = event.account_id
        marked = await _mark_account_uninstalled(session_factory, account_id, cascade.page_size)
        account_result = await cascade.delete_account(account_id)
        logger.info(
            "uninstall_account account_id=%s marked=%s sub_accounts_deleted=%s failures=%s",
            account_id,
            marked,
            len(account_result.sub_accounts),
            len(account_result.failures),
        )
        return UninstallResult(
            action="account_deleted",
            account_id=account_id,
            sub_accounts_marked=marked,
            account_cascade=account_result,
        )

    logger.info("uninstall_missing_identifiers")
    return UninstallResult(action="ignored")
