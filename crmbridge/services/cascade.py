from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy import delete, select

from crmbridge.core.config import Settings, get_settings
from crmbridge.domain.models import (
    Account,
    AccountSubAccount,
    CachedRecord,
    LocalUser,
    MapMarker,
    Membership,
    RecordReference,
    ReconcileGroup,
    SubAccount,
)
from crmbridge.persistence.batching import BatchWriter
from crmbridge.persistence.db import SessionFactory
from crmbridge.persistence.repos.accounts import list_sub_account_ids
from crmbridge.persistence.repos.memberships import list_membership_user_ids, list_orphan_user_ids
from crmbridge.persistence.repos.records import list_record_ids
from crmbridge.services.outcomes import SoftFailure, report_soft_failure
from crmbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    sub_account_id: str
    account_id: str | None
    memberships_deleted: int = 0
    users_deleted: int = 0
    orphan_users_deleted: int = 0
    mirrors_deleted: int = 0
    records_deleted: int = 0
    sub_account_deleted: bool = False
    # Committed batch sizes, each at most the configured cap.
    batches: list[int] = field(default_factory=list)


@dataclass
class AccountCascadeResult:
    account_id: str
    sub_accounts: list[CascadeResult] = field(default_factory=list)
    failures: list[SoftFailure] = field(default_factory=list)
    mirrors_deleted: int = 0
    account_deleted: bool = False


class CascadeDeleteEngine:
    """Delete a sub-account or account and everything hanging off it.

    Writes go through a ``BatchWriter`` so no transaction exceeds the batch
    cap. Every step deletes by key, which makes re-running a partially
    completed cascade safe.
    """

    def __init__(self, session_factory: SessionFactory, settings: Settings | None = None) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    @property
    def page_size(self) -> int:
        return max(1, int(self._settings.cascade_page_size))

    async def delete_sub_account(
        self,
        sub_account_id: str,
        account_id: str | None = None,
    ) -> CascadeResult:
        result = CascadeResult(sub_account_id=sub_account_id, account_id=account_id)
        async with self._session_factory() as session:
            writer = BatchWriter(
                session,
                limit=self._settings.effective_batch_limit,
                retries=self._settings.cascade_batch_retries,
            )
            sub_account = await session.get(SubAccount, sub_account_id)
            owner_id = account_id or (sub_account.account_id if sub_account else None)
            result.account_id = owner_id

            # (a) memberships and the users they point at.
            after: str | None = None
            while True:
                user_ids = await list_membership_user_ids(
                    session, sub_account_id, after=after, limit=self.page_size
                )
                if not user_ids:
                    break
                for user_id in user_ids:
                    await writer.add(
                        delete(Membership).where(
                            Membership.sub_account_id == sub_account_id,
                            Membership.user_id == user_id,
                        )
                    )
                    await writer.add(delete(LocalUser).where(LocalUser.id == user_id))
                    result.memberships_deleted += 1
                    result.users_deleted += 1
                after = user_ids[-1]
                if len(user_ids) < self.page_size:
                    break
            await writer.flush()

            # (b) users that reference the sub-account without a membership row.
            after = None
            while True:
                orphan_ids = await list_orphan_user_ids(
                    session, sub_account_id, after=after, limit=self.page_size
                )
                if not orphan_ids:
                    break
                for user_id in orphan_ids:
                    await writer.add(delete(LocalUser).where(LocalUser.id == user_id))
                    result.orphan_users_deleted += 1
                after = orphan_ids[-1]
                if len(orphan_ids) < self.page_size:
                    break
            await writer.flush()

            # (c) parent mirror rows; every mirror when the owner is unknown.
            mirror_filter = [AccountSubAccount.sub_account_id == sub_account_id]
            if owner_id:
                mirror_filter.append(AccountSubAccount.account_id == owner_id)
            mirror_rows = await session.execute(select(AccountSubAccount.account_id).where(*mirror_filter))
            for mirror_account_id in mirror_rows.scalars().all():
                await writer.add(
                    delete(AccountSubAccount).where(
                        AccountSubAccount.account_id == mirror_account_id,
                        AccountSubAccount.sub_account_id == sub_account_id,
                    )
                )
                result.mirrors_deleted += 1

            # Dependent local data: cached records, references, markers, reconcile groups.
            after = None
            while True:
                record_ids = await list_record_ids(session, sub_account_id, after=after, limit=self.page_size)
                if not record_ids:
                    break
                for record_id in record_ids:
                    await writer.add(delete(RecordReference).where(RecordReference.record_id == record_id))
                    await writer.add(delete(CachedRecord).where(CachedRecord.id == record_id))
                    result.records_deleted += 1
                after = record_ids[-1]
                if len(record_ids) < self.page_size:
                    break
            await writer.add(delete(MapMarker).where(MapMarker.sub_account_id == sub_account_id))
            await writer.add(delete(ReconcileGroup).where(ReconcileGroup.sub_account_id == sub_account_id))

            # (d) the sub-account itself, last so a partial run can be resumed by id.
            await writer.add(delete(SubAccount).where(SubAccount.id == sub_account_id))
            await writer.flush()
            result.sub_account_deleted = sub_account is not None
            result.batches = list(writer.committed_batches)

        increment_counter("cascade_sub_account_deletes_total")
        logger.info(
            "cascade_sub_account_deleted sub_account_id=%s account_id=%s memberships=%s "
            "orphans=%s mirrors=%s records=%s batches=%s",
            sub_account_id,
            result.account_id,
            result.memberships_deleted,
            result.orphan_users_deleted,
            result.mirrors_deleted,
            result.records_deleted,
            len(result.batches),
        )
        return result

    async def delete_account(self, account_id: str) -> AccountCascadeResult:
        result = AccountCascadeResult(account_id=account_id)
        after: str | None = None
        while True:
            async with self._session_factory() as session:
                sub_account_ids = await list_sub_account_ids(
                    session, account_id, after=after, limit=self.page_size
                )
            if not sub_account_ids:
                break
            for sub_account_id in sub_account_ids:
                try:
                    result.sub_accounts.append(await self.delete_sub_account(sub_account_id, account_id))
                except Exception as exc:  # noqa: BLE001 - one sub-account never blocks the rest
                    result.failures.append(
                        report_soft_failure(
                            "cascade_sub_account",
                            exc,
                            account_id=account_id,
                            sub_account_id=sub_account_id,
                        )
                    )
            after = sub_account_ids[-1]
            if len(sub_account_ids) < self.page_size:
                break

        async with self._session_factory() as session:
            writer = BatchWriter(
                session,
                limit=self._settings.effective_batch_limit,
                retries=self._settings.cascade_batch_retries,
            )
            mirror_rows = await session.execute(
                select(AccountSubAccount.sub_account_id).where(AccountSubAccount.account_id == account_id)
            )
            for sub_account_id in mirror_rows.scalars().all():
                await writer.add(
                    delete(AccountSubAccount).where(
                        AccountSubAccount.account_id == account_id,
                        AccountSubAccount.sub_account_id == sub_account_id,
                    )
                )
                result.mirrors_deleted += 1
            account = await session.get(Account, account_id)
            await writer.add(delete(Account).where(Account.id == account_id))
            await writer.flush()
            result.account_deleted = account is not None

        increment_counter("cascade_account_deletes_total")
        logger.info(
            "cascade_account_deleted account_id=%s sub_accounts=%s failures=%s mirrors=%s",
            account_id,
            len(result.sub_accounts),
            len(result.failures),
            result.mirrors_deleted,
        )
        return result
