from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.core.config import get_settings


logger = logging.getLogger(__name__)


class BatchWriter:
    """Accumulate write statements and commit them in capped transactions.

    Statements are buffered and executed together when the buffer reaches the
    cap, so at most ``limit`` writes are ever uncommitted. A batch that fails
    with a transient store error is rolled back and replayed up to ``retries``
    times; callers must only enqueue idempotent statements (deletes, absolute
    updates) when retries are enabled.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        limit: int | None = None,
        retries: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session = session
        self._limit = max(1, int(limit if limit is not None else settings.effective_batch_limit))
        self._retries = max(0, int(retries if retries is not None else settings.cascade_batch_retries))
        self._pending: list[Any] = []
        # Size of every committed batch, in commit order.
        self.committed_batches: list[int] = []

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def total_writes(self) -> int:
        return sum(self.committed_batches)

    async def add(self, statement: Any) -> None:
        self._pending.append(statement)
        if len(self._pending) >= self._limit:
            await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        batch = self._pending
        self._pending = []
        attempt = 0
        while True:
            try:
                for statement in batch:
                    await self._session.execute(statement)
                await self._session.commit()
                break
            except OperationalError as exc:
                await self._session.rollback()
                if attempt >= self._retries:
                    raise
                attempt += 1
                logger.warning(
                    "batch_commit_retry size=%s attempt=%s",
                    len(batch),
                    attempt,
                    exc_info=exc,
                )
        self.committed_batches.append(len(batch))
