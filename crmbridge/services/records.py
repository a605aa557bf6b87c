from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from crmbridge.domain.models import CachedRecord, LocalUser, MapMarker, RecordReference, SubAccount
from crmbridge.persistence.db import utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedRecord:
    external_ids: list[str]
    group_key: str | None
    geohash: str | None
    created_by_user_id: str | None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def extract_external_ids(payload: dict[str, Any]) -> list[str]:
    """Union every historical shape of the external reference.

    Records written at different times carry the id nested (``ghl.contactId``),
    flat (``contactId``) or as an array (``ghl.contactIds``); a record may carry
    more than one shape at once.
    """
    nested = _section(payload, "ghl")
    candidates: list[Any] = [nested.get("contactId"), payload.get("contactId")]
    array = nested.get("contactIds")
    if isinstance(array, list):
        candidates.extend(array)
    ids: list[str] = []
    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned and cleaned not in ids:
            ids.append(cleaned)
    return ids


def extract_group_key(payload: dict[str, Any]) -> str | None:
    return _clean(_section(payload, "skiptraceData").get("groupId")) or _clean(payload.get("groupKey"))


def parse_record_payload(payload: dict[str, Any]) -> ParsedRecord:
    return ParsedRecord(
        external_ids=extract_external_ids(payload),
        group_key=extract_group_key(payload),
        geohash=_clean(payload.get("geohash")),
        created_by_user_id=_clean(payload.get("createdByUserId")),
    )


async def ingest_record(
    session: AsyncSession,
    *,
    sub_account_id: str,
    record_id: str,
    payload: dict[str, Any],
) -> CachedRecord:
    """Store a raw record with its canonical references, counters and marker.

    Re-ingesting an existing record refreshes its payload and references
    without counting it twice.
    """
    parsed = parse_record_payload(payload)
    record = await session.get(CachedRecord, record_id)
    is_new = record is None
    if record is None:
        record = CachedRecord(
            id=record_id,
            sub_account_id=sub_account_id,
            reconcile_pending=False,
        )
        session.add(record)
    record.group_key = parsed.group_key
    record.geohash = parsed.geohash
    record.created_by_user_id = parsed.created_by_user_id
    record.payload = payload
    record.updated_at = utc_now()
    await session.flush()

    await session.execute(delete(RecordReference).where(RecordReference.record_id == record_id))
    for external_id in parsed.external_ids:
        session.add(
            RecordReference(record_id=record_id, external_id=external_id, sub_account_id=sub_account_id)
        )

    if is_new:
        sub_account = await session.get(SubAccount, sub_account_id)
        if sub_account is not None:
            sub_account.active_record_count = int(sub_account.active_record_count or 0) + 1
        if parsed.created_by_user_id:
            user = await session.get(LocalUser, parsed.created_by_user_id)
            if user is not None:
                user.active_record_count = int(user.active_record_count or 0) + 1

    if parsed.geohash:
        marker = await session.get(MapMarker, (sub_account_id, parsed.geohash))
        if marker is None:
            session.add(MapMarker(sub_account_id=sub_account_id, geohash=parsed.geohash))
        else:
            marker.updated_at = utc_now()

    await session.commit()
    logger.info(
        "record_ingested sub_account_id=%s record_id=%s external_ids=%s group_key=%s new=%s",
        sub_account_id,
        record_id,
        len(parsed.external_ids),
        parsed.group_key,
        is_new,
    )
    return record
