from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from crmbridge.apps.api.deps import get_session_factory, read_json_object, require_reconcile_token
from crmbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmbridge.apps.api.response import success_response
from crmbridge.persistence.db import SessionFactory
from crmbridge.services.records import ingest_record, parse_record_payload

router = APIRouter(prefix="/records", tags=["records"], responses=DEFAULT_ERROR_RESPONSES)


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("", dependencies=[Depends(require_reconcile_token)])
async def ingest_record_endpoint(
    request: Request,
    session_factory: SessionFactory = Depends(get_session_factory),
) -> dict:
    body = await read_json_object(request)
    sub_account_id = _first_str(body, "subAccountId", "locationId")
    record_id = _first_str(body, "recordId", "id")
    record = body.get("record")
    if not sub_account_id or not record_id or not isinstance(record, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "MISSING_IDENTIFIERS",
                "message": "Missing sub-account id, record id or record object",
            },
        )
    # References are parsed once here; reconcile and delete paths read only the stored rows.
    parsed = parse_record_payload(record)
    async with session_factory() as session:
        await ingest_record(session, sub_account_id=sub_account_id, record_id=record_id, payload=record)
    return success_response(
        request=request,
        data={
            "ok": True,
            "record_id": record_id,
            "sub_account_id": sub_account_id,
            "group_key": parsed.group_key,
            "external_ids": parsed.external_ids,
        },
    )
