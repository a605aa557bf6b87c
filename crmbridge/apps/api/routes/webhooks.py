from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from crmbridge.apps.api.deps import (
    get_cascade_engine,
    get_queue_client,
    get_session_factory,
    read_json_object,
)
from crmbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmbridge.apps.api.response import success_response
from crmbridge.persistence.db import SessionFactory
from crmbridge.services.cascade import CascadeDeleteEngine
from crmbridge.services.outcomes import report_soft_failure
from crmbridge.services.reconcile.queue import ReconcileQueueClient
from crmbridge.services.reconcile.record_delete import process_record_delete
from crmbridge.services.uninstall import parse_uninstall_event, process_uninstall

router = APIRouter(prefix="/webhooks/platform", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("/uninstall")
async def uninstall_webhook(
    request: Request,
    session_factory: SessionFactory = Depends(get_session_factory),
    cascade: CascadeDeleteEngine = Depends(get_cascade_engine),
) -> dict:
    payload = await read_json_object(request)
    event = parse_uninstall_event(payload)
    if event is None:
        return success_response(request=request, data={"ok": True, "ignored": True})
    # Always 200 once the body parses; the marketplace retries non-2xx forever.
    try:
        result = await process_uninstall(session_factory, cascade, event)
    except Exception as exc:  # noqa: BLE001 - reported and surfaced as soft_error
        report_soft_failure(
            "uninstall_webhook",
            exc,
            account_id=event.account_id,
            sub_account_id=event.sub_account_id,
        )
        return success_response(request=request, data={"ok": True, "soft_error": True})
    data: dict[str, Any] = {
        "ok": True,
        "action": result.action,
        "account_id": result.account_id,
        "sub_account_id": result.sub_account_id,
        "sub_accounts_marked": result.sub_accounts_marked,
    }
    if result.account_cascade is not None:
        data["cascade_failures"] = len(result.account_cascade.failures)
    return success_response(request=request, data=data)


@router.post("/record-delete")
async def record_delete_webhook(
    request: Request,
    session_factory: SessionFactory = Depends(get_session_factory),
    queue: ReconcileQueueClient = Depends(get_queue_client),
) -> dict:
    payload = await read_json_object(request)
    sub_account_id = _first_str(payload, "subAccountId", "locationId")
    external_id = _first_str(payload, "externalId", "contactId", "id")
    if not sub_account_id or not external_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "MISSING_IDENTIFIERS",
                "message": "Missing sub-account id or record id",
            },
        )
    try:
        result = await process_record_delete(
            session_factory,
            queue,
            sub_account_id=sub_account_id,
            external_id=external_id,
        )
    except Exception as exc:  # noqa: BLE001 - reported and surfaced as soft_error
        report_soft_failure(
            "record_delete_webhook",
            exc,
            sub_account_id=sub_account_id,
            external_id=external_id,
        )
        return success_response(request=request, data={"ok": True, "soft_error": True})
    return success_response(request=request, data={"ok": True, **asdict(result)})
