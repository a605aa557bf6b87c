from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from crmbridge.apps.api.deps import get_reconcile_worker, read_json_object, require_reconcile_token
from crmbridge.apps.api.openapi import TASK_ERROR_RESPONSES
from crmbridge.apps.api.response import success_response
from crmbridge.services.reconcile.queue import ReconcileTaskPayload
from crmbridge.services.reconcile.worker import ReconcileWorker

router = APIRouter(prefix="/tasks", tags=["tasks"], responses=TASK_ERROR_RESPONSES)


@router.post("/reconcile", dependencies=[Depends(require_reconcile_token)])
async def reconcile_task(
    request: Request,
    worker: ReconcileWorker = Depends(get_reconcile_worker),
) -> dict:
    body = await read_json_object(request)
    try:
        payload = ReconcileTaskPayload.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "MISSING_IDENTIFIERS",
                "message": "Missing subAccountId or groupKey",
            },
        ) from exc
    # ReconcileAttemptError maps to 503 so the queue redelivers this attempt.
    outcome = await worker.run(payload.sub_account_id, payload.group_key, payload.attempt)
    data = {
        "ok": True,
        "status": outcome.status.value,
        "sub_account_id": outcome.sub_account_id,
        "group_key": outcome.group_key,
        "attempt": outcome.attempt,
        "count": outcome.count,
    }
    if outcome.cleanup is not None:
        data["records_deleted"] = outcome.cleanup.records_deleted
    if outcome.enqueue is not None:
        data["requeue"] = {
            "queued": outcome.enqueue.queued,
            "deduped": outcome.enqueue.deduped,
            "task_name": outcome.enqueue.task_name,
        }
    return success_response(request=request, data=data)
