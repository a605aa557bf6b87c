from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from crmbridge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmbridge.apps.api.response import SuccessEnvelope, success_response
from crmbridge.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    queue_backend: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", queue_backend=get_settings().reconcile_queue_backend)
    return success_response(request=request, data=payload)
