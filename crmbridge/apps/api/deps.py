from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from crmbridge.core.config import Settings, get_settings
from crmbridge.persistence.db import SessionFactory, SessionLocal
from crmbridge.services.cascade import CascadeDeleteEngine
from crmbridge.services.install import InstallHandler
from crmbridge.services.platform.client import PlatformClient
from crmbridge.services.reconcile.queue import ReconcileQueueClient
from crmbridge.services.reconcile.worker import ReconcileWorker
from crmbridge.services.tokens.resolver import TokenResolver


def get_app_settings() -> Settings:
    return get_settings()


def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_platform_client(request: Request) -> PlatformClient:
    # One shared client per app; closed by the lifespan handler.
    client = getattr(request.app.state, "platform_client", None)
    if client is None:
        client = PlatformClient()
        request.app.state.platform_client = client
    return client


def get_queue_client(request: Request) -> ReconcileQueueClient:
    queue = getattr(request.app.state, "queue_client", None)
    if queue is None:
        queue = ReconcileQueueClient()
        request.app.state.queue_client = queue
    return queue


def get_token_resolver(
    session_factory: SessionFactory = Depends(get_session_factory),
    client: PlatformClient = Depends(get_platform_client),
    settings: Settings = Depends(get_app_settings),
) -> TokenResolver:
    return TokenResolver(session_factory, client, settings)


def get_cascade_engine(
    session_factory: SessionFactory = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> CascadeDeleteEngine:
    return CascadeDeleteEngine(session_factory, settings)


def get_install_handler(
    session_factory: SessionFactory = Depends(get_session_factory),
    client: PlatformClient = Depends(get_platform_client),
    settings: Settings = Depends(get_app_settings),
) -> InstallHandler:
    return InstallHandler(session_factory, client, settings)


def get_reconcile_worker(
    session_factory: SessionFactory = Depends(get_session_factory),
    resolver: TokenResolver = Depends(get_token_resolver),
    queue: ReconcileQueueClient = Depends(get_queue_client),
    settings: Settings = Depends(get_app_settings),
) -> ReconcileWorker:
    return ReconcileWorker(session_factory, resolver, queue, settings)


async def require_reconcile_token(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    # The guard is active only when a shared secret is configured.
    expected = (settings.reconcile_token or "").strip()
    if not expected:
        return
    presented = request.headers.get(settings.reconcile_token_header) or ""
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "RECONCILE_UNAUTHORIZED", "message": "Invalid reconcile token"},
        )


async def read_json_object(request: Request) -> dict[str, Any]:
    # Webhook and task bodies are parsed by hand so malformed JSON maps to INVALID_JSON.
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_JSON", "message": "Request body is not valid JSON"},
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_JSON", "message": "Request body must be a JSON object"},
        )
    return payload
