from __future__ import annotations

from contextlib import asynccontextmanager
import json
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmbridge.apps.api.errors import (
    bridge_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from crmbridge.apps.api.response import API_VERSION, is_versioned_request
from crmbridge.apps.api.routes.health import router as health_router
from crmbridge.apps.api.routes.oauth import router as oauth_router
from crmbridge.apps.api.routes.records import router as records_router
from crmbridge.apps.api.routes.tasks import router as tasks_router
from crmbridge.apps.api.routes.webhooks import router as webhooks_router
from crmbridge.core.config import get_settings
from crmbridge.core.errors import BridgeError
from crmbridge.core.logging import configure_logging
from crmbridge.services.telemetry import record_request


_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
    "/v1/redoc",
)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Close the shared outbound clients created lazily by the dependency providers.
    for attr in ("platform_client", "queue_client"):
        client = getattr(app.state, attr, None)
        if client is not None:
            await client.aclose()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        # Wrap bare JSON bodies from versioned routes in the success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                is_enveloped = (
                    isinstance(payload, dict)
                    and "data" in payload
                    and isinstance(payload.get("meta"), dict)
                    and payload["meta"].get("api_version") == API_VERSION
                )
                if payload is not None and not is_enveloped:
                    wrapped = JSONResponse(
                        content={
                            "data": payload,
                            "meta": {"request_id": request_id, "api_version": API_VERSION},
                        },
                        status_code=response.status_code,
                    )
                    for key, value in response.headers.items():
                        if key.lower() in {"content-length", "content-type"}:
                            continue
                        wrapped.headers[key] = value
                    response = wrapped
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(BridgeError)
    async def _bridge_exception_handler(request: Request, exc: BridgeError):
        return await bridge_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # OAuth install callback; the redirect URI registered with the marketplace.
    app.include_router(oauth_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(records_router, prefix=f"/{API_VERSION}")
    # Queue-delivered reconcile attempts.
    app.include_router(tasks_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
