from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from crmbridge.apps.api.deps import get_app_settings, get_install_handler
from crmbridge.apps.api.openapi import OAUTH_ERROR_RESPONSES
from crmbridge.core.config import Settings
from crmbridge.services.install import InstallHandler, verify_oauth_state

router = APIRouter(prefix="/oauth", tags=["oauth"], responses=OAUTH_ERROR_RESPONSES)


@router.get("/callback", response_class=RedirectResponse, status_code=status.HTTP_302_FOUND)
async def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    user_type: str | None = Query(default=None),
    user_type_camel: str | None = Query(default=None, alias="userType"),
    handler: InstallHandler = Depends(get_install_handler),
    settings: Settings = Depends(get_app_settings),
) -> RedirectResponse:
    # InvalidStateError and InstallExchangeError map to 400 and 502 via the error handlers.
    parsed_state = verify_oauth_state(
        state,
        request.cookies.get(settings.oauth_state_cookie),
        require_state=settings.oauth_require_state,
    )
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_CODE", "message": "Missing authorization code"},
        )
    outcome = await handler.handle_callback(
        code,
        state=parsed_state,
        user_type=user_type or user_type_camel,
    )
    response = RedirectResponse(outcome.redirect_url or "/", status_code=status.HTTP_302_FOUND)
    if parsed_state is not None:
        response.delete_cookie(settings.oauth_state_cookie)
    return response
