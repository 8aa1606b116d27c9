"""OAuth router - authorization code flow against the record store."""

import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from form_broker.core.config import settings
from form_broker.core.deps import get_token_manager
from form_broker.core.errors import ValidationError
from form_broker.services import oauth_service
from form_broker.services.token_service import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


@router.get("/authorize")
async def authorize(
    context_id: str = Query(settings.SERVICE_ACCOUNT_CONTEXT_ID, alias="contextId"),
) -> RedirectResponse:
    """Redirect to the record store login; the context id returns as ``state``."""
    return RedirectResponse(oauth_service.build_authorize_url(context_id), status_code=302)


@router.get("/callback")
async def callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
    token_manager: TokenManager = Depends(get_token_manager),
) -> dict[str, Any]:
    """Exchange the authorization code and store a token session."""
    if error:
        raise ValidationError(
            "Authorization was denied or failed",
            context={"error": error, "description": error_description},
        )
    if not code:
        raise ValidationError("No authorization code in callback")

    token_payload = await oauth_service.exchange_code(code)
    context_id = state or f"oauth_{int(time.time() * 1000)}"
    session_id = token_manager.store_tokens(context_id, token_payload)
    is_service_account = context_id == settings.SERVICE_ACCOUNT_CONTEXT_ID
    logger.info(
        "OAuth completed for %s", "service account" if is_service_account else "user session"
    )
    return {
        "success": True,
        "contextId": context_id,
        "sessionId": session_id,
        "serviceAccount": is_service_account,
    }
