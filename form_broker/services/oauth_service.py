"""OAuth service for the record store (authorization code + refresh token flows)."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from form_broker.core.config import settings
from form_broker.core.errors import (
    ApiErrorCategory,
    ConfigurationError,
    ExternalApiError,
    UpstreamConnectionError,
)
from form_broker.services.http_service import build_async_client

logger = logging.getLogger(__name__)

OAUTH_SCOPES = "api refresh_token openid"

_INSTANCE_HOST_REWRITES = (
    (".my.salesforce-setup.com", ".my.salesforce.com"),
    (".my.site.com", ".my.salesforce.com"),
)


def normalize_instance_url(instance_url: str | None) -> str | None:
    """Rewrite setup/site domains to the API domain."""
    if not instance_url:
        return instance_url
    normalized = instance_url.rstrip("/")
    for source, target in _INSTANCE_HOST_REWRITES:
        normalized = normalized.replace(source, target)
    return normalized


def build_authorize_url(context_id: str) -> str:
    """Authorization URL; the context id rides along in ``state``."""
    if not settings.SALESFORCE_CLIENT_ID:
        raise ConfigurationError(
            "SALESFORCE_CLIENT_ID not configured", field="SALESFORCE_CLIENT_ID"
        )
    params = {
        "response_type": "code",
        "client_id": settings.SALESFORCE_CLIENT_ID,
        "redirect_uri": settings.SALESFORCE_REDIRECT_URI,
        "scope": OAUTH_SCOPES,
        "state": context_id,
    }
    return f"{settings.authorize_endpoint}?{urlencode(params)}"


async def _post_token_endpoint(data: dict[str, str], operation: str) -> dict[str, Any]:
    if not settings.oauth_configured:
        raise ConfigurationError(
            "Missing record store OAuth configuration",
            field="SALESFORCE_CLIENT_ID",
        )

    payload = {
        "client_id": settings.SALESFORCE_CLIENT_ID,
        "client_secret": settings.SALESFORCE_CLIENT_SECRET,
        **data,
    }
    try:
        async with build_async_client() as client:
            response = await client.post(settings.token_endpoint, data=payload)
    except httpx.TimeoutException as exc:
        raise UpstreamConnectionError(f"Token endpoint timeout during {operation}") from exc
    except httpx.RequestError as exc:
        raise UpstreamConnectionError(f"Token endpoint unreachable during {operation}") from exc

    try:
        body = response.json()
    except ValueError:
        body = {}

    if response.status_code != 200:
        error_code = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description") if isinstance(body, dict) else None
        logger.error(
            "Token %s failed with status %s (%s)", operation, response.status_code, error_code
        )
        raise ExternalApiError(
            f"Token {operation} failed: {error_code or description or 'Unknown error'}",
            category=ApiErrorCategory.AUTH,
            error_code=error_code,
            upstream_status=response.status_code,
        )
    return body


async def exchange_code(code: str) -> dict[str, Any]:
    """Exchange an authorization code for access/refresh tokens."""
    return await _post_token_endpoint(
        {
            "grant_type": "authorization_code",
            "redirect_uri": settings.SALESFORCE_REDIRECT_URI,
            "code": code,
        },
        "exchange",
    )


async def request_token_refresh(refresh_token: str) -> dict[str, Any]:
    """Trade a refresh token for a new access token."""
    return await _post_token_endpoint(
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        "refresh",
    )
