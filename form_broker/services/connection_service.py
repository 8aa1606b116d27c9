"""Resolve an authenticated record store handle for a request.

Preference order:
1. The per-user OAuth session stored for the request's context id
2. The shared service account session (context id ``service_account``),
   initialised lazily on first use and kept for the process lifetime
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx

from form_broker.core.config import settings
from form_broker.core.errors import UpstreamConnectionError
from form_broker.services.http_service import build_async_client
from form_broker.services.oauth_service import normalize_instance_url
from form_broker.services.salesforce_client import RecordStoreClient, SalesforceClient
from form_broker.services.token_service import TokenManager
from form_broker.services.token_storage import TokenSession

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], RecordStoreClient]


class ConnectionProvider:
    def __init__(
        self,
        token_manager: TokenManager,
        *,
        http_client: httpx.AsyncClient | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.token_manager = token_manager
        self._http = http_client
        self._client_factory = client_factory
        self._service_client: RecordStoreClient | None = None
        self._service_lock = asyncio.Lock()

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = build_async_client()
        return self._http

    def _build_client(self, instance_url: str, access_token: str) -> RecordStoreClient:
        if self._client_factory is not None:
            return self._client_factory(instance_url, access_token)
        return SalesforceClient(instance_url, access_token, http_client=self._http_client())

    async def _client_for_session(self, session: TokenSession) -> RecordStoreClient | None:
        access_token = await self.token_manager.get_valid_access_token(session.session_id)
        if not access_token:
            return None

        instance_url = normalize_instance_url(session.token_data.instance_url)
        if not instance_url:
            raise UpstreamConnectionError(
                "Record store connection missing instance URL",
                context={"contextId": session.context_id},
            )
        return self._build_client(instance_url, access_token)

    async def resolve(self, context_id: str | None = None) -> RecordStoreClient:
        """
        Return an authenticated client.

        Raises:
            UpstreamConnectionError: no usable session, or the session has no
                instance URL
        """
        if context_id and context_id != settings.SERVICE_ACCOUNT_CONTEXT_ID:
            session = self.token_manager.get_session_by_context_id(context_id)
            if session:
                client = await self._client_for_session(session)
                if client is not None:
                    logger.info("Using user OAuth session for context %s", context_id)
                    return client

        return await self._service_account_client()

    async def _service_account_client(self) -> RecordStoreClient:
        async with self._service_lock:
            session = self.token_manager.get_session_by_context_id(
                settings.SERVICE_ACCOUNT_CONTEXT_ID
            )
            if not session:
                self._service_client = None
                raise UpstreamConnectionError(
                    "No record store connection available. Complete OAuth once with "
                    f"contextId={settings.SERVICE_ACCOUNT_CONTEXT_ID} to create a service account session."
                )

            access_token = await self.token_manager.get_valid_access_token(session.session_id)
            if not access_token:
                self._service_client = None
                raise UpstreamConnectionError(
                    "Service account session could not be refreshed; re-authentication required"
                )

            instance_url = normalize_instance_url(session.token_data.instance_url)
            if not instance_url:
                raise UpstreamConnectionError("Record store connection missing instance URL")

            cached = self._service_client
            if cached is not None and cached.instance_url == instance_url:
                if isinstance(cached, SalesforceClient):
                    cached.access_token = access_token
                return cached

            logger.info("Initialised service account connection")
            self._service_client = self._build_client(instance_url, access_token)
            return self._service_client

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
