"""Record store REST client (Salesforce-style sObject API over httpx).

Any object with ``describe``, ``query`` and ``create`` coroutines satisfies
``RecordStoreClient``; the saga and the form definition lookup only depend on
that protocol.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from form_broker.core.config import settings
from form_broker.core.errors import (
    ExternalApiError,
    UpstreamConnectionError,
    classify_api_error,
)
from form_broker.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

DUPLICATE_ERROR_CODES = {"DUPLICATE_VALUE", "DUPLICATE_EXTERNAL_ID"}


@dataclass
class CreateResult:
    """Outcome of one record insert."""

    success: bool
    id: str | None = None
    errors: list[str] = field(default_factory=list)
    error_codes: list[str] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        """True when the insert hit a uniqueness constraint."""
        if any(code in DUPLICATE_ERROR_CODES for code in self.error_codes):
            return True
        return any("duplicate" in message.lower() for message in self.errors)

    @property
    def error_message(self) -> str:
        return ", ".join(self.errors) or "Unknown error"


class RecordStoreClient(Protocol):
    instance_url: str

    async def describe(self, object_type: str) -> list[dict[str, Any]]: ...

    async def query(self, soql: str) -> list[dict[str, Any]]: ...

    async def create(self, object_type: str, record: dict[str, Any]) -> CreateResult: ...


def soql_quote(value: str) -> str:
    """Quote a literal for a SOQL WHERE clause."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _first_error(body: Any) -> tuple[str | None, str | None]:
    """(errorCode, message) from a record store error body."""
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return body[0].get("errorCode"), body[0].get("message")
    if isinstance(body, dict):
        return body.get("errorCode") or body.get("error"), body.get("message")
    return None, None


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class SalesforceClient:
    """Authenticated handle to one record store instance."""

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        *,
        http_client: httpx.AsyncClient,
        api_version: str | None = None,
    ) -> None:
        self.instance_url = instance_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version or settings.SALESFORCE_API_VERSION
        self._http = http_client

    @property
    def base_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    def _raise_for_error(self, response: httpx.Response, operation: str) -> None:
        if response.status_code < 400:
            return
        error_code, message = _first_error(_safe_json(response))
        category = classify_api_error(error_code, response.status_code, operation)
        logger.warning(
            "Record store %s failed with status %s (%s)",
            operation,
            response.status_code,
            error_code or "no error code",
        )
        raise ExternalApiError(
            message or f"Record store {operation} failed with status {response.status_code}",
            category=category,
            error_code=error_code,
            upstream_status=response.status_code,
        )

    async def describe(self, object_type: str) -> list[dict[str, Any]]:
        """Field metadata for an object type."""
        url = f"{self.base_url}/sobjects/{object_type}/describe"
        response = await request_with_retries(
            lambda: self._http.get(url, headers=self._headers())
        )
        self._raise_for_error(response, "describe")
        return (response.json() or {}).get("fields", [])

    async def query(self, soql: str) -> list[dict[str, Any]]:
        """Run a SOQL query, following ``nextRecordsUrl`` until done."""
        records: list[dict[str, Any]] = []
        url = f"{self.base_url}/query"
        params: dict[str, str] | None = {"q": soql}

        while True:
            response = await request_with_retries(
                lambda url=url, params=params: self._http.get(
                    url, params=params, headers=self._headers()
                )
            )
            self._raise_for_error(response, "query")
            body = response.json() or {}
            records.extend(body.get("records", []))
            next_url = body.get("nextRecordsUrl")
            if body.get("done", True) or not next_url:
                break
            url = f"{self.instance_url}{next_url}"
            params = None

        return records

    async def create(self, object_type: str, record: dict[str, Any]) -> CreateResult:
        """
        Insert one record. Never retried: a lost response may mean the
        record already exists.

        Field-level rejections (HTTP 400) come back as ``success=False``;
        auth, permission and upstream failures raise ExternalApiError.
        """
        url = f"{self.base_url}/sobjects/{object_type}/"
        try:
            response = await self._http.post(url, json=record, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise UpstreamConnectionError(
                f"Record store create timed out for {object_type}"
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamConnectionError(
                f"Record store create failed for {object_type}: {type(exc).__name__}"
            ) from exc

        body = _safe_json(response)
        if response.status_code == 400 and isinstance(body, list):
            return CreateResult(
                success=False,
                errors=[
                    str(err.get("message") or err.get("errorCode") or err)
                    for err in body
                    if isinstance(err, dict)
                ],
                error_codes=[
                    err["errorCode"] for err in body if isinstance(err, dict) and err.get("errorCode")
                ],
            )

        self._raise_for_error(response, "create")
        body = body or {}
        errors = [
            e if isinstance(e, str) else str(e.get("message") or e) for e in body.get("errors") or []
        ]
        return CreateResult(success=bool(body.get("success")), id=body.get("id"), errors=errors)
