"""Typed broker exceptions mapped to HTTP status codes.

Services raise these; the exception handler registered in ``main`` turns
them into a JSON error body. Routes never build error responses by hand.

Categories for record store failures:
- AUTH: token invalid/expired, needs reauth
- PERMISSION: object or field level access denied
- QUERY: malformed query or missing object/field
- CREATE: record rejected on insert
- CONNECTION: network failure or upstream outage, retry
- UNKNOWN: unclassified error
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class BrokerError(Exception):
    """Base exception for all broker errors."""

    status_code = 500
    error_type = "INTERNAL_ERROR"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(BrokerError):
    """Malformed context id, form id or request body."""

    status_code = 400
    error_type = "VALIDATION_ERROR"


class NotFoundError(BrokerError):
    """Form definition or session is absent."""

    status_code = 404
    error_type = "NOT_FOUND"

    def __init__(self, resource_type: str, identifier: str, **kwargs: Any) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found", **kwargs)
        self.resource_type = resource_type
        self.identifier = identifier


class ConfigurationError(BrokerError):
    """Mapping configuration is unparseable or produces nothing to create."""

    status_code = 400
    error_type = "CONFIGURATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class UpstreamConnectionError(BrokerError):
    """No usable record store handle, or the record store could not be reached."""

    status_code = 503
    error_type = "CONNECTION_ERROR"
    retryable = True


class ApiErrorCategory(str, Enum):
    """Classification of record store API errors."""

    AUTH = "auth"
    PERMISSION = "permission"
    QUERY = "query"
    CREATE = "create"
    CONNECTION = "connection"
    UNKNOWN = "unknown"


class ExternalApiError(BrokerError):
    """The record store answered with an error."""

    status_code = 502
    error_type = "EXTERNAL_API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        category: ApiErrorCategory = ApiErrorCategory.UNKNOWN,
        error_code: str | None = None,
        upstream_status: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.category = category
        self.error_code = error_code
        self.upstream_status = upstream_status

    @property
    def error_type_name(self) -> str:
        return f"EXTERNAL_{self.category.value.upper()}_ERROR"


class InternalError(BrokerError):
    """Unexpected failure inside the broker."""


AUTH_ERROR_CODES = {"INVALID_LOGIN", "INVALID_CLIENT", "INVALID_CLIENT_ID", "INVALID_SESSION_ID"}
PERMISSION_ERROR_CODES = {"INSUFFICIENT_ACCESS", "INSUFFICIENT_ACCESS_OR_READONLY", "INVALID_FIELD"}
QUERY_ERROR_CODES = {"MALFORMED_QUERY", "INVALID_QUERY_LOCATOR", "INVALID_TYPE"}
CREATE_ERROR_CODES = {"REQUIRED_FIELD_MISSING", "INVALID_FIELD_FOR_INSERT", "DUPLICATE_VALUE"}


def classify_api_error(
    error_code: str | None,
    status_code: int | None,
    operation: str,
) -> ApiErrorCategory:
    """
    Classify a record store error for appropriate handling.

    Args:
        error_code: errorCode from the record store error body, if any
        status_code: HTTP status of the failed response, if any
        operation: name of the attempted operation (describe/query/create)

    Returns:
        ApiErrorCategory for the error
    """
    code = (error_code or "").upper()

    if code in AUTH_ERROR_CODES or status_code == 401:
        return ApiErrorCategory.AUTH

    if code in PERMISSION_ERROR_CODES or status_code == 403:
        return ApiErrorCategory.PERMISSION

    if status_code in (502, 503, 504):
        return ApiErrorCategory.CONNECTION

    if "query" in operation or code in QUERY_ERROR_CODES:
        return ApiErrorCategory.QUERY

    if "create" in operation or code in CREATE_ERROR_CODES:
        return ApiErrorCategory.CREATE

    return ApiErrorCategory.UNKNOWN
