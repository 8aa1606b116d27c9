"""Audit recorder - append-only request and submission logs for diagnostics.

Security guidelines:
- NEVER log secrets (tokens, client secrets)
- Request logs carry ids and paths only, never bodies
- IP: Trust X-Forwarded-For only behind a load balancer

Writes run in a worker thread and never raise into the request path; a
failed write is logged and dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import anyio
from fastapi import Request
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from form_broker.core.config import settings
from form_broker.db.models import ApiLog, SubmissionLog

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def get_client_ip(request: Request | None) -> str | None:
    """
    Extract client IP from request.

    Only trusts X-Forwarded-For when TRUST_PROXY_HEADERS=True (behind reverse proxy).
    """
    if not request:
        return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return None


@dataclass
class ApiRequestEntry:
    method: str
    path: str
    status_code: int | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    context_id: str | None = None
    form_id: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass
class SubmissionEntry:
    form_id: str
    success: bool
    context_id: str | None = None
    tracking_id: str | None = None
    business_record_ids: list[dict[str, str]] | None = None
    relationship_ids: list[str] | None = None
    form_data: dict[str, Any] | None = None
    mapping_rules: dict[str, Any] | None = None
    is_duplicate: bool = False
    error_message: str | None = None
    warning_message: str | None = None
    duration_ms: int | None = None


def _api_log_to_dict(row: ApiLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
        "method": row.method,
        "path": row.path,
        "statusCode": row.status_code,
        "durationMs": row.duration_ms,
        "errorMessage": row.error_message,
        "contextId": row.context_id,
        "formId": row.form_id,
        "userAgent": row.user_agent,
        "ipAddress": row.ip_address,
    }


def _submission_log_to_dict(row: SubmissionLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
        "formId": row.form_id,
        "contextId": row.context_id,
        "trackingId": row.tracking_id,
        "businessRecordIds": row.business_record_ids or [],
        "relationshipIds": row.relationship_ids or [],
        "formData": row.form_data,
        "mappingRules": row.mapping_rules,
        "isDuplicate": row.is_duplicate,
        "success": row.success,
        "errorMessage": row.error_message,
        "warningMessage": row.warning_message,
        "durationMs": row.duration_ms,
    }


class AuditRecorder:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _insert(self, row: ApiLog | SubmissionLog) -> bool:
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to write %s: %s", type(row).__name__, exc)
            return False
        finally:
            db.close()

    async def record_api_request(self, entry: ApiRequestEntry) -> bool:
        row = ApiLog(
            method=entry.method,
            path=entry.path[:500],
            status_code=entry.status_code,
            duration_ms=entry.duration_ms,
            error_message=entry.error_message,
            context_id=entry.context_id,
            form_id=entry.form_id,
            user_agent=(entry.user_agent or "")[:500] or None,
            ip_address=entry.ip_address,
        )
        return await anyio.to_thread.run_sync(self._insert, row)

    async def record_submission(self, entry: SubmissionEntry) -> bool:
        row = SubmissionLog(
            form_id=entry.form_id,
            context_id=entry.context_id,
            tracking_id=entry.tracking_id,
            business_record_ids=entry.business_record_ids or None,
            relationship_ids=entry.relationship_ids or None,
            form_data=entry.form_data,
            mapping_rules=entry.mapping_rules,
            is_duplicate=entry.is_duplicate,
            success=entry.success,
            error_message=entry.error_message,
            warning_message=entry.warning_message,
            duration_ms=entry.duration_ms,
        )
        return await anyio.to_thread.run_sync(self._insert, row)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def sweep_old_records(self, *, now: datetime | None = None) -> int:
        """Delete audit rows older than AUDIT_RETENTION_HOURS. Returns rows removed."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(
            hours=settings.AUDIT_RETENTION_HOURS
        )
        db = self._session_factory()
        try:
            api_deleted = db.execute(delete(ApiLog).where(ApiLog.timestamp < cutoff)).rowcount
            sub_deleted = db.execute(
                delete(SubmissionLog).where(SubmissionLog.timestamp < cutoff)
            ).rowcount
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Audit retention sweep failed: %s", exc)
            return 0
        finally:
            db.close()

        total = (api_deleted or 0) + (sub_deleted or 0)
        if total:
            logger.info(
                "Cleaned up %s API logs and %s submission logs", api_deleted, sub_deleted
            )
        return total

    # -------------------------------------------------------------------------
    # Reads (diagnostics API)
    # -------------------------------------------------------------------------

    def _query(self, stmt, serializer) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            return [serializer(row) for row in db.execute(stmt).scalars().all()]
        finally:
            db.close()

    def recent_api_logs(self, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        stmt = select(ApiLog).order_by(ApiLog.timestamp.desc(), ApiLog.id.desc()).limit(limit)
        return self._query(stmt, _api_log_to_dict)

    def error_logs(self, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        stmt = (
            select(ApiLog)
            .where(ApiLog.status_code >= 400)
            .order_by(ApiLog.timestamp.desc(), ApiLog.id.desc())
            .limit(limit)
        )
        return self._query(stmt, _api_log_to_dict)

    def recent_submissions(self, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        stmt = (
            select(SubmissionLog)
            .order_by(SubmissionLog.timestamp.desc(), SubmissionLog.id.desc())
            .limit(limit)
        )
        return self._query(stmt, _submission_log_to_dict)

    def submissions_for_form(self, form_id: str, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        stmt = (
            select(SubmissionLog)
            .where(SubmissionLog.form_id == form_id)
            .order_by(SubmissionLog.timestamp.desc(), SubmissionLog.id.desc())
            .limit(limit)
        )
        return self._query(stmt, _submission_log_to_dict)

    def failed_relationship_submissions(self, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        """Submissions that created business records but no relationships."""
        stmt = (
            select(SubmissionLog)
            .where(
                SubmissionLog.business_record_ids.is_not(None),
                SubmissionLog.relationship_ids.is_(None),
            )
            .order_by(SubmissionLog.timestamp.desc(), SubmissionLog.id.desc())
            .limit(limit)
        )
        return self._query(stmt, _submission_log_to_dict)

    def count_submissions(self) -> int:
        db = self._session_factory()
        try:
            return db.execute(select(func.count(SubmissionLog.id))).scalar_one()
        finally:
            db.close()
