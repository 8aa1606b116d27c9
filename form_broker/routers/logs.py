"""Logs router - read-only diagnostics over the audit store."""

from typing import Any

import anyio
from fastapi import APIRouter, Depends, Query

from form_broker.core.deps import get_audit_recorder
from form_broker.services.audit_service import DEFAULT_LIMIT, AuditRecorder

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("/api")
async def api_logs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    logs = await anyio.to_thread.run_sync(recorder.recent_api_logs, limit)
    return {"count": len(logs), "logs": logs}


@router.get("/errors")
async def error_logs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    """Requests that finished with status >= 400."""
    logs = await anyio.to_thread.run_sync(recorder.error_logs, limit)
    return {"count": len(logs), "logs": logs}


@router.get("/submissions")
async def submission_logs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    logs = await anyio.to_thread.run_sync(recorder.recent_submissions, limit)
    return {"count": len(logs), "logs": logs}


@router.get("/submissions/failed-relationships")
async def failed_relationship_logs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    """Submissions that created business records but no relationship records."""
    logs = await anyio.to_thread.run_sync(recorder.failed_relationship_submissions, limit)
    return {"count": len(logs), "logs": logs}


@router.get("/submissions/form/{form_id}")
async def form_submission_logs(
    form_id: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    logs = await anyio.to_thread.run_sync(recorder.submissions_for_form, form_id, limit)
    return {"formId": form_id, "count": len(logs), "logs": logs}
