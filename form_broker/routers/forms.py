"""Forms router - form definitions and submissions."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from form_broker.core.deps import get_connection_provider, get_submission_orchestrator
from form_broker.schemas.forms import FormSubmitRequest, SubmissionResponse
from form_broker.services.connection_service import ConnectionProvider
from form_broker.services.context_service import validate_context_id
from form_broker.services.form_definition_service import fetch_form_definition
from form_broker.services.submission_service import SubmissionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/forms", tags=["forms"])


@router.get("/{form_id}")
async def get_form_definition(
    form_id: str,
    context_id: str | None = Query(None, alias="contextId"),
    connection_provider: ConnectionProvider = Depends(get_connection_provider),
) -> dict[str, Any]:
    """
    Form definition for rendering.

    Returns `sections` (new format) or `fields` (old format).
    """
    if context_id:
        validate_context_id(context_id, form_id)
    client = await connection_provider.resolve(context_id)
    definition = await fetch_form_definition(client, form_id)
    return definition.to_response()


@router.post("/{form_id}/submit", response_model=SubmissionResponse)
async def submit_form(
    form_id: str,
    body: FormSubmitRequest,
    orchestrator: SubmissionOrchestrator = Depends(get_submission_orchestrator),
) -> dict[str, Any]:
    """
    Submit form data.

    Creates the business record, the tracking record and the relationship
    between them. A repeated context id reuses the existing tracking record.
    """
    result = await orchestrator.submit(form_id, body.context_id, body.form_data)
    return result.to_response()
