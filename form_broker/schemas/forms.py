"""Form schemas - request/response models for the forms API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FormSubmitRequest(BaseModel):
    """Body of POST /forms/{formId}/submit."""

    model_config = ConfigDict(populate_by_name=True)

    context_id: str | None = Field(None, alias="contextId")
    form_data: dict[str, Any] = Field(default_factory=dict, alias="formData")


class BusinessRecordRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    object_type: str = Field(..., alias="objectType")


class SubmissionDebug(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_records_created: int = Field(..., alias="businessRecordsCreated")
    relationships_created: int = Field(..., alias="relationshipsCreated")
    relationship_attempted: bool = Field(..., alias="relationshipAttempted")
    existing_submission: bool = Field(..., alias="existingSubmission")


class SubmissionResponse(BaseModel):
    """Outcome of a submission; partial downstream failures carry a warning."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    tracking_id: str = Field(..., alias="trackingId")
    business_record_ids: list[BusinessRecordRead] = Field(..., alias="businessRecordIds")
    relationship_ids: list[str] = Field(..., alias="relationshipIds")
    context_id: str | None = Field(None, alias="contextId")
    is_duplicate: bool = Field(..., alias="isDuplicate")
    message: str
    warning: str | None = None
    duration_ms: int = Field(..., alias="durationMs")
    debug: SubmissionDebug
