"""Session schemas - request/response models for the sessions API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from form_broker.services.session_service import FormSession


class SessionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    form_id: str = Field(..., min_length=1, alias="formId")
    session_id: str | None = Field(None, alias="sessionId")


class SessionUpdate(BaseModel):
    """Shallow patch; keys are merged into the stored maps."""

    model_config = ConfigDict(populate_by_name=True)

    form_data: dict[str, Any] | None = Field(None, alias="formData")
    agent_context: dict[str, Any] | None = Field(None, alias="agentContext")


class SessionCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    context_id: str = Field(..., alias="contextId")
    form_id: str = Field(..., alias="formId")
    expires_at: datetime = Field(..., alias="expiresAt")

    @classmethod
    def from_session(cls, session: FormSession) -> "SessionCreated":
        return cls(
            session_id=session.session_id,
            context_id=session.context_id,
            form_id=session.form_id,
            expires_at=session.expires_at,
        )


class SessionRead(SessionCreated):
    created_at: datetime = Field(..., alias="createdAt")
    last_activity: datetime = Field(..., alias="lastActivity")
    form_data: dict[str, Any] = Field(default_factory=dict, alias="formData")
    agent_context: dict[str, Any] = Field(default_factory=dict, alias="agentContext")

    @classmethod
    def from_session(cls, session: FormSession) -> "SessionRead":
        return cls(
            session_id=session.session_id,
            context_id=session.context_id,
            form_id=session.form_id,
            expires_at=session.expires_at,
            created_at=session.created_at,
            last_activity=session.last_activity,
            form_data=session.form_data,
            agent_context=session.agent_context,
        )
