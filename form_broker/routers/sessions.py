"""Sessions router - ephemeral per-form session state."""

from fastapi import APIRouter, Depends, Response

from form_broker.core.deps import get_session_store
from form_broker.core.errors import NotFoundError, ValidationError
from form_broker.schemas.sessions import SessionCreate, SessionCreated, SessionRead, SessionUpdate
from form_broker.services import session_service
from form_broker.services.context_service import is_valid_session_id, parse_context_id
from form_broker.services.session_service import SessionStore

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _require_session_id(session_id: str) -> None:
    if not is_valid_session_id(session_id):
        raise ValidationError(
            "Session ID must be a UUID v4", context={"sessionId": session_id}
        )


@router.post("", response_model=SessionCreated)
async def create_session(
    body: SessionCreate,
    store: SessionStore = Depends(get_session_store),
) -> SessionCreated:
    """Create a session, or return the live one for the given sessionId."""
    session = session_service.get_or_create_session(store, body.form_id, body.session_id)
    return SessionCreated.from_session(session)


@router.get("/context/{context_id}", response_model=SessionRead)
async def get_session_by_context(
    context_id: str,
    store: SessionStore = Depends(get_session_store),
) -> SessionRead:
    parsed = parse_context_id(context_id)
    session = session_service.get_session(store, parsed.session_id)
    if not session or session.form_id != parsed.form_id:
        raise NotFoundError("Session", context_id)
    return SessionRead.from_session(session)


@router.get("/{session_id}", response_model=SessionRead)
async def get_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> SessionRead:
    _require_session_id(session_id)
    session = session_service.get_session(store, session_id)
    if not session:
        raise NotFoundError("Session", session_id)
    return SessionRead.from_session(session)


@router.put("/{session_id}", response_model=SessionRead)
async def update_session(
    session_id: str,
    body: SessionUpdate,
    store: SessionStore = Depends(get_session_store),
) -> SessionRead:
    _require_session_id(session_id)
    session = session_service.update_session(
        store,
        session_id,
        form_data=body.form_data,
        agent_context=body.agent_context,
    )
    if not session:
        raise NotFoundError("Session", session_id)
    return SessionRead.from_session(session)


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> Response:
    _require_session_id(session_id)
    if not session_service.delete_session(store, session_id):
        raise NotFoundError("Session", session_id)
    return Response(status_code=204)
