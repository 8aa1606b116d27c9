"""Form session service - ephemeral per-session state with a fixed TTL.

Sessions expire ``SESSION_TTL_HOURS`` after creation regardless of activity.
Storage sits behind the ``SessionStore`` protocol so the in-process map can be
swapped for an external key-value store without touching callers.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Protocol

from form_broker.core.config import settings
from form_broker.core.errors import ValidationError
from form_broker.services.context_service import build_context_id, is_valid_session_id

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass
class FormSession:
    session_id: str
    form_id: str
    context_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    form_data: dict[str, Any] = field(default_factory=dict)
    agent_context: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now_utc()) > self.expires_at


class SessionStore(Protocol):
    def get(self, session_id: str) -> FormSession | None: ...

    def put(self, session: FormSession) -> None: ...

    def delete(self, session_id: str) -> bool: ...

    def values(self) -> Iterable[FormSession]: ...


class InMemorySessionStore:
    """Process-local session map (single event loop, no locking needed)."""

    def __init__(self) -> None:
        self._sessions: dict[str, FormSession] = {}

    def get(self, session_id: str) -> FormSession | None:
        return self._sessions.get(session_id)

    def put(self, session: FormSession) -> None:
        self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def values(self) -> list[FormSession]:
        # Snapshot so sweeps can delete while requests keep reading.
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


def create_session(
    store: SessionStore,
    form_id: str,
    session_id: str | None = None,
    *,
    now: datetime | None = None,
) -> FormSession:
    """Create and store a session, generating a UUIDv4 when none is supplied."""
    if not form_id:
        raise ValidationError("Form ID is required")
    if session_id is not None and not is_valid_session_id(session_id):
        raise ValidationError(
            "Session ID must be a UUID v4",
            context={"sessionId": session_id},
        )

    sid = session_id or str(uuid.uuid4())
    created = now or _now_utc()
    session = FormSession(
        session_id=sid,
        form_id=form_id,
        context_id=build_context_id(form_id, sid),
        created_at=created,
        last_activity=created,
        expires_at=created + timedelta(hours=settings.SESSION_TTL_HOURS),
    )
    store.put(session)
    return session


def get_session(
    store: SessionStore,
    session_id: str,
    *,
    now: datetime | None = None,
) -> FormSession | None:
    """Return a live session, deleting it if expired; touches last_activity."""
    if not is_valid_session_id(session_id):
        return None

    session = store.get(session_id)
    if not session:
        return None

    current = now or _now_utc()
    if session.is_expired(current):
        store.delete(session_id)
        return None

    session.last_activity = current
    return session


def get_or_create_session(
    store: SessionStore,
    form_id: str,
    session_id: str | None = None,
) -> FormSession:
    """Reuse a live session for the given id, otherwise create one."""
    if session_id:
        existing = get_session(store, session_id)
        if existing:
            return existing
    return create_session(store, form_id, session_id)


def update_session(
    store: SessionStore,
    session_id: str,
    *,
    form_data: dict[str, Any] | None = None,
    agent_context: dict[str, Any] | None = None,
) -> FormSession | None:
    """Shallow-merge form data and agent context into a live session."""
    session = get_session(store, session_id)
    if not session:
        return None

    if form_data is not None:
        session.form_data = {**session.form_data, **form_data}
    if agent_context is not None:
        session.agent_context = {**session.agent_context, **agent_context}
    session.last_activity = _now_utc()
    store.put(session)
    return session


def delete_session(store: SessionStore, session_id: str) -> bool:
    return store.delete(session_id)


def sweep_expired_sessions(store: SessionStore, *, now: datetime | None = None) -> int:
    """Remove every session past its expires_at. Returns the number removed."""
    current = now or _now_utc()
    deleted = 0
    for session in list(store.values()):
        if session.is_expired(current):
            if store.delete(session.session_id):
                deleted += 1
    if deleted:
        logger.info("Cleaned up %s expired form sessions", deleted)
    return deleted
