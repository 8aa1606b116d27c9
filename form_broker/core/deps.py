"""FastAPI dependencies for the broker's process-wide services."""

from functools import lru_cache

from fastapi import Depends

from form_broker.db.session import SessionLocal
from form_broker.services.audit_service import AuditRecorder
from form_broker.services.connection_service import ConnectionProvider
from form_broker.services.session_service import InMemorySessionStore, SessionStore
from form_broker.services.submission_service import SubmissionOrchestrator
from form_broker.services.token_service import TokenManager


@lru_cache
def get_session_store() -> SessionStore:
    return InMemorySessionStore()


@lru_cache
def get_token_manager() -> TokenManager:
    """Token sessions, loaded from disk on first use."""
    return TokenManager()


@lru_cache
def get_connection_provider() -> ConnectionProvider:
    return ConnectionProvider(get_token_manager())


@lru_cache
def get_audit_recorder() -> AuditRecorder:
    return AuditRecorder(SessionLocal)


def get_submission_orchestrator(
    connection_provider: ConnectionProvider = Depends(get_connection_provider),
    session_store: SessionStore = Depends(get_session_store),
    audit_recorder: AuditRecorder = Depends(get_audit_recorder),
) -> SubmissionOrchestrator:
    return SubmissionOrchestrator(
        connection_provider=connection_provider,
        session_store=session_store,
        audit_recorder=audit_recorder,
    )


def reset_dependencies() -> None:
    """Drop cached singletons (tests)."""
    for getter in (
        get_session_store,
        get_token_manager,
        get_connection_provider,
        get_audit_recorder,
    ):
        getter.cache_clear()
