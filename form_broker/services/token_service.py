"""OAuth token sessions with single-flight refresh.

Sessions live in a process-wide map keyed by session id and are persisted
through ``token_storage`` on every mutation.

Refresh contract:
- A token is served from cache while ``now < expires_at - buffer``.
- Otherwise one refresh task is started per session id; concurrent callers
  await that same task instead of starting their own.
- A failed refresh discards the session; the caller must re-authenticate.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from form_broker.core.config import settings
from form_broker.services import oauth_service, token_storage
from form_broker.services.token_storage import TokenData, TokenSession

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def build_token_data(
    payload: dict[str, Any],
    *,
    previous: TokenData | None = None,
    now: datetime | None = None,
) -> TokenData:
    """
    Build TokenData from a token endpoint response.

    Refresh responses usually omit the refresh token and sometimes the
    instance URL; those carry over from ``previous``.
    """
    issued = now or _now_utc()
    expires_in = payload.get("expires_in")
    expires_in = DEFAULT_EXPIRES_IN_SECONDS if expires_in in (None, "") else int(expires_in)
    instance_url = oauth_service.normalize_instance_url(
        payload.get("instance_url") or (previous.instance_url if previous else None)
    )
    return TokenData(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else ""),
        issued_at=issued,
        expires_at=issued + timedelta(seconds=expires_in),
        instance_url=instance_url,
        token_type=payload.get("token_type") or "Bearer",
        scope=payload.get("scope") or (previous.scope if previous else None),
    )


class TokenManager:
    """Owns every TokenSession and coordinates their refreshes."""

    def __init__(self, *, load: bool = True) -> None:
        self._sessions: dict[str, TokenSession] = {}
        self._refreshes: dict[str, asyncio.Task[str | None]] = {}
        if load:
            for session in token_storage.load_token_sessions():
                self._sessions[session.session_id] = session

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def store_tokens(
        self,
        context_id: str,
        token_payload: dict[str, Any],
        *,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> str:
        """Create a TokenSession from a completed OAuth exchange. Returns its id."""
        now = _now_utc()
        session = TokenSession(
            session_id=str(uuid.uuid4()),
            context_id=context_id,
            token_data=build_token_data(token_payload, now=now),
            created_at=now,
            last_accessed=now,
            user_id=user_id,
            user_email=user_email,
        )
        self._sessions[session.session_id] = session
        self._persist()
        logger.info("Stored OAuth session %s", session.session_id)
        return session.session_id

    def get_session(self, session_id: str) -> TokenSession | None:
        return self._sessions.get(session_id)

    def get_session_by_context_id(self, context_id: str) -> TokenSession | None:
        """Most recently created session for a context id."""
        matches = [s for s in self._sessions.values() if s.context_id == context_id]
        if not matches:
            return None
        return max(matches, key=lambda s: s.created_at)

    def all_sessions(self) -> list[TokenSession]:
        return list(self._sessions.values())

    def remove_session(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            self._persist()
        return removed

    def sweep_inactive_sessions(self, *, now: datetime | None = None) -> int:
        """Drop sessions not accessed within TOKEN_SESSION_MAX_AGE_HOURS."""
        current = now or _now_utc()
        max_idle = timedelta(hours=settings.TOKEN_SESSION_MAX_AGE_HOURS)
        stale = [
            sid
            for sid, session in list(self._sessions.items())
            if current - session.last_accessed > max_idle
        ]
        for sid in stale:
            self._sessions.pop(sid, None)
        if stale:
            self._persist()
            logger.info("Cleaned up %s inactive OAuth sessions", len(stale))
        return len(stale)

    def _persist(self) -> None:
        try:
            token_storage.save_token_sessions(self.all_sessions())
        except OSError as exc:
            logger.error("Failed to persist OAuth sessions: %s", exc)

    # -------------------------------------------------------------------------
    # Access tokens
    # -------------------------------------------------------------------------

    def _is_fresh(self, token: TokenData, now: datetime) -> bool:
        buffer = timedelta(seconds=settings.TOKEN_REFRESH_BUFFER_SECONDS)
        return now < token.expires_at - buffer

    async def get_valid_access_token(self, session_id: str) -> str | None:
        """
        Return a usable access token, refreshing it first when close to expiry.

        Returns None when the session is unknown or its refresh failed.
        """
        session = self._sessions.get(session_id)
        if not session:
            return None

        now = _now_utc()
        session.last_accessed = now
        if self._is_fresh(session.token_data, now):
            return session.token_data.access_token

        task = self._refreshes.get(session_id)
        if task is None:
            task = asyncio.create_task(self._refresh(session_id))
            self._refreshes[session_id] = task
            task.add_done_callback(lambda t, sid=session_id: self._forget_refresh(sid, t))
        else:
            logger.debug("Joining in-flight token refresh for session %s", session_id)

        # Shielded so one cancelled caller does not cancel the refresh for the others.
        return await asyncio.shield(task)

    def _forget_refresh(self, session_id: str, task: asyncio.Task) -> None:
        if self._refreshes.get(session_id) is task:
            del self._refreshes[session_id]

    async def _refresh(self, session_id: str) -> str | None:
        session = self._sessions.get(session_id)
        if not session:
            return None
        if not session.token_data.refresh_token:
            logger.warning("OAuth session %s has no refresh token, discarding", session_id)
            self.remove_session(session_id)
            return None

        logger.info("Refreshing access token for session %s", session_id)
        try:
            payload = await oauth_service.request_token_refresh(session.token_data.refresh_token)
            token_data = build_token_data(payload, previous=session.token_data)
        except Exception as exc:
            logger.error(
                "Token refresh failed for session %s, discarding: %s",
                session_id,
                type(exc).__name__,
            )
            self.remove_session(session_id)
            return None

        session.token_data = token_data
        session.last_accessed = _now_utc()
        self._persist()
        return token_data.access_token

    async def aclose(self) -> None:
        """Cancel in-flight refreshes (shutdown)."""
        tasks = list(self._refreshes.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
