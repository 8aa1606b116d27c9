"""Disk persistence for OAuth token sessions.

Token sessions are written as a JSON collection file on every mutation and
reloaded at startup. Entries created more than TOKEN_SESSION_MAX_AGE_HOURS
ago are pruned on load.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from form_broker.core.config import settings
from form_broker.core.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


@dataclass
class TokenData:
    access_token: str
    refresh_token: str
    issued_at: datetime
    expires_at: datetime
    instance_url: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None


@dataclass
class TokenSession:
    session_id: str
    context_id: str
    token_data: TokenData
    created_at: datetime
    last_accessed: datetime
    user_id: str | None = None
    user_email: str | None = None


def _storage_path() -> Path:
    return Path(settings.TOKEN_STORAGE_PATH)


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_session(session: TokenSession) -> dict[str, Any]:
    token = session.token_data
    return {
        "sessionId": session.session_id,
        "contextId": session.context_id,
        "userId": session.user_id,
        "userEmail": session.user_email,
        "createdAt": session.created_at.isoformat(),
        "lastAccessed": session.last_accessed.isoformat(),
        "tokenData": {
            "accessToken": encrypt_token(token.access_token),
            "refreshToken": encrypt_token(token.refresh_token),
            "tokenType": token.token_type,
            "scope": token.scope,
            "issuedAt": token.issued_at.isoformat(),
            "expiresAt": token.expires_at.isoformat(),
            "instanceUrl": token.instance_url,
        },
    }


def deserialize_session(raw: dict[str, Any]) -> TokenSession:
    token = raw["tokenData"]
    return TokenSession(
        session_id=raw["sessionId"],
        context_id=raw["contextId"],
        user_id=raw.get("userId"),
        user_email=raw.get("userEmail"),
        created_at=_parse_dt(raw["createdAt"]),
        last_accessed=_parse_dt(raw.get("lastAccessed")) or _parse_dt(raw["createdAt"]),
        token_data=TokenData(
            access_token=decrypt_token(token["accessToken"]),
            refresh_token=decrypt_token(token.get("refreshToken") or ""),
            token_type=token.get("tokenType") or "Bearer",
            scope=token.get("scope"),
            issued_at=_parse_dt(token["issuedAt"]),
            expires_at=_parse_dt(token["expiresAt"]),
            instance_url=token.get("instanceUrl"),
        ),
    )


def save_token_sessions(sessions: list[TokenSession]) -> None:
    """Write every token session to disk, replacing the previous file atomically."""
    path = _storage_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [serialize_session(s) for s in sessions]
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug("Saved %s OAuth sessions to disk", len(sessions))


def load_token_sessions(*, now: datetime | None = None) -> list[TokenSession]:
    """Load persisted sessions, dropping entries older than the max age."""
    path = _storage_path()
    if not path.exists():
        logger.info("No saved OAuth sessions file found at %s", path)
        return []

    try:
        raw_sessions = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read OAuth sessions file %s: %s", path, exc)
        return []

    current = now or datetime.now(timezone.utc)
    max_age = timedelta(hours=settings.TOKEN_SESSION_MAX_AGE_HOURS)

    sessions: list[TokenSession] = []
    dropped = 0
    for raw in raw_sessions if isinstance(raw_sessions, list) else []:
        try:
            session = deserialize_session(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping unreadable OAuth session entry: %s", exc)
            dropped += 1
            continue
        if current - session.created_at >= max_age:
            dropped += 1
            continue
        sessions.append(session)

    logger.info(
        "Loaded %s valid OAuth sessions from disk (%s dropped)", len(sessions), dropped
    )
    if dropped:
        try:
            save_token_sessions(sessions)
        except OSError as exc:
            logger.error("Failed to rewrite OAuth sessions file %s: %s", path, exc)
    return sessions


def clear_token_sessions() -> None:
    path = _storage_path()
    if path.exists():
        path.unlink()
        logger.info("Cleared saved OAuth sessions")
