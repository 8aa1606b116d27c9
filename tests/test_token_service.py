"""Tests for OAuth token sessions and single-flight refresh."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from form_broker.services import oauth_service, token_storage
from form_broker.services.token_service import TokenManager


def _payload(access_token="access-1", expires_in=3600, **extra):
    return {
        "access_token": access_token,
        "refresh_token": "refresh-1",
        "instance_url": "https://acme.my.salesforce.com",
        "expires_in": expires_in,
        **extra,
    }


@pytest.fixture
def manager(token_file):
    return TokenManager(load=False)


@pytest.mark.asyncio
async def test_fresh_token_served_without_refresh(manager, monkeypatch):
    async def _fail_refresh(_refresh_token):
        pytest.fail("refresh should not be called for a fresh token")

    monkeypatch.setattr(oauth_service, "request_token_refresh", _fail_refresh)
    session_id = manager.store_tokens("form:ctx", _payload())

    assert await manager.get_valid_access_token(session_id) == "access-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(manager, monkeypatch):
    calls = {"count": 0}

    async def _refresh(refresh_token):
        calls["count"] += 1
        assert refresh_token == "refresh-1"
        await asyncio.sleep(0.01)
        return {"access_token": "access-2", "expires_in": 3600}

    monkeypatch.setattr(oauth_service, "request_token_refresh", _refresh)
    # Inside the 5 minute buffer, so every caller needs a refresh.
    session_id = manager.store_tokens("form:ctx", _payload(expires_in=60))

    tokens = await asyncio.gather(*(manager.get_valid_access_token(session_id) for _ in range(10)))

    assert calls["count"] == 1
    assert tokens == ["access-2"] * 10
    session = manager.get_session(session_id)
    assert session.token_data.access_token == "access-2"
    # Refresh responses without a refresh token keep the old one.
    assert session.token_data.refresh_token == "refresh-1"
    assert session.token_data.instance_url == "https://acme.my.salesforce.com"


@pytest.mark.asyncio
async def test_refresh_is_persisted(manager, monkeypatch, token_file):
    async def _refresh(_refresh_token):
        return {"access_token": "access-2", "expires_in": 3600}

    monkeypatch.setattr(oauth_service, "request_token_refresh", _refresh)
    session_id = manager.store_tokens("form:ctx", _payload(expires_in=0))

    await manager.get_valid_access_token(session_id)

    saved = json.loads(token_file.read_text())
    assert saved[0]["tokenData"]["accessToken"] == "access-2"


@pytest.mark.asyncio
async def test_failed_refresh_discards_session(manager, monkeypatch):
    calls = {"count": 0}

    async def _refresh(_refresh_token):
        calls["count"] += 1
        await asyncio.sleep(0)
        raise RuntimeError("invalid_grant")

    monkeypatch.setattr(oauth_service, "request_token_refresh", _refresh)
    session_id = manager.store_tokens("form:ctx", _payload(expires_in=0))

    results = await asyncio.gather(*(manager.get_valid_access_token(session_id) for _ in range(3)))

    assert results == [None, None, None]
    assert calls["count"] == 1
    assert manager.get_session(session_id) is None
    assert await manager.get_valid_access_token(session_id) is None


@pytest.mark.asyncio
async def test_new_refresh_starts_after_previous_completes(manager, monkeypatch):
    calls = {"count": 0}

    async def _refresh(_refresh_token):
        calls["count"] += 1
        # Already expired again, so the next call must refresh too.
        return {"access_token": f"access-{calls['count'] + 1}", "expires_in": 0}

    monkeypatch.setattr(oauth_service, "request_token_refresh", _refresh)
    session_id = manager.store_tokens("form:ctx", _payload(expires_in=0))

    assert await manager.get_valid_access_token(session_id) == "access-2"
    assert await manager.get_valid_access_token(session_id) == "access-3"
    assert calls["count"] == 2


def test_get_session_by_context_id_returns_latest(manager):
    manager.store_tokens("service_account", _payload(access_token="old"))
    newest = manager.store_tokens("service_account", _payload(access_token="new"))
    assert manager.get_session_by_context_id("service_account").session_id == newest
    assert manager.get_session_by_context_id("missing") is None


def test_sweep_inactive_sessions(manager):
    stale = manager.store_tokens("a", _payload())
    fresh = manager.store_tokens("b", _payload())
    now = datetime.now(timezone.utc)
    manager.get_session(stale).last_accessed = now - timedelta(hours=25)

    assert manager.sweep_inactive_sessions(now=now) == 1
    assert manager.get_session(stale) is None
    assert manager.get_session(fresh) is not None


def test_manager_loads_persisted_sessions(manager):
    session_id = manager.store_tokens("form:ctx", _payload())
    reloaded = TokenManager()
    assert reloaded.get_session(session_id).token_data.access_token == "access-1"


def test_store_tokens_normalizes_instance_url_and_defaults_expiry(manager):
    payload = _payload(instance_url="https://acme.my.salesforce-setup.com")
    del payload["expires_in"]
    session = manager.get_session(manager.store_tokens("ctx", payload))
    assert session.token_data.instance_url == "https://acme.my.salesforce.com"
    lifetime = session.token_data.expires_at - session.token_data.issued_at
    assert lifetime == timedelta(seconds=3600)


def test_remove_session_persists(manager, token_file):
    session_id = manager.store_tokens("ctx", _payload())
    assert manager.remove_session(session_id)
    assert token_storage.load_token_sessions() == []
