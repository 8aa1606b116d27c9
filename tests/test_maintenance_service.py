"""Tests for the periodic cleanup sweeps."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from form_broker.services.maintenance_service import SweepScheduler
from form_broker.services.session_service import create_session
from form_broker.services.token_service import TokenManager


@pytest.mark.asyncio
async def test_scheduler_sweeps_expired_sessions(session_store, audit_recorder, token_file):
    long_ago = datetime.now(timezone.utc) - timedelta(days=3)
    expired = create_session(session_store, "test-drive", now=long_ago)
    live = create_session(session_store, "test-drive")

    scheduler = SweepScheduler(
        session_store=session_store,
        token_manager=TokenManager(load=False),
        audit_recorder=audit_recorder,
        interval_seconds=0.01,
    )
    scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.running
    assert session_store.get(expired.session_id) is None
    assert session_store.get(live.session_id) is not None


@pytest.mark.asyncio
async def test_failing_sweep_keeps_scheduler_alive(session_store, audit_recorder, token_file):
    manager = TokenManager(load=False)
    calls = {"count": 0}

    def broken_sweep(**kwargs):
        calls["count"] += 1
        raise RuntimeError("disk full")

    manager.sweep_inactive_sessions = broken_sweep
    scheduler = SweepScheduler(
        session_store=session_store,
        token_manager=manager,
        audit_recorder=audit_recorder,
        interval_seconds=0.01,
    )
    scheduler.start()
    await asyncio.sleep(0.1)
    still_running = scheduler.running
    await scheduler.stop()

    assert calls["count"] >= 2
    assert still_running
