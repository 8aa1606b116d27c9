"""Periodic cleanup sweeps.

Three independent fixed-interval loops run alongside request handling:
form sessions past expires_at, inactive OAuth token sessions, and audit rows
past retention. A failing sweep is logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

import anyio

from form_broker.core.config import settings
from form_broker.services.audit_service import AuditRecorder
from form_broker.services.session_service import SessionStore, sweep_expired_sessions
from form_broker.services.token_service import TokenManager

logger = logging.getLogger(__name__)


async def _run_periodically(
    name: str,
    sweep: Callable[[], int],
    interval_seconds: float,
    *,
    in_thread: bool = False,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            if in_thread:
                removed = await anyio.to_thread.run_sync(sweep)
            else:
                removed = sweep()
            logger.debug("%s sweep removed %s entries", name, removed)
        except Exception:
            logger.exception("%s sweep failed", name)


@dataclass
class SweepScheduler:
    session_store: SessionStore
    token_manager: TokenManager
    audit_recorder: AuditRecorder
    interval_seconds: float = field(default_factory=lambda: settings.SWEEP_INTERVAL_SECONDS)
    _tasks: list[asyncio.Task] = field(default_factory=list, init=False)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                _run_periodically(
                    "Form session",
                    lambda: sweep_expired_sessions(self.session_store),
                    self.interval_seconds,
                ),
                name="sweep-form-sessions",
            ),
            asyncio.create_task(
                _run_periodically(
                    "OAuth session",
                    self.token_manager.sweep_inactive_sessions,
                    self.interval_seconds,
                ),
                name="sweep-oauth-sessions",
            ),
            asyncio.create_task(
                _run_periodically(
                    "Audit log",
                    self.audit_recorder.sweep_old_records,
                    self.interval_seconds,
                    in_thread=True,
                ),
                name="sweep-audit-logs",
            ),
        ]
        logger.info("Started cleanup sweeps every %ss", self.interval_seconds)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)
