from __future__ import annotations

import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[object, object, object], *, name: str | None = None) -> asyncio.Task:
    """
    Schedule a fire-and-forget coroutine on the running loop.

    - Keeps a strong reference until the task finishes (the loop only holds weak ones).
    - Failures are logged, never raised into the caller.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


async def drain_background_tasks(timeout: float | None = 5.0) -> None:
    """Wait for pending background work (shutdown, tests)."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    await asyncio.wait(pending, timeout=timeout)
