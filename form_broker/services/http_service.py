"""HTTP helpers with timeouts and retry/backoff for record store calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

from form_broker.core.config import settings
from form_broker.core.errors import UpstreamConnectionError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.HTTP_TIMEOUT_SECONDS,
        connect=settings.HTTP_CONNECT_TIMEOUT_SECONDS,
    )


def build_async_client(**kwargs) -> httpx.AsyncClient:
    """AsyncClient with the configured client-side timeouts."""
    kwargs.setdefault("timeout", default_timeout())
    return httpx.AsyncClient(**kwargs)


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int | None = None,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """
    Execute an idempotent HTTP request with exponential backoff retries.

    Transport failures that survive every attempt are raised as
    UpstreamConnectionError; a timeout never reads as a data error.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    attempts = max_attempts or settings.HTTP_MAX_ATTEMPTS

    for attempt in range(attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= attempts - 1:
                raise UpstreamConnectionError(
                    f"Record store request failed: {type(exc).__name__}"
                ) from exc
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < attempts - 1:
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
