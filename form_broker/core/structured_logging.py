"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any

from form_broker.core.config import settings


def configure_logging() -> None:
    """Configure root logging for the API process."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_log_context(
    *,
    context_id: str | None = None,
    form_id: str | None = None,
    session_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict (never includes form values or tokens)."""
    context: dict[str, Any] = {}
    if context_id:
        context["context_id"] = context_id
    if form_id:
        context["form_id"] = form_id
    if session_id:
        context["session_id"] = session_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
