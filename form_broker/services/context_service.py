"""Context id parsing and validation.

A context id identifies one in-flight form interaction as
``{formId}:{sessionId}``. It is never stored as a struct; callers parse it
on demand.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from form_broker.core.errors import ValidationError

UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedContextId:
    form_id: str
    session_id: str


def is_valid_session_id(session_id: str | None) -> bool:
    """True when the value is a canonical UUIDv4 string."""
    return isinstance(session_id, str) and UUID_V4_PATTERN.fullmatch(session_id) is not None


def build_context_id(form_id: str, session_id: str) -> str:
    return f"{form_id}:{session_id}"


def parse_context_id(context_id: str | None) -> ParsedContextId:
    """
    Split a context id into its form id and session id.

    Raises:
        ValidationError: not exactly two segments, empty form id, or the
            session id is not a UUIDv4
    """
    if not context_id or not isinstance(context_id, str):
        raise ValidationError("Context ID is required", context={"contextId": context_id})

    parts = context_id.split(":")
    if len(parts) != 2 or not parts[0]:
        raise ValidationError(
            f"Invalid Context ID format: {context_id}",
            context={"contextId": context_id, "reason": "must be formId:sessionId"},
        )

    form_id, session_id = parts
    if not is_valid_session_id(session_id):
        raise ValidationError(
            f"Invalid Context ID format: {context_id}",
            context={"contextId": context_id, "reason": "sessionId must be a UUID v4"},
        )
    return ParsedContextId(form_id=form_id, session_id=session_id)


def validate_context_id(context_id: str | None, expected_form_id: str) -> ParsedContextId:
    """Parse a context id and require its form segment to match the route's form id."""
    parsed = parse_context_id(context_id)
    if parsed.form_id != expected_form_id:
        raise ValidationError(
            "Form ID mismatch between URL and Context ID",
            context={"urlFormId": expected_form_id, "contextFormId": parsed.form_id},
        )
    return parsed
