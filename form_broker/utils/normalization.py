"""Phone and text normalization helpers."""

import re
from typing import Any, Optional


def digits_only(value: Any) -> str:
    """Strip every non-digit character."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def format_phone_national(digits: str) -> Optional[str]:
    """
    Format a 10-digit US number as (DDD) DDD-DDDD.

    Returns None for any other length.
    """
    if len(digits) != 10:
        return None
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def format_phone_e164(digits: str) -> Optional[str]:
    """
    Format a US number in E.164 (+1DDDDDDDDDD).

    Accepts:
    - 10 digits: 5551234567 → +15551234567
    - 11 digits starting with 1: 15551234567 → +15551234567

    Returns None for anything else.
    """
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


def is_blank(value: Any) -> bool:
    """None or empty string."""
    return value is None or value == ""
