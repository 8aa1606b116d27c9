"""Field transformers for submitted form data.

Each transformer takes the raw form data and one TransformSpec and returns a
partial field map to merge into the augmented data, or None when nothing
should be added. Transformers never raise on bad input.

Types:
- splitName: "John Q Public" → {FirstName: "John Q", LastName: "Public"}
- formatPhone: US/NATIONAL (DDD) DDD-DDDD, E164 +1DDDDDDDDDD
- formatDate: ISO8601/YYYY-MM-DD date, DATETIME, or a strftime pattern
- concat: joins non-empty source values with a separator
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeAlias

from form_broker.utils.datetime_parsing import parse_flexible_datetime
from form_broker.utils.normalization import (
    digits_only,
    format_phone_e164,
    format_phone_national,
    is_blank,
)

logger = logging.getLogger(__name__)


class TransformType(str, Enum):
    SPLIT_NAME = "splitName"
    FORMAT_PHONE = "formatPhone"
    FORMAT_DATE = "formatDate"
    CONCAT = "concat"


@dataclass
class TransformSpec:
    """One entry of ``transformations`` in the mapping rules."""

    key: str
    type: TransformType
    source: str | None = None
    sources: list[str] = field(default_factory=list)
    target: Any = None
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def target_field(self) -> str:
        """Output key for single-valued transformers."""
        return self.target if isinstance(self.target, str) and self.target else self.key

    @classmethod
    def from_dict(cls, key: str, raw: dict[str, Any]) -> "TransformSpec":
        """Build from raw JSON. Raises ValueError on an unknown type."""
        transform_type = TransformType(raw.get("type"))
        options = {
            k: v
            for k, v in raw.items()
            if k not in {"type", "source", "sources", "target"}
        }
        sources = raw.get("sources") or []
        return cls(
            key=key,
            type=transform_type,
            source=raw.get("source"),
            sources=list(sources) if isinstance(sources, list) else [],
            target=raw.get("target"),
            options=options,
        )


TransformResult: TypeAlias = dict[str, Any] | None
TransformerFn: TypeAlias = Callable[[dict[str, Any], TransformSpec], TransformResult]


# =============================================================================
# Name
# =============================================================================


def split_full_name(value: Any, delimiter: str | None = None) -> tuple[str | None, str] | None:
    """
    Split a full name into (first, last).

    Single token ⇒ (None, token). Empty input ⇒ None.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if delimiter:
        parts = [p for p in trimmed.split(delimiter) if p]
    else:
        parts = trimmed.split()
    if not parts:
        return None
    if len(parts) == 1:
        return None, parts[0]
    return " ".join(parts[:-1]), parts[-1]


def split_name(form_data: dict[str, Any], spec: TransformSpec) -> TransformResult:
    source = spec.source or "name"
    target = spec.target if isinstance(spec.target, dict) else {}
    first_field = target.get("firstName") or "FirstName"
    last_field = target.get("lastName") or "LastName"
    delimiter = spec.options.get("delimiter")

    parts = split_full_name(
        form_data.get(source), delimiter if isinstance(delimiter, str) else None
    )
    if parts is None:
        return None

    first, last = parts
    result = {last_field: last}
    if first:
        result[first_field] = first
    return result


# =============================================================================
# Phone
# =============================================================================


def format_phone(form_data: dict[str, Any], spec: TransformSpec) -> TransformResult:
    raw = form_data.get(spec.source) if spec.source else None
    if is_blank(raw):
        return None

    digits = digits_only(raw)
    if not digits:
        return None

    phone_format = str(spec.options.get("format") or "US").upper()
    if phone_format == "E164":
        formatted = format_phone_e164(digits)
    else:
        formatted = format_phone_national(digits)

    # Unformattable lengths pass through as digits.
    return {spec.target_field: formatted or digits}


# =============================================================================
# Date
# =============================================================================

ISO_DATE_FORMATS = {"ISO8601", "YYYY-MM-DD"}


def format_date(form_data: dict[str, Any], spec: TransformSpec) -> TransformResult:
    raw = form_data.get(spec.source) if spec.source else None
    if is_blank(raw):
        return None

    parsed = parse_flexible_datetime(raw)
    if parsed is None:
        logger.debug("formatDate could not parse value for %s", spec.source)
        return None

    output_format = str(spec.options.get("outputFormat") or "ISO8601")
    if output_format.upper() in ISO_DATE_FORMATS:
        value = parsed.date().isoformat()
    elif "%" in output_format:
        value = parsed.strftime(output_format)
    else:
        value = parsed.isoformat()
    return {spec.target_field: value}


# =============================================================================
# Concat
# =============================================================================


def concat(form_data: dict[str, Any], spec: TransformSpec) -> TransformResult:
    separator = spec.options.get("separator")
    if separator is None:
        separator = " "

    values = [str(form_data[s]) for s in spec.sources if not is_blank(form_data.get(s))]
    if not values:
        return None
    return {spec.target_field: str(separator).join(values)}


TRANSFORMERS: dict[TransformType, TransformerFn] = {
    TransformType.SPLIT_NAME: split_name,
    TransformType.FORMAT_PHONE: format_phone,
    TransformType.FORMAT_DATE: format_date,
    TransformType.CONCAT: concat,
}


def apply_transformations(
    form_data: dict[str, Any],
    specs: list[TransformSpec],
) -> dict[str, Any]:
    """
    Return a copy of ``form_data`` with every transformer output merged in.

    Transformers read the raw submitted values, not each other's output.
    """
    augmented = dict(form_data)
    for spec in specs:
        result = TRANSFORMERS[spec.type](form_data, spec)
        if result:
            augmented.update(result)
    return augmented
