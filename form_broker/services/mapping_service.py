"""Mapping rules DSL: parse the stored JSON and evaluate it against form data.

Rules JSON::

    {
      "targetObjectType": "Lead",            # alias: salesforceObject
      "fieldMappings": {"email": "Email"},
      "conditionalMappings": {
        "Company": {
          "when": {"enquiryType": "commercial"},
          "then": {"mapFrom": "companyName"},
          "else": {"mapFrom": "lastName"}
        },
        "LeadSource": {
          "conditions": [
            {"if": {"field": "source", "operator": "contains", "value": "ad"},
             "then": {"value": "Advertisement"}}
          ]
        }
      },
      "transformations": {"splitFullName": {"type": "splitName", "source": "name"}}
    }

Evaluation order: transformations, static mappings, conditional mappings,
then the legacy single ``name`` → LastName split.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from form_broker.core.errors import ConfigurationError
from form_broker.services.transformers import (
    TransformSpec,
    TransformType,
    apply_transformations,
    split_full_name,
)
from form_broker.utils.normalization import is_blank

logger = logging.getLogger(__name__)


# =============================================================================
# Operators
# =============================================================================


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    EXISTS = "exists"
    IS_EMPTY = "isEmpty"


OPERATOR_ALIASES: dict[str, ConditionOperator] = {
    "==": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GREATER_THAN,
    "<": ConditionOperator.LESS_THAN,
    "isNotEmpty": ConditionOperator.EXISTS,
    "notExists": ConditionOperator.IS_EMPTY,
}


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    return op(left, right)


OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda actual, expected: actual == expected,
    ConditionOperator.NOT_EQUALS: lambda actual, expected: actual != expected,
    ConditionOperator.CONTAINS: lambda actual, expected: _as_text(expected) in _as_text(actual),
    ConditionOperator.NOT_CONTAINS: lambda actual, expected: _as_text(expected)
    not in _as_text(actual),
    ConditionOperator.GREATER_THAN: lambda actual, expected: _compare(
        actual, expected, lambda a, b: a > b
    ),
    ConditionOperator.LESS_THAN: lambda actual, expected: _compare(
        actual, expected, lambda a, b: a < b
    ),
    ConditionOperator.EXISTS: lambda actual, _expected: not is_blank(actual),
    ConditionOperator.IS_EMPTY: lambda actual, _expected: is_blank(actual),
}


def parse_operator(raw: Any) -> ConditionOperator:
    """Resolve an operator name or alias; unknown names fall back to equals."""
    if raw is None or raw == "":
        return ConditionOperator.EQUALS
    if raw in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[raw]
    try:
        return ConditionOperator(raw)
    except ValueError:
        logger.warning("Unknown condition operator %r, defaulting to equals", raw)
        return ConditionOperator.EQUALS


# =============================================================================
# Rule model
# =============================================================================


@dataclass
class Condition:
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None

    def evaluate(self, data: dict[str, Any]) -> bool:
        return OPERATORS[self.operator](data.get(self.field), self.value)


@dataclass
class ValueSource:
    """``then``/``else`` target: copy from another field or use a literal."""

    map_from: str | None = None
    value: Any = None
    has_value: bool = False

    def resolve(self, data: dict[str, Any]) -> Any:
        if self.map_from:
            return data.get(self.map_from)
        if self.has_value:
            return self.value
        return None

    @property
    def is_empty(self) -> bool:
        return not self.map_from and not self.has_value

    @classmethod
    def from_dict(cls, raw: Any) -> "ValueSource | None":
        if not isinstance(raw, dict):
            return None
        map_from = raw.get("mapFrom")
        if map_from is not None and not isinstance(map_from, str):
            raise ConfigurationError(
                f"mapFrom must be a field name, got {type(map_from).__name__}",
                field="conditionalMappings",
            )
        return cls(
            map_from=map_from or None,
            value=raw.get("value"),
            has_value="value" in raw,
        )


@dataclass
class WhenThenElseRule:
    """All ``when`` pairs must equal the form data (AND)."""

    when: dict[str, Any]
    then: ValueSource | None
    otherwise: ValueSource | None = None

    def resolve(self, data: dict[str, Any]) -> Any:
        matched = all(data.get(key) == expected for key, expected in self.when.items())
        branch = self.then if matched else self.otherwise
        # Only mapFrom is honoured on this shape.
        if branch is None or not branch.map_from:
            return None
        return data.get(branch.map_from)


@dataclass
class ConditionalEntry:
    condition: Condition
    then: ValueSource


@dataclass
class ConditionsListRule:
    """Ordered entries; the first satisfied condition wins."""

    entries: list[ConditionalEntry]

    def resolve(self, data: dict[str, Any]) -> Any:
        for entry in self.entries:
            # Entries without a target never stop the scan.
            if entry.then.is_empty:
                continue
            if entry.condition.evaluate(data):
                return entry.then.resolve(data)
        return None


ConditionalRule = WhenThenElseRule | ConditionsListRule


@dataclass
class MappingRules:
    target_object_type: str | None = None
    field_mappings: dict[str, str] = field(default_factory=dict)
    conditional_mappings: dict[str, ConditionalRule] = field(default_factory=dict)
    transformations: list[TransformSpec] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_split_name(self) -> bool:
        return any(t.type is TransformType.SPLIT_NAME for t in self.transformations)


@dataclass
class MappingResult:
    record: dict[str, Any]
    unmapped: list[str]


# =============================================================================
# Parsing
# =============================================================================


def _parse_condition(raw: Any) -> Condition | None:
    if not isinstance(raw, dict):
        return None
    field_name = raw.get("formField") or raw.get("field")
    if not field_name:
        return None
    if not isinstance(field_name, str):
        raise ConfigurationError(
            f"Condition field must be a field name, got {type(field_name).__name__}",
            field="conditionalMappings",
        )
    return Condition(
        field=field_name,
        operator=parse_operator(raw.get("operator")),
        value=raw.get("value"),
    )


def _parse_conditional_rule(target: str, raw: Any) -> ConditionalRule | None:
    if not isinstance(raw, dict):
        logger.warning("Invalid conditional mapping for %s", target)
        return None

    if isinstance(raw.get("when"), dict):
        return WhenThenElseRule(
            when=raw["when"],
            then=ValueSource.from_dict(raw.get("then")),
            otherwise=ValueSource.from_dict(raw.get("else")),
        )

    if isinstance(raw.get("conditions"), list):
        entries: list[ConditionalEntry] = []
        for item in raw["conditions"]:
            if not isinstance(item, dict):
                continue
            condition = _parse_condition(item.get("if"))
            then = ValueSource.from_dict(item.get("then"))
            if condition is None or then is None:
                continue
            entries.append(ConditionalEntry(condition=condition, then=then))
        return ConditionsListRule(entries=entries)

    logger.warning("Conditional mapping for %s has neither when nor conditions", target)
    return None


def _section(raw: dict[str, Any], key: str) -> Any:
    value = raw.get(key)
    return {} if value is None else value


def parse_mapping_rules(raw: Any) -> MappingRules:
    """
    Build MappingRules from decoded JSON.

    Raises:
        ConfigurationError: payload is not an object, or a section has the
            wrong type
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("Mapping rules must be a JSON object", field="mappingRules")

    field_mappings = _section(raw, "fieldMappings")
    if not isinstance(field_mappings, dict):
        raise ConfigurationError("fieldMappings must be an object", field="fieldMappings")

    conditional_raw = _section(raw, "conditionalMappings")
    if not isinstance(conditional_raw, dict):
        raise ConfigurationError(
            "conditionalMappings must be an object", field="conditionalMappings"
        )

    transformations_raw = _section(raw, "transformations")
    if not isinstance(transformations_raw, dict):
        raise ConfigurationError("transformations must be an object", field="transformations")

    conditional: dict[str, ConditionalRule] = {}
    for target, rule_raw in conditional_raw.items():
        rule = _parse_conditional_rule(target, rule_raw)
        if rule is not None:
            conditional[target] = rule

    transformations: list[TransformSpec] = []
    for key, spec_raw in transformations_raw.items():
        if not isinstance(spec_raw, dict):
            logger.warning("Invalid transformation rule for %s", key)
            continue
        try:
            transformations.append(TransformSpec.from_dict(key, spec_raw))
        except ValueError:
            logger.warning("Unknown transformation type %r for %s", spec_raw.get("type"), key)

    return MappingRules(
        target_object_type=raw.get("targetObjectType") or raw.get("salesforceObject"),
        field_mappings={k: v for k, v in field_mappings.items() if isinstance(v, str) and v},
        conditional_mappings=conditional,
        transformations=transformations,
        raw=raw,
    )


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(form_data: dict[str, Any], rules: MappingRules) -> MappingResult:
    """Produce the business record for one submission."""
    data = apply_transformations(form_data, rules.transformations)

    record: dict[str, Any] = {}
    unmapped: list[str] = []
    for key, value in data.items():
        target = rules.field_mappings.get(key)
        if target:
            record[target] = value
        else:
            unmapped.append(key)

    for target, rule in rules.conditional_mappings.items():
        resolved = rule.resolve(data)
        if resolved is not None:
            record[target] = resolved
        else:
            logger.debug("No conditional value for %s; keeping static mapping", target)

    if (
        not rules.has_split_name
        and rules.field_mappings.get("name") == "LastName"
        and not record.get("FirstName")
        and record.get("LastName")
    ):
        parts = split_full_name(data.get("name"))
        if parts and parts[0]:
            record["FirstName"], record["LastName"] = parts

    if unmapped:
        logger.debug("Unmapped form fields: %s", ", ".join(sorted(unmapped)))
    return MappingResult(record=record, unmapped=unmapped)
