"""Tests for the mapping rules DSL."""

import pytest

from form_broker.core.errors import ConfigurationError
from form_broker.services.mapping_service import (
    ConditionOperator,
    Condition,
    ConditionsListRule,
    WhenThenElseRule,
    evaluate,
    parse_mapping_rules,
    parse_operator,
)

COMPANY_RULE = {
    "targetObjectType": "Lead",
    "fieldMappings": {"lastName": "LastName"},
    "conditionalMappings": {
        "Company": {
            "when": {"enquiryType": "commercial"},
            "then": {"mapFrom": "companyName"},
            "else": {"mapFrom": "lastName"},
        }
    },
}


# =============================================================================
# Parsing
# =============================================================================


def test_parse_accepts_legacy_object_key():
    rules = parse_mapping_rules({"salesforceObject": "Case", "fieldMappings": {"a": "A"}})
    assert rules.target_object_type == "Case"
    assert rules.field_mappings == {"a": "A"}


def test_parse_builds_rule_shapes():
    rules = parse_mapping_rules(
        {
            **COMPANY_RULE,
            "conditionalMappings": {
                **COMPANY_RULE["conditionalMappings"],
                "LeadSource": {
                    "conditions": [
                        {"if": {"formField": "source", "operator": "==", "value": "web"},
                         "then": {"value": "Web"}}
                    ]
                },
            },
        }
    )
    assert isinstance(rules.conditional_mappings["Company"], WhenThenElseRule)
    source_rule = rules.conditional_mappings["LeadSource"]
    assert isinstance(source_rule, ConditionsListRule)
    assert source_rule.entries[0].condition.field == "source"
    assert source_rule.entries[0].condition.operator is ConditionOperator.EQUALS


@pytest.mark.parametrize(
    "raw",
    [
        [],
        "Lead",
        {"fieldMappings": ["a"]},
        {"conditionalMappings": "x"},
        {"transformations": []},
    ],
)
def test_parse_rejects_wrong_types(raw):
    with pytest.raises(ConfigurationError):
        parse_mapping_rules(raw)


def test_parse_skips_unknown_transformation_types():
    rules = parse_mapping_rules({"transformations": {"x": {"type": "reverse"}}})
    assert rules.transformations == []


# =============================================================================
# Operators
# =============================================================================


@pytest.mark.parametrize(
    "operator,actual,expected,result",
    [
        ("equals", "a", "a", True),
        ("equals", "a", "b", False),
        ("notEquals", "a", "b", True),
        ("contains", "commercial lease", "lease", True),
        ("notContains", "residential", "lease", True),
        ("greaterThan", "10", 5, True),
        ("greaterThan", "abc", 5, False),
        ("lessThan", 3, "5", True),
        ("exists", "x", None, True),
        ("exists", "", None, False),
        ("isEmpty", None, None, True),
        ("isEmpty", "x", None, False),
    ],
)
def test_operator_table(operator, actual, expected, result):
    condition = Condition(field="f", operator=parse_operator(operator), value=expected)
    assert condition.evaluate({"f": actual}) is result


@pytest.mark.parametrize(
    "alias,operator",
    [
        ("==", ConditionOperator.EQUALS),
        ("!=", ConditionOperator.NOT_EQUALS),
        (">", ConditionOperator.GREATER_THAN),
        ("<", ConditionOperator.LESS_THAN),
        ("isNotEmpty", ConditionOperator.EXISTS),
        ("notExists", ConditionOperator.IS_EMPTY),
        ("startsWith", ConditionOperator.EQUALS),
        (None, ConditionOperator.EQUALS),
    ],
)
def test_parse_operator_aliases(alias, operator):
    assert parse_operator(alias) is operator


# =============================================================================
# Evaluation
# =============================================================================


def test_when_then_else_then_branch():
    rules = parse_mapping_rules(COMPANY_RULE)
    result = evaluate({"enquiryType": "commercial", "companyName": "Acme"}, rules)
    assert result.record["Company"] == "Acme"


def test_when_then_else_else_branch():
    rules = parse_mapping_rules(COMPANY_RULE)
    result = evaluate({"enquiryType": "personal", "lastName": "Smith"}, rules)
    assert result.record == {"LastName": "Smith", "Company": "Smith"}


def test_when_requires_every_key():
    rules = parse_mapping_rules(
        {
            "conditionalMappings": {
                "Company": {
                    "when": {"enquiryType": "commercial", "country": "US"},
                    "then": {"mapFrom": "companyName"},
                }
            }
        }
    )
    result = evaluate({"enquiryType": "commercial", "country": "CA", "companyName": "Acme"}, rules)
    assert "Company" not in result.record


def test_conditional_without_value_keeps_static_mapping():
    rules = parse_mapping_rules(
        {
            "fieldMappings": {"company": "Company"},
            "conditionalMappings": {
                "Company": {"when": {"type": "b2b"}, "then": {"mapFrom": "legalName"}}
            },
        }
    )
    result = evaluate({"type": "b2b", "company": "Acme"}, rules)
    assert result.record["Company"] == "Acme"


def test_conditions_list_first_match_wins():
    rules = parse_mapping_rules(
        {
            "conditionalMappings": {
                "Rating": {
                    "conditions": [
                        {"if": {"field": "budget", "operator": "greaterThan", "value": 100},
                         "then": {"value": "Warm"}},
                        {"if": {"field": "budget", "operator": "greaterThan", "value": 10},
                         "then": {"value": "Cold"}},
                    ]
                }
            }
        }
    )
    assert evaluate({"budget": 500}, rules).record == {"Rating": "Warm"}
    assert evaluate({"budget": 50}, rules).record == {"Rating": "Cold"}
    assert evaluate({"budget": 1}, rules).record == {}


def test_conditions_list_map_from():
    rules = parse_mapping_rules(
        {
            "conditionalMappings": {
                "Description": {
                    "conditions": [
                        {"if": {"field": "notes", "operator": "exists"},
                         "then": {"mapFrom": "notes"}}
                    ]
                }
            }
        }
    )
    assert evaluate({"notes": "call me"}, rules).record == {"Description": "call me"}


def test_unmapped_fields_are_collected():
    rules = parse_mapping_rules({"fieldMappings": {"email": "Email"}})
    result = evaluate({"email": "a@b.co", "favouriteColour": "blue"}, rules)
    assert result.record == {"Email": "a@b.co"}
    assert result.unmapped == ["favouriteColour"]


def test_transformed_keys_available_to_static_mapping():
    rules = parse_mapping_rules(
        {
            "fieldMappings": {"phoneFormatted": "Phone"},
            "transformations": {
                "phoneFormatted": {"type": "formatPhone", "source": "phone", "format": "E164"}
            },
        }
    )
    assert evaluate({"phone": "(415) 555-1212"}, rules).record == {"Phone": "+14155551212"}


def test_legacy_name_field_split_into_first_and_last():
    rules = parse_mapping_rules({"fieldMappings": {"name": "LastName"}})
    assert evaluate({"name": "John Q Public"}, rules).record == {
        "FirstName": "John Q",
        "LastName": "Public",
    }
    assert evaluate({"name": "Madonna"}, rules).record == {"LastName": "Madonna"}


def test_legacy_name_split_skipped_when_split_name_configured():
    rules = parse_mapping_rules(
        {
            "fieldMappings": {"name": "LastName", "First": "FirstName", "Last": "LastName"},
            "transformations": {
                "split": {
                    "type": "splitName",
                    "source": "name",
                    "target": {"firstName": "First", "lastName": "Last"},
                }
            },
        }
    )
    record = evaluate({"name": "Ada King Lovelace"}, rules).record
    assert record["FirstName"] == "Ada King"
    assert record["LastName"] == "Lovelace"


def test_legacy_name_split_skipped_when_first_name_mapped():
    rules = parse_mapping_rules({"fieldMappings": {"name": "LastName", "first": "FirstName"}})
    record = evaluate({"name": "Grace Hopper", "first": "Grace"}, rules).record
    assert record == {"LastName": "Grace Hopper", "FirstName": "Grace"}


def test_legacy_name_split_runs_when_mapped_first_name_is_empty():
    rules = parse_mapping_rules({"fieldMappings": {"name": "LastName", "first": "FirstName"}})
    record = evaluate({"name": "Grace Hopper", "first": ""}, rules).record
    assert record == {"FirstName": "Grace", "LastName": "Hopper"}


def test_conditions_list_skips_entries_without_target():
    rules = parse_mapping_rules(
        {
            "conditionalMappings": {
                "LeadSource": {
                    "conditions": [
                        {"if": {"field": "a", "operator": "exists"}, "then": {}},
                        {"if": {"field": "a", "operator": "exists"}, "then": {"value": "Web"}},
                    ]
                }
            }
        }
    )
    assert evaluate({"a": "x"}, rules).record == {"LeadSource": "Web"}


@pytest.mark.parametrize(
    "rule",
    [
        {"when": {"a": "x"}, "then": {"mapFrom": ["b"]}},
        {"when": {"a": "x"}, "then": {"mapFrom": "b"}, "else": {"mapFrom": {"f": 1}}},
        {"conditions": [{"if": {"field": "a"}, "then": {"mapFrom": 3}}]},
        {"conditions": [{"if": {"field": ["a"], "operator": "exists"}, "then": {"value": 1}}]},
    ],
)
def test_parse_rejects_non_string_field_references(rule):
    with pytest.raises(ConfigurationError) as exc_info:
        parse_mapping_rules({"conditionalMappings": {"Company": rule}})
    assert exc_info.value.field == "conditionalMappings"
