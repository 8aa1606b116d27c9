"""Form definition lookup.

Definitions live in the record store (``Form_Definition__c``) and are fetched
fresh for every request. The three JSON payloads (schema, mapping rules,
agent config) are decoded independently: a bad payload is recorded as a
ConfigurationError for that field and the others are still returned.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from form_broker.core.config import settings
from form_broker.core.errors import ConfigurationError, NotFoundError
from form_broker.services.mapping_service import MappingRules, parse_mapping_rules
from form_broker.services.salesforce_client import RecordStoreClient, soql_quote

logger = logging.getLogger(__name__)

FORM_ID_FIELD = "Form_Id__c"
FIELDS_JSON_FIELD = "Fields_JSON__c"
MAPPING_RULES_FIELD = "Mapping_Rules__c"
AGENT_CONFIG_FIELD = "Agent_Config__c"
ACTIVE_FIELD = "Active__c"


@dataclass
class FormDefinition:
    record_id: str
    form_id: str
    name: str | None = None
    fields_schema: Any = None
    mapping_rules: dict[str, Any] | None = None
    agent_config: Any = None
    active: bool = True
    parse_errors: dict[str, ConfigurationError] = field(default_factory=dict)

    def require_mapping_rules(self) -> MappingRules:
        """
        Parsed mapping rules for a submission.

        A definition without rules maps nothing (tracking-only submission).

        Raises:
            ConfigurationError: the stored rules could not be decoded or parsed
        """
        if MAPPING_RULES_FIELD in self.parse_errors:
            raise self.parse_errors[MAPPING_RULES_FIELD]
        if not self.mapping_rules:
            return MappingRules()
        return parse_mapping_rules(self.mapping_rules)

    def to_response(self) -> dict[str, Any]:
        """Client payload; the schema shape decides sections vs fields."""
        response: dict[str, Any] = {
            "formId": self.form_id,
            "name": self.name or "Unnamed Form",
            "mappings": self.mapping_rules,
            "agentConfig": self.agent_config,
            "active": self.active,
        }
        schema = self.fields_schema

        if isinstance(schema, dict) and schema.get("sections"):
            response["title"] = schema.get("title") or self.name
            response["sections"] = schema["sections"]
            response["formId"] = schema.get("formId") or self.form_id
        elif isinstance(schema, list):
            response["fields"] = schema
        elif isinstance(schema, dict) and schema.get("fields"):
            response["title"] = schema.get("title") or schema.get("name") or self.name
            response["formId"] = schema.get("formId") or self.form_id
            response["fields"] = schema["fields"]
        else:
            if schema is not None:
                logger.warning("No valid form structure in %s for %s", FIELDS_JSON_FIELD, self.form_id)
            response["fields"] = []
        return response


def _decode_json_field(
    record: dict[str, Any],
    field_name: str,
    errors: dict[str, ConfigurationError],
) -> Any:
    raw = record.get(field_name)
    if raw in (None, ""):
        return None
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in %s for form %s: %s", field_name, record.get("Id"), exc.msg)
        errors[field_name] = ConfigurationError(
            f"Invalid JSON in {field_name}: {exc.msg}",
            field=field_name,
            context={"formRecordId": record.get("Id")},
        )
        return None


def build_form_definition(record: dict[str, Any], requested_form_id: str) -> FormDefinition:
    errors: dict[str, ConfigurationError] = {}
    fields_schema = _decode_json_field(record, FIELDS_JSON_FIELD, errors)
    mapping_rules = _decode_json_field(record, MAPPING_RULES_FIELD, errors)
    agent_config = _decode_json_field(record, AGENT_CONFIG_FIELD, errors)

    if mapping_rules is not None and not isinstance(mapping_rules, dict):
        errors[MAPPING_RULES_FIELD] = ConfigurationError(
            f"{MAPPING_RULES_FIELD} must be a JSON object", field=MAPPING_RULES_FIELD
        )
        mapping_rules = None

    return FormDefinition(
        record_id=record.get("Id"),
        form_id=record.get(FORM_ID_FIELD) or record.get("Name") or requested_form_id,
        name=record.get("Name"),
        fields_schema=fields_schema,
        mapping_rules=mapping_rules,
        agent_config=agent_config,
        active=record.get(ACTIVE_FIELD) is not False,
        parse_errors=errors,
    )


async def fetch_form_definition(client: RecordStoreClient, form_id: str) -> FormDefinition:
    """
    Look up a form by its form id field or record name.

    Raises:
        NotFoundError: no definition matches
    """
    quoted = soql_quote(form_id)
    soql = (
        f"SELECT Id, Name, {FORM_ID_FIELD}, {FIELDS_JSON_FIELD}, {MAPPING_RULES_FIELD}, "
        f"{AGENT_CONFIG_FIELD}, {ACTIVE_FIELD} FROM {settings.FORM_DEFINITION_OBJECT} "
        f"WHERE {FORM_ID_FIELD} = {quoted} OR Name = {quoted} LIMIT 1"
    )
    records = await client.query(soql)
    if not records:
        raise NotFoundError("Form definition", form_id)
    return build_form_definition(records[0], form_id)
