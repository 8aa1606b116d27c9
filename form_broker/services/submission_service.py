"""Form submission orchestrator - the three-step record saga.

Step A  business record (Lead, Case, ...) built from the mapping rules.
        Empty mapped record aborts before any side effect. A failed create is
        logged and the saga continues with no business ids.
Step B  tracking record, keyed uniquely by context id. Always runs. An
        existing record is reused; a uniqueness violation on create falls
        back to a re-query.
Step C  one relationship record per business record, only when both a
        tracking id and at least one business id exist. Failures surface as a
        warning and never undo steps A/B.

The external store has no transactions; idempotency is best effort and
relies on its unique constraint on the tracking record's context id.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from form_broker.core.async_utils import spawn_background
from form_broker.core.config import settings
from form_broker.core.errors import (
    BrokerError,
    ConfigurationError,
    ExternalApiError,
    InternalError,
    classify_api_error,
)
from form_broker.core.structured_logging import build_log_context
from form_broker.services import mapping_service
from form_broker.services.audit_service import AuditRecorder, SubmissionEntry
from form_broker.services.connection_service import ConnectionProvider
from form_broker.services.context_service import validate_context_id
from form_broker.services.form_definition_service import fetch_form_definition
from form_broker.services.salesforce_client import RecordStoreClient, soql_quote
from form_broker.services.session_service import SessionStore, get_session

logger = logging.getLogger(__name__)

# Tracking record fields
TRACKING_CONTEXT_FIELD = "Context_ID__c"
TRACKING_SESSION_FIELD = "Session_ID__c"
TRACKING_FORM_ID_FIELD = "Form_Id__c"
TRACKING_DEFINITION_FIELD = "Form_Definition__c"
TRACKING_DATA_FIELD = "Submission_Data__c"
TRACKING_SUBMITTED_AT_FIELD = "Submitted_At__c"

# Relationship record fields
REL_TRACKING_FIELD = "Form_Submission__c"
REL_RECORD_ID_FIELD = "Related_Record_Id__c"
REL_OBJECT_TYPE_FIELD = "Related_Object_Type__c"
RELATIONSHIP_REQUIRED_FIELDS = (REL_TRACKING_FIELD, REL_RECORD_ID_FIELD, REL_OBJECT_TYPE_FIELD)

DEFAULT_RELATIONSHIP_WARNING = (
    "Business record was created but relationship record was not created. "
    "Check broker logs for errors."
)


@dataclass
class BusinessRecordRef:
    id: str
    object_type: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "objectType": self.object_type}


@dataclass
class SubmissionResult:
    tracking_id: str
    form_id: str
    context_id: str | None = None
    business_records: list[BusinessRecordRef] = field(default_factory=list)
    relationship_ids: list[str] = field(default_factory=list)
    is_duplicate: bool = False
    warning: str | None = None
    duration_ms: int = 0

    @property
    def relationship_attempted(self) -> bool:
        return bool(self.business_records)

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": True,
            "trackingId": self.tracking_id,
            "businessRecordIds": [r.to_dict() for r in self.business_records],
            "relationshipIds": list(self.relationship_ids),
            "contextId": self.context_id,
            "isDuplicate": self.is_duplicate,
            "message": (
                "Form submission already exists for this context - using existing record"
                if self.is_duplicate
                else "Form submitted successfully"
            ),
            "durationMs": self.duration_ms,
            "debug": {
                "businessRecordsCreated": len(self.business_records),
                "relationshipsCreated": len(self.relationship_ids),
                "relationshipAttempted": self.relationship_attempted,
                "existingSubmission": self.is_duplicate,
            },
        }
        if self.warning:
            response["warning"] = self.warning
        return response


class SubmissionOrchestrator:
    def __init__(
        self,
        connection_provider: ConnectionProvider,
        session_store: SessionStore,
        audit_recorder: AuditRecorder | None = None,
    ) -> None:
        self.connection_provider = connection_provider
        self.session_store = session_store
        self.audit_recorder = audit_recorder

    async def submit(
        self,
        form_id: str,
        context_id: str | None,
        form_data: dict[str, Any],
    ) -> SubmissionResult:
        """
        Run the saga for one submission.

        Raises:
            ValidationError: malformed context id or form id mismatch
            NotFoundError: no form definition
            ConfigurationError: unparseable rules or empty business record
            UpstreamConnectionError: no usable record store handle
            ExternalApiError: the tracking record could not be created or found
        """
        started = time.monotonic()
        session_id: str | None = None
        data = dict(form_data or {})
        mapping_raw: dict[str, Any] | None = None

        try:
            if context_id:
                parsed = validate_context_id(context_id, form_id)
                session_id = parsed.session_id
                session = get_session(self.session_store, session_id)
                if session and session.context_id == context_id:
                    # Submitted values win over stored session values.
                    data = {**session.form_data, **data}

            log_extra = build_log_context(
                context_id=context_id, form_id=form_id, session_id=session_id
            )
            client = await self.connection_provider.resolve(context_id)
            definition = await fetch_form_definition(client, form_id)
            mapping_raw = definition.mapping_rules
            rules = definition.require_mapping_rules()

            business_records = await self._create_business_record(
                client, rules, data, log_extra
            )
            tracking_id, is_duplicate = await self._resolve_tracking_record(
                client,
                definition_record_id=definition.record_id,
                form_id=form_id,
                context_id=context_id,
                session_id=session_id,
                form_data=data,
                log_extra=log_extra,
            )
            relationship_ids, relationship_error = await self._link_records(
                client, tracking_id, business_records, is_duplicate, log_extra
            )
        except BrokerError as exc:
            self._audit(
                SubmissionEntry(
                    form_id=form_id,
                    context_id=context_id,
                    form_data=data,
                    mapping_rules=mapping_raw,
                    success=False,
                    error_message=exc.message,
                    duration_ms=_elapsed_ms(started),
                )
            )
            raise
        except Exception as exc:
            logger.exception("Unexpected failure during submission for form %s", form_id)
            self._audit(
                SubmissionEntry(
                    form_id=form_id,
                    context_id=context_id,
                    form_data=data,
                    mapping_rules=mapping_raw,
                    success=False,
                    error_message=f"Internal error: {type(exc).__name__}",
                    duration_ms=_elapsed_ms(started),
                )
            )
            raise InternalError("Submission failed unexpectedly") from exc

        warning = None
        if business_records and not relationship_ids:
            warning = relationship_error or DEFAULT_RELATIONSHIP_WARNING

        result = SubmissionResult(
            tracking_id=tracking_id,
            form_id=form_id,
            context_id=context_id,
            business_records=business_records,
            relationship_ids=relationship_ids,
            is_duplicate=is_duplicate,
            warning=warning,
            duration_ms=_elapsed_ms(started),
        )
        logger.info(
            "Submission complete: tracking=%s business=%s relationships=%s duplicate=%s",
            tracking_id,
            len(business_records),
            len(relationship_ids),
            is_duplicate,
            extra=log_extra,
        )
        self._audit(
            SubmissionEntry(
                form_id=form_id,
                context_id=context_id,
                tracking_id=tracking_id,
                business_record_ids=[r.to_dict() for r in business_records],
                relationship_ids=relationship_ids,
                form_data=data,
                mapping_rules=mapping_raw,
                is_duplicate=is_duplicate,
                success=True,
                warning_message=warning,
                error_message=relationship_error,
                duration_ms=result.duration_ms,
            )
        )
        return result

    # -------------------------------------------------------------------------
    # Step A
    # -------------------------------------------------------------------------

    async def _create_business_record(
        self,
        client: RecordStoreClient,
        rules: mapping_service.MappingRules,
        form_data: dict[str, Any],
        log_extra: dict[str, Any],
    ) -> list[BusinessRecordRef]:
        object_type = rules.target_object_type
        if not object_type or object_type == settings.TRACKING_OBJECT:
            return []

        mapped = mapping_service.evaluate(form_data, rules)
        if not mapped.record:
            raise ConfigurationError(
                f"No fields mapped for {object_type}. Check fieldMappings in the mapping rules.",
                field="fieldMappings",
                context={"objectType": object_type, "formFields": sorted(form_data)},
            )

        try:
            result = await client.create(object_type, mapped.record)
        except BrokerError as exc:
            logger.error(
                "Failed to create %s, continuing with tracking record: %s",
                object_type,
                exc.message,
                extra=log_extra,
            )
            return []

        if not result.success or not result.id:
            logger.error(
                "Failed to create %s, continuing with tracking record: %s",
                object_type,
                result.error_message if not result.success else "no id returned",
                extra=log_extra,
            )
            return []

        spawn_background(
            _verify_business_record(client, object_type, result.id, mapped.record),
            name=f"verify-{object_type}-{result.id}",
        )
        return [BusinessRecordRef(id=result.id, object_type=object_type)]

    # -------------------------------------------------------------------------
    # Step B
    # -------------------------------------------------------------------------

    async def _find_tracking_record(
        self, client: RecordStoreClient, context_id: str
    ) -> str | None:
        soql = (
            f"SELECT Id, {TRACKING_FORM_ID_FIELD}, {TRACKING_SUBMITTED_AT_FIELD} "
            f"FROM {settings.TRACKING_OBJECT} "
            f"WHERE {TRACKING_CONTEXT_FIELD} = {soql_quote(context_id)} LIMIT 1"
        )
        records = await client.query(soql)
        if not records:
            return None
        return records[0].get("Id")

    async def _resolve_tracking_record(
        self,
        client: RecordStoreClient,
        *,
        definition_record_id: str | None,
        form_id: str,
        context_id: str | None,
        session_id: str | None,
        form_data: dict[str, Any],
        log_extra: dict[str, Any],
    ) -> tuple[str, bool]:
        """Return (tracking_id, is_duplicate)."""
        if context_id:
            try:
                existing = await self._find_tracking_record(client, context_id)
            except BrokerError as exc:
                # Creation below still hits the unique constraint.
                logger.warning(
                    "Could not check for existing tracking record: %s",
                    exc.message,
                    extra=log_extra,
                )
                existing = None
            if existing:
                logger.info("Duplicate submission, reusing tracking record %s", existing, extra=log_extra)
                return existing, True

        record: dict[str, Any] = {
            TRACKING_FORM_ID_FIELD: form_id,
            TRACKING_DATA_FIELD: json.dumps(form_data, default=str),
            TRACKING_SUBMITTED_AT_FIELD: datetime.now(timezone.utc).isoformat(),
        }
        if definition_record_id:
            record[TRACKING_DEFINITION_FIELD] = definition_record_id
        if context_id:
            record[TRACKING_CONTEXT_FIELD] = context_id
        if session_id:
            record[TRACKING_SESSION_FIELD] = session_id

        result = await client.create(settings.TRACKING_OBJECT, record)
        if result.success and result.id:
            return result.id, False

        if context_id and result.is_duplicate:
            existing = await self._find_tracking_record(client, context_id)
            if existing:
                logger.info(
                    "Tracking record created concurrently, reusing %s", existing, extra=log_extra
                )
                return existing, True

        error_code = result.error_codes[0] if result.error_codes else None
        raise ExternalApiError(
            f"Failed to create {settings.TRACKING_OBJECT}: {result.error_message}",
            category=classify_api_error(error_code, None, "create"),
            error_code=error_code,
            context={"contextId": context_id},
        )

    # -------------------------------------------------------------------------
    # Step C
    # -------------------------------------------------------------------------

    async def _link_records(
        self,
        client: RecordStoreClient,
        tracking_id: str,
        business_records: list[BusinessRecordRef],
        is_duplicate: bool,
        log_extra: dict[str, Any],
    ) -> tuple[list[str], str | None]:
        """Return (relationship_ids, error_message)."""
        if not tracking_id or not business_records:
            return [], None

        if is_duplicate:
            soql = (
                f"SELECT Id, {REL_RECORD_ID_FIELD}, {REL_OBJECT_TYPE_FIELD} "
                f"FROM {settings.RELATIONSHIP_OBJECT} "
                f"WHERE {REL_TRACKING_FIELD} = {soql_quote(tracking_id)}"
            )
            try:
                existing = await client.query(soql)
            except BrokerError as exc:
                logger.warning(
                    "Could not check for existing relationships: %s", exc.message, extra=log_extra
                )
                existing = []
            if existing:
                return [r["Id"] for r in existing if r.get("Id")], None

        try:
            await self._check_relationship_object(client)
        except BrokerError as exc:
            logger.error("Relationship preflight failed: %s", exc.message, extra=log_extra)
            return [], exc.message

        relationship_ids: list[str] = []
        errors: list[str] = []
        for ref in business_records:
            record = {
                REL_TRACKING_FIELD: tracking_id,
                REL_RECORD_ID_FIELD: ref.id,
                REL_OBJECT_TYPE_FIELD: ref.object_type,
            }
            try:
                result = await client.create(settings.RELATIONSHIP_OBJECT, record)
            except BrokerError as exc:
                errors.append(exc.message)
                continue
            if result.success and result.id:
                relationship_ids.append(result.id)
            else:
                errors.append(result.error_message)

        if errors:
            logger.error(
                "Failed to create %s of %s relationship records: %s",
                len(errors),
                len(business_records),
                "; ".join(errors),
                extra=log_extra,
            )
        return relationship_ids, "; ".join(errors) or None

    async def _check_relationship_object(self, client: RecordStoreClient) -> None:
        try:
            fields = await client.describe(settings.RELATIONSHIP_OBJECT)
        except BrokerError as exc:
            raise ExternalApiError(
                f"{settings.RELATIONSHIP_OBJECT} object not accessible: {exc.message}"
            ) from exc

        names = {f.get("name") for f in fields}
        missing = [name for name in RELATIONSHIP_REQUIRED_FIELDS if name not in names]
        if missing:
            raise ConfigurationError(
                f"Missing required fields on {settings.RELATIONSHIP_OBJECT}: {', '.join(missing)}",
                field=settings.RELATIONSHIP_OBJECT,
            )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _audit(self, entry: SubmissionEntry) -> None:
        if self.audit_recorder is None:
            return
        spawn_background(
            self.audit_recorder.record_submission(entry),
            name=f"audit-submission-{entry.form_id}",
        )


async def _verify_business_record(
    client: RecordStoreClient,
    object_type: str,
    record_id: str,
    expected: dict[str, Any],
) -> None:
    """Read the record back and log mismatches. Never fatal."""
    fields = ", ".join(["Id", *expected.keys()])
    soql = f"SELECT {fields} FROM {object_type} WHERE Id = {soql_quote(record_id)} LIMIT 1"
    try:
        records = await client.query(soql)
    except BrokerError as exc:
        logger.warning("Verification of %s %s failed: %s", object_type, record_id, exc.message)
        return

    if not records:
        logger.warning("Verification: %s %s not found after create", object_type, record_id)
        return

    actual = records[0]
    mismatched = [name for name, value in expected.items() if actual.get(name) != value]
    if mismatched:
        logger.warning(
            "Verification: %s %s differs on fields %s",
            object_type,
            record_id,
            ", ".join(mismatched),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
