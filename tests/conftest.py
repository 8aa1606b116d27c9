"""
Test configuration and fixtures.

Provides:
- Environment pointing the token file at a temp dir and the audit store at in-memory SQLite
- FakeRecordStore: in-memory describe/query/create with a unique tracking context id
- HTTPX AsyncClient over the ASGI app with the record store swapped for the fake
"""
import itertools
import os
import re
import tempfile
from collections import defaultdict
from typing import Any, AsyncGenerator, Generator

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="form-broker-tests-")
os.environ["ENV"] = "test"
os.environ["TOKEN_STORAGE_PATH"] = os.path.join(_TMP_DIR, "oauth-sessions.json")
os.environ["TOKEN_ENCRYPTION_KEY"] = ""
os.environ["AUDIT_DATABASE_URL"] = "sqlite://"
os.environ["SWEEP_INTERVAL_SECONDS"] = "3600"
os.environ["SALESFORCE_CLIENT_ID"] = "test-client-id"
os.environ["SALESFORCE_CLIENT_SECRET"] = "test-client-secret"

from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from form_broker.core.async_utils import drain_background_tasks
from form_broker.core.config import settings
from form_broker.core.deps import (
    get_audit_recorder,
    get_connection_provider,
    get_session_store,
    reset_dependencies,
)
from form_broker.core.errors import ApiErrorCategory, ExternalApiError
from form_broker.db.base import Base
from form_broker.db.session import init_db
from form_broker.main import app
from form_broker.services.audit_service import AuditRecorder
from form_broker.services.salesforce_client import CreateResult
from form_broker.services.session_service import InMemorySessionStore

init_db()


# =============================================================================
# Fake record store
# =============================================================================

_WHERE_PATTERN = re.compile(r"(\w+)\s*=\s*'((?:[^'\\]|\\.)*)'")
_FROM_PATTERN = re.compile(r"\bFROM\s+(\w+)(?:\s+WHERE\s+(.+?))?(?:\s+LIMIT\s+(\d+))?\s*$", re.I)

RELATIONSHIP_FIELDS = ["Id", "Form_Submission__c", "Related_Record_Id__c", "Related_Object_Type__c"]


class FakeRecordStore:
    """In-memory stand-in for the record store REST API."""

    instance_url = "https://test.my.salesforce.com"

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.create_calls: list[tuple[str, dict[str, Any]]] = []
        self.queries: list[str] = []
        self.create_failures: dict[str, CreateResult | Exception] = {}
        self.describe_fields: dict[str, list[str]] = {
            settings.RELATIONSHIP_OBJECT: list(RELATIONSHIP_FIELDS),
        }
        self.unique_fields: dict[str, str] = {settings.TRACKING_OBJECT: "Context_ID__c"}
        self._ids = itertools.count(1)

    # Helpers -----------------------------------------------------------------

    def add_form(
        self,
        form_id: str,
        *,
        mapping_rules: str | None = None,
        fields_json: str | None = None,
        agent_config: str | None = None,
        name: str | None = None,
        active: bool = True,
    ) -> str:
        record_id = self._next_id("a00")
        self.records[settings.FORM_DEFINITION_OBJECT][record_id] = {
            "Id": record_id,
            "Name": name or form_id,
            "Form_Id__c": form_id,
            "Fields_JSON__c": fields_json,
            "Mapping_Rules__c": mapping_rules,
            "Agent_Config__c": agent_config,
            "Active__c": active,
        }
        return record_id

    def all(self, object_type: str) -> list[dict[str, Any]]:
        return list(self.records[object_type].values())

    def created(self, object_type: str) -> list[dict[str, Any]]:
        return [record for obj, record in self.create_calls if obj == object_type]

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids):015d}"

    # Record store protocol ---------------------------------------------------

    async def describe(self, object_type: str) -> list[dict[str, Any]]:
        if object_type not in self.describe_fields:
            raise ExternalApiError(
                f"sObject type '{object_type}' is not supported",
                category=ApiErrorCategory.QUERY,
                error_code="NOT_FOUND",
                upstream_status=404,
            )
        return [{"name": name} for name in self.describe_fields[object_type]]

    async def query(self, soql: str) -> list[dict[str, Any]]:
        self.queries.append(soql)
        match = _FROM_PATTERN.search(soql)
        assert match, f"unsupported query: {soql}"
        object_type, where, limit = match.groups()
        conditions = [
            (name, value.replace("\\'", "'").replace("\\\\", "\\"))
            for name, value in _WHERE_PATTERN.findall(where or "")
        ]
        results = [
            dict(record)
            for record in self.records[object_type].values()
            if not conditions or any(record.get(name) == value for name, value in conditions)
        ]
        return results[: int(limit)] if limit else results

    async def create(self, object_type: str, record: dict[str, Any]) -> CreateResult:
        self.create_calls.append((object_type, dict(record)))
        failure = self.create_failures.get(object_type)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return failure

        unique_field = self.unique_fields.get(object_type)
        if unique_field and record.get(unique_field):
            for existing in self.records[object_type].values():
                if existing.get(unique_field) == record[unique_field]:
                    return CreateResult(
                        success=False,
                        errors=[f"duplicate value found: {unique_field} duplicates value on record with id: {existing['Id']}"],
                        error_codes=["DUPLICATE_VALUE"],
                    )

        record_id = self._next_id(object_type[:3])
        self.records[object_type][record_id] = {"Id": record_id, **record}
        return CreateResult(success=True, id=record_id)


class FakeConnectionProvider:
    def __init__(self, store: FakeRecordStore) -> None:
        self.store = store
        self.resolved_context_ids: list[str | None] = []

    async def resolve(self, context_id: str | None = None) -> FakeRecordStore:
        self.resolved_context_ids.append(context_id)
        return self.store

    async def aclose(self) -> None:
        return None


# =============================================================================
# Fixtures
# =============================================================================

TEST_DRIVE_RULES = """{
  "targetObjectType": "Lead",
  "fieldMappings": {
    "firstName": "FirstName",
    "lastName": "LastName",
    "email": "Email",
    "companyName": "Company"
  },
  "conditionalMappings": {
    "Company": {
      "when": {"enquiryType": "commercial"},
      "then": {"mapFrom": "companyName"},
      "else": {"mapFrom": "lastName"}
    }
  }
}"""


@pytest.fixture
def fake_store() -> FakeRecordStore:
    store = FakeRecordStore()
    store.add_form("test-drive", mapping_rules=TEST_DRIVE_RULES)
    return store


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def token_file(tmp_path, monkeypatch):
    path = tmp_path / "oauth-sessions.json"
    monkeypatch.setattr(settings, "TOKEN_STORAGE_PATH", str(path))
    return path


@pytest.fixture
async def client(
    fake_store: FakeRecordStore,
    session_store: InMemorySessionStore,
    audit_recorder: AuditRecorder,
    token_file,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient against the app with the fake record store."""
    reset_dependencies()
    app.dependency_overrides[get_connection_provider] = lambda: FakeConnectionProvider(fake_store)
    app.dependency_overrides[get_session_store] = lambda: session_store
    app.dependency_overrides[get_audit_recorder] = lambda: audit_recorder

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="https://test",
    ) as c:
        yield c

    await drain_background_tasks()
    app.dependency_overrides.clear()
    reset_dependencies()


@pytest.fixture
def fake_provider(fake_store: FakeRecordStore) -> FakeConnectionProvider:
    return FakeConnectionProvider(fake_store)


@pytest.fixture
def audit_recorder() -> Generator[AuditRecorder, None, None]:
    """AuditRecorder over its own in-memory database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield AuditRecorder(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()
