"""Shared fixtures: in-memory stand-ins for the database, object storage and AI backend."""

import io
import os
import uuid

# Must be set before docscribe.config is imported
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SUPABASE_URL", "https://supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-key")

import pytest
from PyPDF2 import PdfWriter

from docscribe.clients.db_client import Database
from docscribe.clients.storage_client import ObjectStorage
from docscribe.errors import StorageError, StorageUnavailableError
from docscribe.pipelines.processing_pipeline import ProcessingPipeline
from docscribe.services.ai_gateway import AIGateway
from docscribe.services.document_registry import DocumentRegistry
from docscribe.services.page_converter import PageConverter
from docscribe.services.prompt_store import PromptStore
from docscribe.services.upload_tracker import UploadTracker

USER_ID = "user-1"

SCHEMA_RESPONSE = {
    "name": "Patient Intake",
    "description": "Handwritten patient intake forms",
    "tables": [
        {
            "name": "patients",
            "description": "One row per patient",
            "fields": [
                {"name": "full_name", "description": "Patient name", "type": "string", "required": True},
                {"name": "date_of_birth", "description": "Birth date", "type": "date", "required": False},
                {
                    "name": "gender",
                    "description": "Gender",
                    "type": "enum",
                    "required": False,
                    "enumValues": ["female", "male", "other"],
                },
            ],
        },
        {
            "name": "visits",
            "description": "One row per visit",
            "fields": [
                {"name": "visit_date", "description": "Date of the visit", "type": "date", "required": True},
                {"name": "notes", "description": "Clinician notes", "type": "string", "required": False},
            ],
        },
    ],
    "rationale": "Patients and their visits are separate entities.",
    "suggestions": [
        {"description": "Add an insurance table", "type": "add", "impact": "Billing data"},
        {"description": "Split full_name", "type": "modify", "impact": "Better sorting"},
        {"description": "Drop notes", "type": "remove", "impact": "Less noise"},
    ],
}


def _matches(row, filters):
    return all(row.get(k) == v for k, v in (filters or {}).items())


class FakeDatabase(Database):
    def __init__(self):
        self.tables = {}
        self.status_history = {}

    def _rows(self, table):
        return self.tables.setdefault(table, [])

    def _track(self, table, row):
        if table == "documents" and "status" in row:
            history = self.status_history.setdefault(row["id"], [])
            if not history or history[-1] != row["status"]:
                history.append(row["status"])

    def insert(self, table, row):
        row = dict(row)
        if table != "pipeline_documents":
            row.setdefault("id", str(uuid.uuid4()))
        self._rows(table).append(row)
        self._track(table, row)
        return dict(row)

    def update(self, table, values, filters):
        updated = []
        for row in self._rows(table):
            if _matches(row, filters):
                row.update(values)
                self._track(table, row)
                updated.append(dict(row))
        return updated

    def upsert(self, table, row, conflict):
        key = {c: row[c] for c in conflict}
        existing = [r for r in self._rows(table) if _matches(r, key)]
        if existing:
            existing[0].update(row)
            return dict(existing[0])
        return self.insert(table, row)

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        rows = [dict(r) for r in self._rows(table) if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        return rows[:limit] if limit else rows

    def delete(self, table, filters):
        before = self._rows(table)
        kept = [r for r in before if not _matches(r, filters)]
        self.tables[table] = kept
        return len(before) - len(kept)


class FakeStorage(ObjectStorage):
    BASE = "https://storage.test/"

    def __init__(self):
        self.objects = {}
        self.writes = []
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise StorageUnavailableError("Storage unreachable: connection refused")

    def upload(self, path, data, content_type):
        self._check()
        self.objects[path] = data
        self.writes.append(path)
        return self.public_url(path)

    def public_url(self, path):
        return self.BASE + path

    def download(self, path):
        self._check()
        if path not in self.objects:
            raise StorageError(f"Storage request failed (404): {path}")
        return self.objects[path]


class FakeBackend:
    """Answers like the Gemini backend; documents in fail_transcription get success=false"""

    def __init__(self):
        self.calls = []
        self.fail_transcription = set()
        self.schema = SCHEMA_RESPONSE
        self.schema_error = None
        self.responses = {}

    def invoke(self, operation, payload):
        self.calls.append((operation, payload))
        if operation in self.responses:
            return self.responses[operation]

        if operation == "transcribe":
            document_id = payload["documentIds"][0]
            if document_id in self.fail_transcription:
                return {
                    "success": False,
                    "error": {"message": "Model overloaded", "name": "ServerError", "stack": "Traceback ..."},
                }
            return {"success": True, "transcription": f"# Intake form\n- Name: Jane Doe\n[illegible] ({document_id})"}

        if operation == "generate_schema":
            if self.schema_error:
                return {"success": False, "error": {"message": self.schema_error, "name": "ServerError"}}
            return {"success": True, "schema": self.schema}

        if operation == "extract_data":
            return {
                "success": True,
                "tables": {
                    "patients": {"full_name": "Jane Doe", "date_of_birth": "1980-02-01", "gender": None},
                    "visits": {"visit_date": "2024-03-05", "notes": None},
                },
                "confidence": 0.87,
            }
        return {"success": True}

    def calls_for(self, operation):
        return [payload for op, payload in self.calls if op == operation]


class FakeRenderer:
    def __init__(self, failing_pages=()):
        self.failing_pages = set(failing_pages)
        self.rendered = []

    def __call__(self, data, page_number):
        if page_number in self.failing_pages:
            raise RuntimeError(f"Unable to render page {page_number}")
        self.rendered.append(page_number)
        return b"\xff\xd8jpeg-page-%d" % page_number


def make_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def registry(db):
    return DocumentRegistry(db)


@pytest.fixture
def prompt_store(db):
    return PromptStore(db)


@pytest.fixture
def gateway(backend, prompt_store):
    return AIGateway(backend, prompt_store, model="gemini-test")


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def tracker(notifications):
    return UploadTracker(notifier=notifications.append)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def converter(registry, storage, tracker, renderer):
    return PageConverter(registry, storage, tracker, render_page=renderer)


@pytest.fixture
def snapshots():
    return []


@pytest.fixture
def pipeline(registry, storage, gateway, tracker, converter, snapshots):
    return ProcessingPipeline(
        user_id=USER_ID,
        registry=registry,
        storage=storage,
        gateway=gateway,
        tracker=tracker,
        converter=converter,
        snapshot_sink=lambda session_id, snapshot: snapshots.append(snapshot),
    )
