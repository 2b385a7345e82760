import pytest

from docscribe.errors import DocumentNotFoundError, ProcessingError
from docscribe.models.document import Document, DocumentPage
from docscribe.models.schema import ExtractedData
from docscribe.services.ai_gateway import parse_schema

from conftest import SCHEMA_RESPONSE, USER_ID


def make_document(registry, doc_id="doc-1", name="form.pdf", size=1000, status="uploaded"):
    return registry.create(Document(id=doc_id, name=name, type="pdf", status=status, user_id=USER_ID, size=size))


class TestDocuments:
    def test_create_and_get(self, registry):
        make_document(registry)
        document = registry.get("doc-1")
        assert document.name == "form.pdf"
        assert document.created_at is not None

    def test_get_missing_raises(self, registry):
        with pytest.raises(DocumentNotFoundError):
            registry.get("nope")

    def test_failed_status_always_has_error(self, registry):
        make_document(registry)
        document = registry.set_status("doc-1", "failed")
        assert document.status == "failed"
        assert document.processing_error

    def test_processing_clears_previous_error(self, registry):
        make_document(registry)
        registry.set_status("doc-1", "failed", error="boom")
        document = registry.set_status("doc-1", "processing", progress=0)
        assert document.processing_error is None
        assert document.processing_progress == 0

    def test_remove_refuses_while_processing(self, registry):
        make_document(registry)
        registry.set_status("doc-1", "processing")
        with pytest.raises(ProcessingError):
            registry.remove("doc-1")
        registry.set_status("doc-1", "processed")
        registry.remove("doc-1")
        with pytest.raises(DocumentNotFoundError):
            registry.get("doc-1")


class TestFindDuplicate:
    def test_same_name_and_close_size_matches(self, registry):
        make_document(registry, size=1000, status="processed")
        assert registry.find_duplicate(USER_ID, "form.pdf", 1050).id == "doc-1"

    def test_size_outside_tolerance_does_not_match(self, registry):
        make_document(registry, size=1000, status="processed")
        assert registry.find_duplicate(USER_ID, "form.pdf", 1500) is None

    def test_other_users_and_failed_documents_do_not_match(self, registry):
        make_document(registry, size=1000, status="failed")
        assert registry.find_duplicate(USER_ID, "form.pdf", 1000) is None
        assert registry.find_duplicate("someone-else", "form.pdf", 1000) is None


class TestPagesAndLogs:
    def test_pages_are_ordered(self, registry):
        make_document(registry)
        for number in (3, 1, 2):
            registry.save_page(DocumentPage(document_id="doc-1", page_number=number, image_url=f"p{number}"))
        assert [p.page_number for p in registry.pages("doc-1")] == [1, 2, 3]

    def test_save_page_replaces_same_number(self, registry):
        make_document(registry)
        registry.save_page(DocumentPage(document_id="doc-1", page_number=1, image_url="old"))
        registry.save_page(DocumentPage(document_id="doc-1", page_number=1, image_url="new"))
        pages = registry.pages("doc-1")
        assert len(pages) == 1
        assert pages[0].image_url == "new"

    def test_logs_are_appended(self, registry):
        make_document(registry)
        registry.add_log("doc-1", "upload", "success", "ok")
        registry.add_log("doc-1", "transcription", "error", "bad")
        assert [log.action for log in registry.list_logs("doc-1")] == ["upload", "transcription"]


def test_save_document_data_writes_one_row_per_field(registry, db):
    make_document(registry)
    schema = registry.save_schema(parse_schema(SCHEMA_RESPONSE))
    data = ExtractedData(
        document_id="doc-1",
        schema_id=schema.id,
        values={"patients": {"full_name": "Jane Doe"}},
        confidence=0.5,
    )
    assert registry.save_document_data(data, schema) == 5
    rows = db.tables["document_data"]
    assert sum(1 for r in rows if r["value"] == "Jane Doe") == 1
    assert sum(1 for r in rows if r["value"] is None) == 4
    assert registry.get_schema(schema.id).field_count == 5
