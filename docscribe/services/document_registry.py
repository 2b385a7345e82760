"""
Document Registry: CRUD facade over document, page, log, schema and
extracted-data rows. It is the source of truth for document lifecycle status.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from docscribe.clients.db_client import Database
from docscribe.config import config
from docscribe.errors import DocumentNotFoundError, ProcessingError
from docscribe.models.document import Document, DocumentPage, DocumentStatus, LogStatus, ProcessingLog
from docscribe.models.schema import DocumentSchema, ExtractedData

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentRegistry:
    def __init__(self, db: Database):
        self.db = db

    # Documents

    def create(self, document: Document) -> Document:
        now = _now()
        document.created_at = document.created_at or now
        document.updated_at = now
        row = self.db.insert("documents", document.model_dump(exclude_none=True))
        logger.info("Registered document %s (%s)", document.id, document.name)
        return Document(**row)

    def get(self, document_id: str) -> Document:
        rows = self.db.select("documents", {"id": document_id}, limit=1)
        if not rows:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return Document(**rows[0])

    def get_many(self, document_ids: List[str]) -> List[Document]:
        return [self.get(document_id) for document_id in document_ids]

    def update(self, document_id: str, **values) -> Document:
        values["updated_at"] = _now()
        rows = self.db.update("documents", values, {"id": document_id})
        if not rows:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return Document(**rows[0])

    def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error: Optional[str] = None,
        progress: Optional[float] = None,
    ) -> Document:
        """Lifecycle transition; a failed document always carries its error text"""
        values = {"status": status}
        if status == "failed":
            values["processing_error"] = error or "Processing failed"
        elif status in ("processing", "processed"):
            values["processing_error"] = None
        if progress is not None:
            values["processing_progress"] = progress
        return self.update(document_id, **values)

    def find_duplicate(self, user_id: str, name: str, size: int) -> Optional[Document]:
        """
        An earlier upload of the same file by the same user: same name and a
        byte size within DUPLICATE_SIZE_TOLERANCE. Failed uploads never match.
        """
        for row in self.db.select("documents", {"user_id": user_id, "name": name}):
            candidate = Document(**row)
            if candidate.status == "failed" or candidate.size is None:
                continue
            if abs(candidate.size - size) <= config.DUPLICATE_SIZE_TOLERANCE:
                return candidate
        return None

    def remove(self, document_id: str) -> None:
        document = self.get(document_id)
        if document.status == "processing":
            raise ProcessingError(f"Document {document_id} is being processed and cannot be removed")
        self.db.delete("document_pages", {"document_id": document_id})
        self.db.delete("documents", {"id": document_id})
        logger.info("Removed document %s", document_id)

    # Pages

    def pages(self, document_id: str) -> List[DocumentPage]:
        rows = self.db.select("document_pages", {"document_id": document_id}, order_by="page_number")
        return [DocumentPage(**row) for row in rows]

    def save_page(self, page: DocumentPage) -> DocumentPage:
        row = self.db.upsert(
            "document_pages",
            page.model_dump(exclude_none=True),
            conflict=("document_id", "page_number"),
        )
        return DocumentPage(**row)

    def set_page_text(self, document_id: str, page_number: int, text: str) -> None:
        self.db.update(
            "document_pages",
            {"text_content": text},
            {"document_id": document_id, "page_number": page_number},
        )

    def clear_pages(self, document_id: str) -> int:
        return self.db.delete("document_pages", {"document_id": document_id})

    # Audit log

    def add_log(self, document_id: str, action: str, status: LogStatus, message: Optional[str] = None) -> ProcessingLog:
        log = ProcessingLog(document_id=document_id, action=action, status=status, message=message, created_at=_now())
        row = self.db.insert("processing_logs", log.model_dump(exclude_none=True))
        return ProcessingLog(**row)

    def list_logs(self, document_id: str) -> List[ProcessingLog]:
        rows = self.db.select("processing_logs", {"document_id": document_id}, order_by="created_at")
        return [ProcessingLog(**row) for row in rows]

    # Schemas and extracted data

    def save_schema(self, schema: DocumentSchema) -> DocumentSchema:
        now = _now()
        schema.created_at = schema.created_at or now
        schema.updated_at = now
        row = schema.to_row()
        row["created_at"] = schema.created_at
        row["updated_at"] = schema.updated_at
        self.db.upsert("document_schemas", row, conflict=("id",))
        logger.info("Saved schema %s (%d tables, %d fields)", schema.id, schema.table_count, schema.field_count)
        return schema

    def get_schema(self, schema_id: str) -> Optional[DocumentSchema]:
        rows = self.db.select("document_schemas", {"id": schema_id}, limit=1)
        return DocumentSchema(**rows[0]) if rows else None

    def save_document_data(self, data: ExtractedData, schema: DocumentSchema) -> int:
        """One document_data row per schema field; fields the model left out are stored as null"""
        self.db.delete("document_data", {"document_id": data.document_id})
        count = 0
        for table in schema.structure:
            table_values = data.values.get(table.name) or {}
            for field in table.fields:
                value = table_values.get(field.name)
                self.db.insert("document_data", {
                    "document_id": data.document_id,
                    "table_id": table.id,
                    "field_id": field.id,
                    "value": None if value is None else str(value),
                    "confidence": data.confidence,
                })
                count += 1
        return count
