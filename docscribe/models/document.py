from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field

DocumentKind = Literal["pdf", "image"]
DocumentStatus = Literal["uploaded", "processing", "processed", "failed"]
LogStatus = Literal["success", "error", "warning"]


class Document(BaseModel):
    id: str
    name: str
    type: DocumentKind
    status: DocumentStatus = "uploaded"
    user_id: str
    size: Optional[int] = None
    original_url: Optional[str] = None
    page_count: Optional[int] = None
    transcription: Optional[str] = None
    processing_error: Optional[str] = None
    processing_progress: Optional[float] = None
    pipeline_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentPage(BaseModel):
    id: Optional[str] = None
    document_id: str
    page_number: int
    image_url: Optional[str] = None
    text_content: Optional[str] = None


class ProcessingLog(BaseModel):
    id: Optional[str] = None
    document_id: str
    action: str
    status: LogStatus
    message: Optional[str] = None
    created_at: Optional[datetime] = None


class DocumentPrompt(BaseModel):
    id: Optional[str] = None
    document_id: str
    prompt_type: str
    prompt_text: str
    created_at: Optional[datetime] = None


class DocumentPipeline(BaseModel):
    id: str
    name: str
    description: str = ""
    document_count: int = 0
    status: Literal["active", "processing", "completed"] = "active"
    document_ids: List[str] = Field(default_factory=list)


class FileUpload(BaseModel):
    """A file handed to the pipeline for upload"""
    name: str
    content: bytes
    content_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.content)
