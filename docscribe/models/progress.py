import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

UploadStatus = Literal["uploading", "processing", "complete", "error"]
StepStatus = Literal["waiting", "in_progress", "completed", "failed"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Stage(str, Enum):
    UPLOAD = "Document Upload"
    TRANSCRIPTION = "Document Transcription"
    SCHEMA_GENERATION = "Schema Generation"
    SCHEMA_REFINEMENT = "Schema Refinement"


STAGE_ORDER = [Stage.UPLOAD, Stage.TRANSCRIPTION, Stage.SCHEMA_GENERATION, Stage.SCHEMA_REFINEMENT]

def parse_stage(value) -> Stage:
    """Accept a Stage, its display name ("Schema Generation") or its member name ("schema_generation")"""
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        key = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        if key in Stage.__members__:
            return Stage[key]
        raise


STAGE_DESCRIPTIONS = {
    Stage.UPLOAD: "Upload PDF documents for processing",
    Stage.TRANSCRIPTION: "Extract text content from uploaded documents",
    Stage.SCHEMA_GENERATION: "Generate data schema from document content",
    Stage.SCHEMA_REFINEMENT: "Refine schema based on feedback",
}


class UploadProgress(BaseModel):
    id: str
    file_name: str
    progress: int = 0
    status: UploadStatus = "uploading"
    message: Optional[str] = None
    pages_processed: int = 0
    page_count: int = 0


class AIProcessingStep(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Stage
    description: str = ""
    status: StepStatus = "waiting"
    progress: Optional[float] = None
    error: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now)


class Notification(BaseModel):
    level: Literal["info", "success", "error"] = "info"
    title: str
    message: str = ""


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: str = Field(default_factory=utc_now)


class SchemaDetails(BaseModel):
    tables: int = 0
    fields: int = 0


class PipelineProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_count: int = Field(default=0, alias="documentCount")
    processed_documents: int = Field(default=0, alias="processedDocuments")
    schema_details: SchemaDetails = Field(default_factory=SchemaDetails, alias="schemaDetails")
