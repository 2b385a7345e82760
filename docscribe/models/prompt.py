from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class Operation(str, Enum):
    TRANSCRIBE = "transcribe"
    GENERATE_SCHEMA = "generate_schema"
    EXTRACT_DATA = "extract_data"


class Prompt(BaseModel):
    operation: Operation
    document_ids: List[str]
    text: str
    image_urls: List[str] = Field(default_factory=list)
    schema_id: Optional[str] = None

    @property
    def prompt_type(self) -> str:
        if isinstance(self.operation, Operation):
            return self.operation.value
        return str(self.operation)
