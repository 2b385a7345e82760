"""
Inferred document schema: tables of typed fields, plus extracted values.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

FieldType = Literal["string", "number", "boolean", "date", "enum"]
FIELD_TYPES = ("string", "number", "boolean", "date", "enum")


def _new_id() -> str:
    return str(uuid.uuid4())


class SchemaField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    type: FieldType = "string"
    required: bool = False
    enum_values: Optional[List[str]] = Field(default=None, alias="enumValues")
    display_order: int = Field(default=0, alias="displayOrder")


class SchemaTable(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    fields: List[SchemaField] = Field(default_factory=list)
    display_order: int = Field(default=0, alias="displayOrder")


class SchemaSuggestion(BaseModel):
    id: str = Field(default_factory=_new_id)
    description: str
    type: Literal["add", "modify", "remove"] = "add"
    impact: str = ""


class DocumentSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    structure: List[SchemaTable] = Field(default_factory=list)
    rationale: str = ""
    suggestions: List[SchemaSuggestion] = Field(default_factory=list)
    organization_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def table_count(self) -> int:
        return len(self.structure)

    @property
    def field_count(self) -> int:
        return sum(len(table.fields) for table in self.structure)

    def find_table(self, name: str) -> Optional[SchemaTable]:
        for table in self.structure:
            if table.name == name:
                return table
        return None

    def to_row(self) -> Dict[str, Any]:
        """Row shape of the document_schemas table"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "structure": [t.model_dump(by_alias=True) for t in self.structure],
            "rationale": self.rationale,
            "suggestions": [s.model_dump() for s in self.suggestions],
            "organization_id": self.organization_id,
        }


class ExtractedData(BaseModel):
    document_id: str
    schema_id: str
    values: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    confidence: float = 0.0
