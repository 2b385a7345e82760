"""
Prompt Builder: pure functions that turn document/schema state into tagged
AI requests. Nothing here performs I/O.
"""
import json
import re
from typing import Dict, List, Optional

from docscribe.models.document import Document, DocumentPage
from docscribe.models.prompt import Operation, Prompt
from docscribe.models.schema import DocumentSchema

TRANSCRIPTION_INSTRUCTIONS = """You are transcribing a handwritten document.
The images that follow are the pages of the document "{name}", in order ({page_count} pages).

Transcribe the COMPLETE text of every page. Do not summarize, shorten or paraphrase.
Preserve the document structure using markdown:
- Use headers (#, ##, ###) for titles and section headings
- Use lists (- or 1.) for enumerated or bulleted items
- Use markdown tables for any tabular content
- Write [illegible] wherever a word or passage cannot be read
- Separate pages with a line containing only "--- Page N ---"

Return only the transcription text."""

PAGE_SEPARATOR = re.compile(r"^\s*-{3}\s*Page\s+(\d+)\s*-{3}\s*$", re.MULTILINE | re.IGNORECASE)

SCHEMA_RESPONSE_SHAPE = {
    "schema": {
        "name": "Schema name",
        "description": "What this schema captures",
        "tables": [
            {
                "name": "table_name",
                "description": "What one row of this table represents",
                "fields": [
                    {
                        "name": "field_name",
                        "description": "What this field holds",
                        "type": "string | number | boolean | date | enum",
                        "required": True,
                        "enumValues": ["only", "for", "enum", "fields"],
                    }
                ],
            }
        ],
        "rationale": "Why the data was organized this way",
        "suggestions": [
            {
                "description": "A possible improvement",
                "type": "add | modify | remove",
                "impact": "What the change would enable",
            }
        ],
    }
}

SCHEMA_INSTRUCTIONS = """You are designing a relational data schema for information found in handwritten documents.
Below are the transcriptions of {count} document(s).

Propose a schema that captures the information these documents contain:
- Group related information into tables, each with typed fields
- Field types must be one of: string, number, boolean, date, enum
- Mark each field as required or optional
- Give the allowed values in enumValues for enum fields
- Explain your reasoning in the rationale
- Provide 3 to 5 suggestions for improving the schema

Respond with JSON only, exactly in this shape:
{shape}"""

REFINEMENT_INSTRUCTIONS = """
The current schema is:
{schema}

The user asked for these changes:
{feedback}

Return the complete revised schema in the same JSON shape, keeping every table and field the user did not ask to change."""

EXTRACTION_INSTRUCTIONS = """You are extracting structured data from the transcription of the document "{name}".

Use exactly this schema (tables and their fields):
{structure}

For every table, give one value for every field. Use null when the document does not contain the information.
Also give an overall confidence score between 0 and 1 for the extraction.

Respond with JSON only, exactly in this shape:
{{"tables": {{"<table name>": {{"<field name>": "value or null"}}}}, "confidence": 0.0}}

Transcription:
{transcription}"""


def build_transcription_prompt(document: Document, pages: List[DocumentPage]) -> Prompt:
    ordered = sorted(pages, key=lambda p: p.page_number)
    image_urls = [p.image_url for p in ordered if p.image_url]
    text = TRANSCRIPTION_INSTRUCTIONS.format(name=document.name, page_count=len(image_urls))
    return Prompt(
        operation=Operation.TRANSCRIBE,
        document_ids=[document.id],
        text=text,
        image_urls=image_urls,
    )


def split_transcription_pages(transcription: str) -> Dict[int, str]:
    """
    Split a transcription on its "--- Page N ---" separator lines.

    Text before the first separator belongs to page 1, so a transcription
    without separators maps entirely to page 1.
    """
    parts = PAGE_SEPARATOR.split(transcription)
    pages: Dict[int, str] = {}
    head = parts[0].strip()
    if head:
        pages[1] = head
    for number, text in zip(parts[1::2], parts[2::2]):
        text = text.strip()
        if not text:
            continue
        page_number = int(number)
        pages[page_number] = f"{pages[page_number]}\n\n{text}" if page_number in pages else text
    return pages


def _schema_structure(schema: DocumentSchema) -> list:
    return [
        {
            "name": table.name,
            "description": table.description,
            "fields": [
                {
                    "name": field.name,
                    "description": field.description,
                    "type": field.type,
                    "required": field.required,
                    **({"enumValues": field.enum_values} if field.enum_values else {}),
                }
                for field in sorted(table.fields, key=lambda f: f.display_order)
            ],
        }
        for table in sorted(schema.structure, key=lambda t: t.display_order)
    ]


def build_schema_generation_prompt(
    documents: List[Document],
    current_schema: Optional[DocumentSchema] = None,
    feedback: Optional[str] = None,
) -> Prompt:
    """
    Batch prompt over the transcriptions of every document.

    With current_schema and feedback it becomes a refinement request that
    asks for the whole revised schema back in the same shape.
    """
    sections = []
    for index, document in enumerate(documents, 1):
        sections.append(f"=== Document {index}: {document.name} ===\n{document.transcription or ''}")

    text = SCHEMA_INSTRUCTIONS.format(count=len(documents), shape=json.dumps(SCHEMA_RESPONSE_SHAPE, indent=2))
    text += "\n\n" + "\n\n".join(sections)

    if current_schema is not None:
        current = {
            "name": current_schema.name,
            "description": current_schema.description,
            "tables": _schema_structure(current_schema),
            "rationale": current_schema.rationale,
        }
        text += REFINEMENT_INSTRUCTIONS.format(
            schema=json.dumps(current, indent=2),
            feedback=feedback or "(no specific feedback)",
        )

    return Prompt(
        operation=Operation.GENERATE_SCHEMA,
        document_ids=[d.id for d in documents],
        text=text,
        schema_id=current_schema.id if current_schema else None,
    )


def build_data_extraction_prompt(document: Document, schema: DocumentSchema) -> Prompt:
    text = EXTRACTION_INSTRUCTIONS.format(
        name=document.name,
        structure=json.dumps(_schema_structure(schema), indent=2),
        transcription=document.transcription or "",
    )
    return Prompt(
        operation=Operation.EXTRACT_DATA,
        document_ids=[document.id],
        text=text,
        schema_id=schema.id,
    )
