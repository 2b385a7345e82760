"""
AI Gateway: sends a built Prompt to the inference backend and turns the raw
envelope into a typed result.

Backend contract: ``invoke(operation, payload) -> {"success": bool, ...}``.
A successful envelope carries the operation payload next to the flag
(``transcription``, ``schema`` or ``tables``/``confidence``), a failed one
carries ``error`` as a string or a ``{message, name, stack}`` object.
"""
import logging
from typing import Any, Dict, Optional, Protocol, Union

from pydantic import ValidationError

from docscribe.config import config
from docscribe.errors import MalformedResponseError, NoResponseError, OperationFailedError
from docscribe.models.prompt import Operation, Prompt
from docscribe.models.schema import DocumentSchema, ExtractedData, SchemaField, SchemaSuggestion, SchemaTable
from docscribe.services.prompt_store import PromptStore

logger = logging.getLogger(__name__)

LOG_DETAIL_LIMIT = 500

# Loose type names models tend to answer with
FIELD_TYPE_SYNONYMS = {
    "text": "string",
    "str": "string",
    "integer": "number",
    "int": "number",
    "float": "number",
    "decimal": "number",
    "bool": "boolean",
    "datetime": "date",
    "timestamp": "date",
}

GatewayResult = Union[str, DocumentSchema, ExtractedData, Dict[str, Any]]


class InferenceBackend(Protocol):
    def invoke(self, operation: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...


def _truncate(value: Any) -> str:
    text = str(value)
    return text if len(text) <= LOG_DETAIL_LIMIT else text[:LOG_DETAIL_LIMIT] + "..."


class AIGateway:
    def __init__(self, backend: InferenceBackend, prompt_store: Optional[PromptStore] = None, model: Optional[str] = None):
        self.backend = backend
        self.prompt_store = prompt_store
        self.model = model or config.GEMINI_GENERATION_MODEL

    def invoke(self, prompt: Prompt) -> GatewayResult:
        operation = prompt.operation.value if isinstance(prompt.operation, Operation) else str(prompt.operation)
        payload = {
            "operation": operation,
            "documentIds": prompt.document_ids,
            "model": self.model,
            "prompt": prompt.text,
            "imageUrls": prompt.image_urls,
        }
        if prompt.schema_id:
            payload["schemaId"] = prompt.schema_id

        if self.prompt_store is not None:
            self.prompt_store.save(prompt)

        logger.info("Invoking %s for documents %s", operation, prompt.document_ids)
        response = self.backend.invoke(operation, payload)

        if response is None:
            logger.error("No response from AI backend for %s (documents %s)", operation, prompt.document_ids)
            raise NoResponseError(f"No response received from AI service for {operation}", operation)

        if not isinstance(response, dict) or "success" not in response:
            logger.error("Malformed %s envelope: %s", operation, _truncate(response))
            raise MalformedResponseError(f"Unexpected response from AI service for {operation}", operation, raw=response)

        if not response["success"]:
            self._raise_operation_failure(prompt, operation, response.get("error"))

        parser = _PARSERS.get(operation)
        if parser is None:
            logger.info("Operation %s has no result payload", operation)
            return {"status": "completed"}

        try:
            result = parser(prompt, response)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.error("Malformed %s response (%s): %s", operation, e, _truncate(response))
            raise MalformedResponseError(f"Malformed {operation} response: {e}", operation, raw=response) from e

        logger.info("%s succeeded for documents %s", operation, prompt.document_ids)
        return result

    def _raise_operation_failure(self, prompt: Prompt, operation: str, error: Any):
        if isinstance(error, dict):
            message = error.get("message") or "Unknown error"
            name, stack = error.get("name"), error.get("stack")
        else:
            message, name, stack = str(error or "Unknown error"), None, None

        logger.error(
            "%s failed for documents %s: %s",
            operation, prompt.document_ids, _truncate(f"{name or 'Error'}: {message}\n{stack or ''}"),
        )
        if self.prompt_store is not None:
            self.prompt_store.save_error(prompt, f"{name or 'Error'}: {message}\n{stack or ''}".strip())
        raise OperationFailedError(message, operation, name=name, stack=stack)


def _parse_transcription(prompt: Prompt, response: Dict[str, Any]) -> str:
    transcription = response["transcription"]
    if not isinstance(transcription, str) or not transcription.strip():
        raise ValueError("transcription is empty")
    return transcription


def _parse_field(raw: Dict[str, Any], order: int) -> SchemaField:
    if not isinstance(raw, dict):
        raise TypeError(f"schema field must be an object, got {type(raw).__name__}")
    field_type = str(raw.get("type") or "string").lower()
    field_type = FIELD_TYPE_SYNONYMS.get(field_type, field_type)
    enum_values = raw.get("enumValues") or raw.get("enum_values")
    return SchemaField(
        name=raw["name"],
        description=raw.get("description") or "",
        type=field_type,
        required=bool(raw.get("required", False)),
        enum_values=list(enum_values) if enum_values else None,
        display_order=order,
    )


def parse_schema(raw: Dict[str, Any]) -> DocumentSchema:
    """Build a DocumentSchema from the wire shape, keeping table and field order"""
    if not isinstance(raw, dict):
        raise TypeError("schema must be an object")
    tables = raw["tables"]
    if not isinstance(tables, list):
        raise TypeError("schema.tables must be a list")
    for table in tables:
        if not isinstance(table, dict) or not isinstance(table.get("fields"), list):
            raise TypeError("schema tables must be objects with a list of fields")
    return DocumentSchema(
        name=raw.get("name") or "Generated Schema",
        description=raw.get("description") or "",
        structure=[
            SchemaTable(
                name=table["name"],
                description=table.get("description") or "",
                display_order=t_index,
                fields=[_parse_field(field, f_index) for f_index, field in enumerate(table["fields"])],
            )
            for t_index, table in enumerate(tables)
        ],
        rationale=raw.get("rationale") or "",
        suggestions=[SchemaSuggestion(**s) for s in raw.get("suggestions") or []],
    )


def _parse_schema_response(prompt: Prompt, response: Dict[str, Any]) -> DocumentSchema:
    schema = parse_schema(response["schema"])
    if prompt.schema_id:
        schema.id = prompt.schema_id
    return schema


def _parse_extraction(prompt: Prompt, response: Dict[str, Any]) -> ExtractedData:
    tables = response["tables"]
    if not isinstance(tables, dict) or not all(isinstance(v, dict) for v in tables.values()):
        raise TypeError("tables must map table names to field objects")
    confidence = float(response.get("confidence", 0))
    if not 0 <= confidence <= 1:
        raise ValueError(f"confidence {confidence} outside [0, 1]")
    return ExtractedData(
        document_id=prompt.document_ids[0],
        schema_id=prompt.schema_id or "",
        values=tables,
        confidence=confidence,
    )


_PARSERS = {
    Operation.TRANSCRIBE.value: _parse_transcription,
    Operation.GENERATE_SCHEMA.value: _parse_schema_response,
    Operation.EXTRACT_DATA.value: _parse_extraction,
}
