"""
Conversational schema refinement.

Each user message is turned into a schema-generation request that carries the
current schema plus the feedback; the answer replaces the schema contents in
place, so the schema keeps its id and the pipeline does not restart.
"""
import logging
from typing import Callable, List, Optional

from docscribe.models.document import Document
from docscribe.models.progress import ChatMessage
from docscribe.models.schema import DocumentSchema
from docscribe.services.ai_gateway import AIGateway
from docscribe.services.document_registry import DocumentRegistry
from docscribe.services.prompt_builder import build_schema_generation_prompt

logger = logging.getLogger(__name__)

GREETING = (
    "I've generated a schema from your documents. Tell me what you'd like to change, "
    "for example adding a field, renaming a table or changing a field type."
)


class SchemaChat:
    def __init__(
        self,
        gateway: AIGateway,
        registry: DocumentRegistry,
        schema: DocumentSchema,
        documents_provider: Callable[[], List[Document]],
    ):
        self.gateway = gateway
        self.registry = registry
        self.schema = schema
        self._documents = documents_provider
        self.messages: List[ChatMessage] = [ChatMessage(role="assistant", content=GREETING)]

    def send(self, feedback: str) -> ChatMessage:
        """Apply one round of feedback; errors propagate and leave the schema untouched"""
        feedback = (feedback or "").strip()
        if not feedback:
            raise ValueError("Feedback must not be empty")

        self.messages.append(ChatMessage(role="user", content=feedback))
        prompt = build_schema_generation_prompt(self._documents(), current_schema=self.schema, feedback=feedback)

        try:
            revised: DocumentSchema = self.gateway.invoke(prompt)
        except Exception as e:
            self.messages.append(ChatMessage(role="system", content=f"Could not update the schema: {e}"))
            raise

        self._apply(revised)
        self.registry.save_schema(self.schema)

        reply = ChatMessage(role="assistant", content=self._summary())
        self.messages.append(reply)
        logger.info("Schema %s refined: %d tables, %d fields", self.schema.id, self.schema.table_count, self.schema.field_count)
        return reply

    def _apply(self, revised: DocumentSchema) -> None:
        self.schema.name = revised.name or self.schema.name
        self.schema.description = revised.description
        self.schema.structure = revised.structure
        self.schema.rationale = revised.rationale
        self.schema.suggestions = revised.suggestions

    def _summary(self) -> str:
        summary = (
            f"I've updated the schema. It now has {self.schema.table_count} tables "
            f"with {self.schema.field_count} fields in total."
        )
        if self.schema.rationale:
            summary += f"\n\n{self.schema.rationale}"
        return summary

    def history(self, limit: Optional[int] = None) -> List[ChatMessage]:
        return self.messages[-limit:] if limit else list(self.messages)
