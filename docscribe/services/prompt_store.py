import logging
from datetime import datetime, timezone
from typing import List

from docscribe.clients.db_client import Database
from docscribe.models.document import DocumentPrompt
from docscribe.models.prompt import Prompt

logger = logging.getLogger(__name__)


class PromptStore:
    """Audit trail of every prompt sent to the AI backend (document_prompts)"""

    def __init__(self, db: Database):
        self.db = db

    def save(self, prompt: Prompt, prompt_type: str = None) -> List[DocumentPrompt]:
        """Record the prompt once per document it targets"""
        saved = []
        for document_id in prompt.document_ids:
            record = DocumentPrompt(
                document_id=document_id,
                prompt_type=prompt_type or prompt.prompt_type,
                prompt_text=prompt.text,
                created_at=datetime.now(timezone.utc),
            )
            try:
                row = self.db.insert("document_prompts", record.model_dump(exclude_none=True))
                saved.append(DocumentPrompt(**row))
            except Exception as e:
                # An unrecorded prompt must not block the request itself
                logger.error("Failed to save %s prompt for %s: %s", record.prompt_type, document_id, e)
        return saved

    def save_error(self, prompt: Prompt, detail: str) -> List[DocumentPrompt]:
        error_prompt = prompt.model_copy(update={"text": f"{prompt.text}\n\n--- ERROR ---\n{detail}"})
        return self.save(error_prompt, prompt_type=f"{prompt.prompt_type}_error")

    def for_document(self, document_id: str) -> List[DocumentPrompt]:
        rows = self.db.select("document_prompts", {"document_id": document_id}, order_by="created_at", descending=True)
        return [DocumentPrompt(**row) for row in rows]
