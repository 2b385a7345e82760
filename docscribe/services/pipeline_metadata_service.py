import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List

from google.genai import types

from docscribe.clients.gemini_client import generate_content_with_retry
from docscribe.config import config
from docscribe.models.document import Document, DocumentPipeline
from docscribe.services.document_registry import DocumentRegistry

logger = logging.getLogger(__name__)

METADATA_PROMPT = """
Based on these document names: {names}

Generate a concise, professional name and brief description for a document processing pipeline that would handle these types of documents.
The name should be 2-5 words, and the description should be 1-2 sentences explaining the purpose.

Return only a JSON object with this structure:
{{
  "name": "Pipeline Name",
  "description": "Brief description of the pipeline purpose."
}}
"""


def fallback_metadata(names: str) -> Dict[str, str]:
    return {
        "name": f"Document Pipeline {datetime.now(timezone.utc).strftime('%Y-%m-%d')}",
        "description": f"Processing pipeline for {names}",
    }


def generate_pipeline_metadata(documents: List[Document], generate: Callable = generate_content_with_retry) -> Dict[str, str]:
    """
    Ask Gemini for a pipeline name and description based on document names.
    Falls back to a dated default when the answer is unusable.
    """
    names = ", ".join(d.name for d in documents)
    try:
        response = generate(
            model=config.GEMINI_GENERATION_MODEL,
            contents=[METADATA_PROMPT.format(names=names)],
            config=types.GenerateContentConfig(temperature=0.2),
        )
        match = re.search(r"\{[\s\S]*\}", (response.text if response else "") or "")
        if match:
            metadata = json.loads(match.group(0))
            if metadata.get("name") and metadata.get("description"):
                return {"name": str(metadata["name"]), "description": str(metadata["description"])}
        logger.warning("Pipeline metadata answer unusable, using fallback")
    except Exception as e:
        logger.warning("Pipeline metadata generation failed: %s", e)
    return fallback_metadata(names)


class PipelineMetadataService:
    def __init__(self, registry: DocumentRegistry, generate: Callable = generate_content_with_retry):
        self.registry = registry
        self.generate = generate

    def create_pipeline(self, document_ids: List[str]) -> DocumentPipeline:
        if not document_ids:
            raise ValueError("No document IDs provided")

        documents = self.registry.get_many(document_ids)
        metadata = generate_pipeline_metadata(documents, self.generate)

        pipeline = DocumentPipeline(
            id=str(uuid.uuid4()),
            name=metadata["name"],
            description=metadata["description"],
            document_count=len(document_ids),
            document_ids=list(document_ids),
        )
        db = self.registry.db
        db.insert("document_pipelines", pipeline.model_dump(exclude={"document_ids"}))

        for document_id in document_ids:
            try:
                db.insert("pipeline_documents", {"pipeline_id": pipeline.id, "document_id": document_id})
            except Exception as e:
                logger.error("Error linking document %s to pipeline %s: %s", document_id, pipeline.id, e)
            self.registry.update(document_id, pipeline_id=pipeline.id)

        logger.info("Created pipeline %s (%s) for %d documents", pipeline.id, pipeline.name, len(document_ids))
        return pipeline

    def set_status(self, pipeline_id: str, status: str) -> None:
        self.registry.db.update("document_pipelines", {"status": status}, {"id": pipeline_id})
