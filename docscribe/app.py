import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docscribe.api.routes import processing
from docscribe.clients.db_client import PostgresDatabase
from docscribe.clients.redis_client import get_redis_client
from docscribe.clients.storage_client import SupabaseStorageClient
from docscribe.config import config, configure_logging
from docscribe.pipelines.processing_pipeline import ProcessingPipeline
from docscribe.services.ai_gateway import AIGateway
from docscribe.services.document_registry import DocumentRegistry
from docscribe.services.gemini_backend import GeminiBackend
from docscribe.services.pipeline_metadata_service import PipelineMetadataService
from docscribe.services.prompt_store import PromptStore

logger = logging.getLogger(__name__)


def build_pipeline(user_id: str, session_id: str) -> ProcessingPipeline:
    """Wire a processing session against Postgres, Supabase Storage and Gemini"""
    db = PostgresDatabase()
    registry = DocumentRegistry(db)
    storage = SupabaseStorageClient()
    gateway = AIGateway(GeminiBackend(), PromptStore(db))
    return ProcessingPipeline(
        user_id=user_id,
        registry=registry,
        storage=storage,
        gateway=gateway,
        metadata=PipelineMetadataService(registry),
        session_id=session_id,
    )


def create_app(pipeline_factory: Optional[processing.PipelineFactory] = None) -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="Docscribe Processing Service",
        description="Handwritten document transcription, schema inference and data extraction",
        version="1.0.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=config.CORS_ALLOW_METHODS,
        allow_headers=config.CORS_ALLOW_HEADERS,
    )

    app.state.sessions = processing.SessionStore()
    app.state.pipeline_factory = pipeline_factory or build_pipeline
    app.include_router(processing.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "ok": True,
            "status": "healthy",
            "service": "docscribe",
            "redis": get_redis_client() is not None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("docscribe.app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
