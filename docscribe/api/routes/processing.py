import asyncio
import base64
import binascii
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from docscribe.clients.auth_client import AuthError, AuthUser, SupabaseAuthClient
from docscribe.clients.redis_client import drop_session_snapshot, load_session_snapshot
from docscribe.errors import DocumentNotFoundError, ProcessingError, StageOrderError
from docscribe.models.document import FileUpload
from docscribe.models.progress import Stage, parse_stage
from docscribe.pipelines.processing_pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)

router = APIRouter()

PipelineFactory = Callable[[str, str], ProcessingPipeline]


class SessionStore:
    """Live processing sessions of this worker, keyed by session id"""

    def __init__(self):
        self._sessions: Dict[str, ProcessingPipeline] = {}

    def add(self, pipeline: ProcessingPipeline) -> None:
        self._sessions[pipeline.session_id] = pipeline

    def get(self, session_id: str) -> Optional[ProcessingPipeline]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        pipeline = self._sessions.pop(session_id, None)
        if pipeline is not None:
            pipeline.tracker.clear()


class UploadFileBody(BaseModel):
    name: str
    content_type: str = "application/pdf"
    content_base64: str = Field(..., description="File bytes, base64 encoded")


class UploadRequest(BaseModel):
    files: List[UploadFileBody]


class SelectDocumentsRequest(BaseModel):
    document_ids: List[str]


class SchemaChangesRequest(BaseModel):
    feedback: str


class SessionResponse(BaseModel):
    session_id: str
    status: str
    snapshot: Optional[Dict[str, Any]] = None


_auth_client = None


def get_auth_client() -> SupabaseAuthClient:
    global _auth_client
    if _auth_client is None:
        _auth_client = SupabaseAuthClient()
    return _auth_client


def get_current_user(
    authorization: Optional[str] = Header(None),
    auth: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthUser:
    """Resolve the bearer token with the identity provider"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return auth.get_user(authorization.split(" ", 1)[1])
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_pipeline_factory(request: Request) -> PipelineFactory:
    return request.app.state.pipeline_factory


def get_session(
    session_id: str,
    user: AuthUser = Depends(get_current_user),
    sessions: SessionStore = Depends(get_sessions),
) -> ProcessingPipeline:
    pipeline = sessions.get(session_id)
    if pipeline is None or pipeline.user_id != user.id:
        raise HTTPException(status_code=404, detail="Session not found")
    return pipeline


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, StageOrderError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ProcessingError):
        return HTTPException(status_code=502, detail=str(e))
    logger.exception("Unexpected error")
    return HTTPException(status_code=500, detail=f"Processing failed: {str(e)}")


async def _run_in_background(session_id: str, operation: str, coro) -> None:
    try:
        await coro
    except Exception as e:
        # The failure is already recorded on the step; this only reaches the log
        logger.error("[%s] %s failed: %s", session_id, operation, e)


@router.post("/sessions", response_model=SessionResponse)
async def create_session(
    user: AuthUser = Depends(get_current_user),
    sessions: SessionStore = Depends(get_sessions),
    factory: PipelineFactory = Depends(get_pipeline_factory),
):
    """Start a new processing session for the signed-in user"""
    pipeline = factory(user.id, str(uuid.uuid4()))
    sessions.add(pipeline)
    logger.info("Created session %s for user %s", pipeline.session_id, user.id)
    return {"session_id": pipeline.session_id, "status": "created", "snapshot": await pipeline.current_snapshot()}


@router.get("/sessions/{session_id}")
async def session_status(
    session_id: str,
    user: AuthUser = Depends(get_current_user),
    sessions: SessionStore = Depends(get_sessions),
):
    """Step/progress snapshot; falls back to the cached copy when another worker owns the session"""
    pipeline = sessions.get(session_id)
    if pipeline is not None and pipeline.user_id == user.id:
        return await pipeline.current_snapshot()

    cached = await asyncio.to_thread(load_session_snapshot, session_id)
    if cached and cached.get("user_id") == user.id:
        return cached
    raise HTTPException(status_code=404, detail="Session not found")


@router.delete("/sessions/{session_id}")
async def close_session(
    pipeline: ProcessingPipeline = Depends(get_session),
    sessions: SessionStore = Depends(get_sessions),
):
    sessions.remove(pipeline.session_id)
    await asyncio.to_thread(drop_session_snapshot, pipeline.session_id)
    return {"session_id": pipeline.session_id, "status": "closed"}


@router.post("/sessions/{session_id}/uploads")
async def upload_documents(request: UploadRequest, pipeline: ProcessingPipeline = Depends(get_session)):
    """Upload files one at a time and register them as documents"""
    if not request.files:
        raise HTTPException(status_code=400, detail="No files provided")
    try:
        files = [
            FileUpload(name=f.name, content_type=f.content_type, content=base64.b64decode(f.content_base64, validate=True))
            for f in request.files
        ]
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="File content must be valid base64")

    try:
        document_ids = await pipeline.upload_and_register(files)
    except Exception as e:
        raise to_http_error(e)
    return {"document_ids": document_ids, "snapshot": await pipeline.current_snapshot()}


@router.post("/sessions/{session_id}/documents")
async def select_documents(request: SelectDocumentsRequest, pipeline: ProcessingPipeline = Depends(get_session)):
    """Process documents that were uploaded earlier"""
    try:
        document_ids = await pipeline.select_documents(request.document_ids)
    except Exception as e:
        raise to_http_error(e)
    return {"document_ids": document_ids, "snapshot": await pipeline.current_snapshot()}


@router.post("/sessions/{session_id}/start", status_code=202)
async def start_processing(background_tasks: BackgroundTasks, pipeline: ProcessingPipeline = Depends(get_session)):
    """Run transcription and schema generation in the background"""
    if pipeline.steps[Stage.UPLOAD].status != "completed" or not pipeline.document_ids:
        raise HTTPException(status_code=409, detail="Documents must be uploaded before processing starts")
    if pipeline.steps[Stage.TRANSCRIPTION].status != "waiting":
        raise HTTPException(status_code=409, detail="Processing has already started")

    background_tasks.add_task(_run_in_background, pipeline.session_id, "start", pipeline.start_processing())
    return {"session_id": pipeline.session_id, "status": "processing"}


@router.post("/sessions/{session_id}/retry/{stage}", status_code=202)
async def retry_stage(stage: str, background_tasks: BackgroundTasks, pipeline: ProcessingPipeline = Depends(get_session)):
    try:
        resolved = parse_stage(stage)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
    if pipeline.steps[resolved].status != "failed":
        raise HTTPException(status_code=409, detail=f"{resolved.value} has not failed")

    background_tasks.add_task(_run_in_background, pipeline.session_id, f"retry {resolved.value}", pipeline.retry_stage(resolved))
    return {"session_id": pipeline.session_id, "status": "retrying", "stage": resolved.value}


@router.post("/sessions/{session_id}/documents/{document_id}/retry")
async def retry_document(document_id: str, pipeline: ProcessingPipeline = Depends(get_session)):
    try:
        return await pipeline.retry_document(document_id)
    except Exception as e:
        raise to_http_error(e)


@router.post("/sessions/{session_id}/schema/approve")
async def approve_schema(pipeline: ProcessingPipeline = Depends(get_session)):
    try:
        return await pipeline.approve_schema()
    except Exception as e:
        raise to_http_error(e)


@router.post("/sessions/{session_id}/schema/changes")
async def request_schema_changes(request: SchemaChangesRequest, pipeline: ProcessingPipeline = Depends(get_session)):
    try:
        reply = await pipeline.request_schema_changes(request.feedback)
    except Exception as e:
        raise to_http_error(e)
    return {"reply": reply.model_dump(), "snapshot": await pipeline.current_snapshot()}


@router.post("/sessions/{session_id}/extract")
async def extract_data(pipeline: ProcessingPipeline = Depends(get_session)):
    try:
        results = await pipeline.extract_data()
    except Exception as e:
        raise to_http_error(e)
    return {
        "session_id": pipeline.session_id,
        "documents": {doc_id: data.model_dump() for doc_id, data in results.items()},
    }
