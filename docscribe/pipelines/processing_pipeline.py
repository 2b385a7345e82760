"""
Processing pipeline orchestrator.

One ProcessingPipeline instance is one processing session for one user. It
drives the session's documents through four strictly ordered stages

    Document Upload -> Document Transcription -> Schema Generation -> Schema Refinement

and keeps one AIProcessingStep per stage. It is the only component that
decides whether an error is partial (record it on the document, keep going)
or fatal (fail the step, halt). Blocking collaborator calls run in worker
threads so the session's control flow stays on one event loop.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from docscribe.clients.redis_client import save_session_snapshot
from docscribe.clients.storage_client import ObjectStorage, original_path
from docscribe.document.validator import check_size, detect_kind
from docscribe.errors import (
    DocumentNotFoundError,
    PageConversionError,
    ProcessingError,
    StageOrderError,
    StorageUnavailableError,
)
from docscribe.models.document import Document, DocumentPage, DocumentPipeline, FileUpload
from docscribe.models.progress import (
    STAGE_DESCRIPTIONS,
    STAGE_ORDER,
    AIProcessingStep,
    ChatMessage,
    PipelineProgress,
    SchemaDetails,
    Stage,
    StepStatus,
    parse_stage,
    utc_now,
)
from docscribe.models.schema import DocumentSchema, ExtractedData
from docscribe.services.ai_gateway import AIGateway
from docscribe.services.document_registry import DocumentRegistry
from docscribe.services.page_converter import PageConverter
from docscribe.services.pipeline_metadata_service import PipelineMetadataService
from docscribe.services.prompt_builder import (
    build_data_extraction_prompt,
    build_schema_generation_prompt,
    build_transcription_prompt,
    split_transcription_pages,
)
from docscribe.services.schema_chat import SchemaChat
from docscribe.services.upload_tracker import UploadTracker

logger = logging.getLogger(__name__)

SnapshotSink = Callable[[str, Dict[str, Any]], Any]

# Legal step transitions; failed -> in_progress is the retry path
TRANSITIONS = {
    "waiting": {"in_progress"},
    "in_progress": {"in_progress", "completed", "failed"},
    "failed": {"in_progress"},
    "completed": set(),
}


class ProcessingPipeline:
    def __init__(
        self,
        user_id: str,
        registry: DocumentRegistry,
        storage: ObjectStorage,
        gateway: AIGateway,
        tracker: Optional[UploadTracker] = None,
        converter: Optional[PageConverter] = None,
        metadata: Optional[PipelineMetadataService] = None,
        snapshot_sink: Optional[SnapshotSink] = save_session_snapshot,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.user_id = user_id
        self.registry = registry
        self.storage = storage
        self.gateway = gateway
        self.tracker = tracker or UploadTracker()
        self.converter = converter or PageConverter(registry, storage, self.tracker)
        self.metadata = metadata
        self.snapshot_sink = snapshot_sink

        self.steps: Dict[Stage, AIProcessingStep] = {
            stage: AIProcessingStep(name=stage, description=STAGE_DESCRIPTIONS[stage]) for stage in STAGE_ORDER
        }
        self.document_ids: List[str] = []
        self.schema: Optional[DocumentSchema] = None
        self.schema_details = SchemaDetails()
        self.chat: Optional[SchemaChat] = None
        self.pipeline: Optional[DocumentPipeline] = None
        self.extracted: Dict[str, ExtractedData] = {}

        self._failed_uploads: List[FileUpload] = []
        self._busy = False

    # State

    @property
    def is_processing_complete(self) -> bool:
        return self.steps[Stage.SCHEMA_REFINEMENT].status == "completed"

    @property
    def current_stage(self) -> Optional[Stage]:
        for stage in STAGE_ORDER:
            if self.steps[stage].status != "completed":
                return stage
        return None

    def _set_step(
        self,
        stage: Stage,
        status: StepStatus,
        progress: Optional[float] = None,
        error: Optional[str] = None,
    ) -> AIProcessingStep:
        step = self.steps[stage]
        if status not in TRANSITIONS[step.status]:
            raise StageOrderError(f"{stage.value} cannot go from {step.status} to {status}")

        if status == "in_progress" and step.status != "in_progress":
            index = STAGE_ORDER.index(stage)
            if index > 0 and self.steps[STAGE_ORDER[index - 1]].status != "completed":
                previous = STAGE_ORDER[index - 1]
                raise StageOrderError(f"{stage.value} cannot start before {previous.value} has completed")

        step.status = status
        step.error = error if status == "failed" else None
        if status == "completed":
            step.progress = 100
        elif progress is not None:
            step.progress = max(step.progress or 0, min(100, progress))
        step.timestamp = utc_now()

        if status == "failed":
            logger.error("[%s] %s failed: %s", self.session_id, stage.value, error)
        elif status != "in_progress" or progress is None:
            logger.info("[%s] %s -> %s", self.session_id, stage.value, status)
        return step

    async def _step(
        self,
        stage: Stage,
        status: StepStatus,
        progress: Optional[float] = None,
        error: Optional[str] = None,
    ) -> AIProcessingStep:
        step = self._set_step(stage, status, progress, error)
        await self._publish()
        return step

    def progress(self) -> PipelineProgress:
        """Aggregate progress read from the registry, never from a counter"""
        processed = 0
        for document_id in self.document_ids:
            try:
                if self.registry.get(document_id).status == "processed":
                    processed += 1
            except ProcessingError:
                continue
        return PipelineProgress(
            document_count=len(self.document_ids),
            processed_documents=processed,
            schema_details=self.schema_details,
        )

    def snapshot(self) -> Dict[str, Any]:
        current = self.current_stage
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "current_stage": current.value if current else None,
            "is_processing_complete": self.is_processing_complete,
            "steps": [self.steps[stage].model_dump(mode="json") for stage in STAGE_ORDER],
            "progress": self.progress().model_dump(by_alias=True),
            "document_ids": list(self.document_ids),
            "uploads": [u.model_dump() for u in self.tracker.uploads],
            "is_uploading": self.tracker.is_uploading,
            "schema": self.schema.model_dump(mode="json", by_alias=True) if self.schema else None,
            "pipeline": self.pipeline.model_dump() if self.pipeline else None,
            "chat": [m.model_dump() for m in self.chat.messages] if self.chat else [],
        }

    async def current_snapshot(self) -> Dict[str, Any]:
        """snapshot() off the event loop; progress() reads the registry"""
        return await self._call(self.snapshot)

    async def _publish(self) -> None:
        if self.snapshot_sink is None:
            return
        try:
            snapshot = await self.current_snapshot()
            await self._call(self.snapshot_sink, self.session_id, snapshot)
        except Exception as e:
            logger.warning("[%s] Failed to publish snapshot: %s", self.session_id, e)

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _begin(self) -> None:
        if self._busy:
            raise StageOrderError("Another operation is already running for this session")
        self._busy = True

    def _end(self) -> None:
        self._busy = False

    # Stage 1: upload

    async def upload_and_register(self, files: List[FileUpload]) -> List[str]:
        """
        Upload files one at a time and register them as documents.

        Returns the ids of the documents now in the session, including reused
        duplicates. The Upload step fails when any file failed; those files
        are kept for retry_stage(Stage.UPLOAD).
        """
        if not files:
            raise ValueError("No files to upload")

        self._begin()
        try:
            await self._step(Stage.UPLOAD, "in_progress")
            return await self._upload_files(files)
        finally:
            self._end()

    async def _upload_files(self, files: List[FileUpload]) -> List[str]:
        registered = []
        failed = []
        for file in files:
            document_id = await self._upload_one(file)
            if document_id:
                registered.append(document_id)
                if document_id not in self.document_ids:
                    self.document_ids.append(document_id)
            else:
                failed.append(file)
            await self._step(Stage.UPLOAD, "in_progress", progress=(len(registered) + len(failed)) / len(files) * 100)

        self._failed_uploads = failed
        if failed:
            names = ", ".join(f.name for f in failed)
            await self._step(Stage.UPLOAD, "failed", error=f"{len(failed)} of {len(files)} files failed to upload: {names}")
        else:
            await self._step(Stage.UPLOAD, "completed")
        return registered

    async def _upload_one(self, file: FileUpload) -> Optional[str]:
        upload_id = self.tracker.add_upload(file.name)
        document_id = None
        try:
            kind = detect_kind(file.name, file.content_type)
            if kind is None:
                raise ProcessingError(f"Unsupported file type: {file.content_type}")
            if not check_size(file.size):
                raise ProcessingError(f"File size {file.size} bytes is outside the allowed range")

            duplicate = await self._call(self.registry.find_duplicate, self.user_id, file.name, file.size)
            if duplicate is not None:
                logger.info("[%s] %s matches existing document %s", self.session_id, file.name, duplicate.id)
                self.tracker.notify("info", "Duplicate document", f"{file.name} was already uploaded, using the existing document.")
                self.tracker.update_status(upload_id, "complete", "Using existing document")
                return duplicate.id

            document_id = str(uuid.uuid4())
            self.tracker.update_progress(upload_id, 10)
            url = await self._call(
                self.storage.upload,
                original_path(self.user_id, document_id, kind),
                file.content,
                file.content_type,
            )
            self.tracker.update_progress(upload_id, 60)

            document = await self._call(self.registry.create, Document(
                id=document_id,
                name=file.name,
                type=kind,
                status="uploaded",
                user_id=self.user_id,
                size=file.size,
                original_url=url,
            ))
            await self._call(self.registry.add_log, document_id, "upload", "success", f"Uploaded {file.name}")

            self.tracker.update_status(upload_id, "processing", "Converting pages")
            await self._call(self.converter.convert, document, file.content, upload_id)
            self.tracker.update_status(upload_id, "complete")
            return document_id
        except Exception as e:
            logger.error("[%s] Upload of %s failed: %s", self.session_id, file.name, e)
            self.tracker.update_status(upload_id, "error", str(e))
            # the converter records its own failure on the document
            if document_id is not None and not isinstance(e, PageConversionError):
                await self._record_document_failure(document_id, "upload", str(e))
            return None

    async def _record_document_failure(self, document_id: str, action: str, message: str) -> None:
        try:
            await self._call(self.registry.set_status, document_id, "failed", message)
            await self._call(self.registry.add_log, document_id, action, "error", message)
        except Exception as e:
            logger.error("[%s] Could not record failure of %s: %s", self.session_id, document_id, e)

    async def select_documents(self, document_ids: List[str]) -> List[str]:
        """Use already-registered documents instead of uploading"""
        if not document_ids:
            raise ValueError("No documents selected")

        self._begin()
        try:
            for document_id in document_ids:
                document = await self._call(self.registry.get, document_id)
                if document.user_id != self.user_id:
                    raise DocumentNotFoundError(f"Document not found: {document_id}")
            await self._step(Stage.UPLOAD, "in_progress")
            for document_id in document_ids:
                if document_id not in self.document_ids:
                    self.document_ids.append(document_id)
            self._failed_uploads = []
            await self._step(Stage.UPLOAD, "completed")
            return list(self.document_ids)
        finally:
            self._end()

    # Stages 2-4

    async def start_processing(self) -> Dict[str, Any]:
        if self.steps[Stage.UPLOAD].status != "completed":
            raise StageOrderError("Documents must be uploaded before processing starts")
        if not self.document_ids:
            raise StageOrderError("No documents in this session")

        self._begin()
        try:
            await self._ensure_pipeline()
            if await self._run_transcription():
                await self._run_schema_generation()
            return await self.current_snapshot()
        finally:
            self._end()

    async def _ensure_pipeline(self) -> None:
        if self.metadata is None or self.pipeline is not None:
            return
        try:
            self.pipeline = await self._call(self.metadata.create_pipeline, list(self.document_ids))
            await self._call(self.metadata.set_status, self.pipeline.id, "processing")
        except Exception as e:
            logger.error("[%s] Could not create pipeline record: %s", self.session_id, e)

    async def _run_transcription(self) -> bool:
        """Transcribe every document not yet processed; returns True when the step completed"""
        await self._step(Stage.TRANSCRIPTION, "in_progress", progress=0)
        total = len(self.document_ids)
        errors = []
        try:
            pending = []
            done = 0
            for document_id in self.document_ids:
                document = await self._call(self.registry.get, document_id)
                if document.status == "processed" and document.transcription:
                    done += 1
                else:
                    pending.append(document_id)
            await self._step(Stage.TRANSCRIPTION, "in_progress", progress=done / total * 100)

            for document_id in pending:
                error = await self._transcribe_document(document_id)
                if error is None:
                    done += 1
                else:
                    errors.append(error)
                await self._step(Stage.TRANSCRIPTION, "in_progress", progress=(done + len(errors)) / total * 100)
        except StorageUnavailableError as e:
            await self._step(Stage.TRANSCRIPTION, "failed", error=f"Storage unavailable: {e}")
            return False
        except Exception as e:
            await self._step(Stage.TRANSCRIPTION, "failed", error=str(e))
            return False

        if done == 0:
            await self._step(Stage.TRANSCRIPTION, "failed", error="All documents failed transcription: " + "; ".join(errors))
            return False

        if errors:
            logger.warning("[%s] Transcription finished with %d failed documents", self.session_id, len(errors))
        await self._step(Stage.TRANSCRIPTION, "completed")
        return True

    async def _transcribe_document(self, document_id: str) -> Optional[str]:
        """
        Convert pages if needed, then transcribe one document.
        Returns None on success, the error text on a per-document failure.
        Raises StorageUnavailableError, which is fatal for the whole stage.
        """
        document = await self._call(self.registry.set_status, document_id, "processing", None, 0)
        await self._call(self.registry.add_log, document_id, "transcription", "success", "Transcription started")
        try:
            pages = await self._call(self.registry.pages, document_id)
            if not pages:
                pages = await self._call(self.converter.convert, document)
            await self._call(self.registry.update, document_id, processing_progress=30)

            transcription = await self._call(self.gateway.invoke, build_transcription_prompt(document, pages))

            await self._call(
                self.registry.update,
                document_id,
                transcription=transcription,
                status="processed",
                processing_progress=100,
                processing_error=None,
            )
            await self._save_page_texts(document_id, pages, transcription)
            await self._call(self.registry.add_log, document_id, "transcription", "success", "Transcription completed")
            logger.info("[%s] Transcribed %s", self.session_id, document_id)
            return None
        except StorageUnavailableError as e:
            await self._record_document_failure(document_id, "transcription", str(e))
            raise
        except ProcessingError as e:
            await self._record_document_failure(document_id, "transcription", str(e))
            logger.warning("[%s] Transcription failed for %s: %s", self.session_id, document_id, e)
            return f"{document.name}: {e}"

    async def _save_page_texts(self, document_id: str, pages: List[DocumentPage], transcription: str) -> None:
        page_numbers = {p.page_number for p in pages}
        for page_number, text in split_transcription_pages(transcription).items():
            if page_number in page_numbers:
                await self._call(self.registry.set_page_text, document_id, page_number, text)

    async def _run_schema_generation(self) -> bool:
        await self._step(Stage.SCHEMA_GENERATION, "in_progress", progress=0)
        try:
            documents = [
                d for d in await self._call(self.registry.get_many, self.document_ids)
                if d.status == "processed" and d.transcription
            ]
            if not documents:
                raise ProcessingError("No transcribed documents to generate a schema from")

            schema = await self._call(self.gateway.invoke, build_schema_generation_prompt(documents))
            schema.organization_id = self.user_id
            await self._call(self.registry.save_schema, schema)
        except Exception as e:
            await self._step(Stage.SCHEMA_GENERATION, "failed", error=str(e))
            return False

        self.schema = schema
        self.schema_details = SchemaDetails(tables=schema.table_count, fields=schema.field_count)
        self.chat = SchemaChat(self.gateway, self.registry, schema, self._processed_documents)
        await self._step(Stage.SCHEMA_GENERATION, "completed")
        await self._step(Stage.SCHEMA_REFINEMENT, "in_progress")
        return True

    def _processed_documents(self) -> List[Document]:
        return [
            d for d in self.registry.get_many(self.document_ids)
            if d.status == "processed" and d.transcription
        ]

    async def approve_schema(self) -> Dict[str, Any]:
        if self.steps[Stage.SCHEMA_REFINEMENT].status != "in_progress" or self.schema is None:
            raise StageOrderError("There is no generated schema awaiting approval")

        self._begin()
        try:
            await self._step(Stage.SCHEMA_REFINEMENT, "completed")
            if self.metadata is not None and self.pipeline is not None:
                try:
                    await self._call(self.metadata.set_status, self.pipeline.id, "completed")
                except Exception as e:
                    logger.error("[%s] Could not update pipeline status: %s", self.session_id, e)
            logger.info("[%s] Schema %s approved", self.session_id, self.schema.id)
            return await self.current_snapshot()
        finally:
            self._end()

    async def request_schema_changes(self, feedback: str) -> ChatMessage:
        """Refine the schema through the chat; the step stays in progress whatever happens"""
        if self.steps[Stage.SCHEMA_REFINEMENT].status != "in_progress" or self.chat is None:
            raise StageOrderError("Schema changes can only be requested while the schema awaits approval")

        self._begin()
        try:
            reply = await self._call(self.chat.send, feedback)
        finally:
            self._end()

        self.schema = self.chat.schema
        self.schema_details = SchemaDetails(tables=self.schema.table_count, fields=self.schema.field_count)
        await self._publish()
        return reply

    # Retry

    async def retry_stage(self, stage_name) -> Dict[str, Any]:
        """Re-run only the unfinished work of a failed stage, then carry on"""
        stage = parse_stage(stage_name)
        if self.steps[stage].status != "failed":
            raise StageOrderError(f"{stage.value} has not failed and cannot be retried")

        self._begin()
        try:
            logger.info("[%s] Retrying %s", self.session_id, stage.value)
            if stage == Stage.UPLOAD:
                files = list(self._failed_uploads)
                await self._step(Stage.UPLOAD, "in_progress")
                if files:
                    await self._upload_files(files)
                else:
                    await self._step(Stage.UPLOAD, "completed")
            elif stage == Stage.TRANSCRIPTION:
                if await self._run_transcription():
                    await self._run_schema_generation()
            elif stage == Stage.SCHEMA_GENERATION:
                await self._run_schema_generation()
            return await self.current_snapshot()
        finally:
            self._end()

    async def retry_document(self, document_id: str) -> Dict[str, Any]:
        """Transcribe one failed document again"""
        if document_id not in self.document_ids:
            raise StageOrderError(f"Document {document_id} is not part of this session")
        step = self.steps[Stage.TRANSCRIPTION]
        if step.status not in ("completed", "failed"):
            raise StageOrderError("Transcription has not run yet")
        document = await self._call(self.registry.get, document_id)
        if document.status != "failed":
            raise StageOrderError(f"Document {document_id} has not failed")

        self._begin()
        try:
            if step.status == "failed":
                # the stage failed as a whole, resume it from this document
                await self._step(Stage.TRANSCRIPTION, "in_progress")
                try:
                    error = await self._transcribe_document(document_id)
                except StorageUnavailableError as e:
                    await self._step(Stage.TRANSCRIPTION, "failed", error=f"Storage unavailable: {e}")
                    return await self.current_snapshot()
                if error is not None:
                    await self._step(Stage.TRANSCRIPTION, "failed", error=error)
                elif await self._run_transcription():
                    # picks up the documents the failed run never reached
                    await self._run_schema_generation()
            else:
                await self._transcribe_document(document_id)
                await self._publish()
            return await self.current_snapshot()
        finally:
            self._end()

    # Extraction

    async def extract_data(self) -> Dict[str, ExtractedData]:
        """Fill the approved schema from every processed document"""
        if not self.is_processing_complete or self.schema is None:
            raise StageOrderError("The schema must be approved before data can be extracted")

        self._begin()
        try:
            documents = await self._call(self._processed_documents)
            errors = []
            for document in documents:
                try:
                    data = await self._call(self.gateway.invoke, build_data_extraction_prompt(document, self.schema))
                    count = await self._call(self.registry.save_document_data, data, self.schema)
                    await self._call(
                        self.registry.add_log, document.id, "extraction", "success",
                        f"Extracted {count} values (confidence {data.confidence:.2f})",
                    )
                    self.extracted[document.id] = data
                except ProcessingError as e:
                    errors.append(f"{document.name}: {e}")
                    await self._call(self.registry.add_log, document.id, "extraction", "error", str(e))
                    logger.warning("[%s] Extraction failed for %s: %s", self.session_id, document.id, e)

            if documents and len(errors) == len(documents):
                raise ProcessingError("Data extraction failed for every document: " + "; ".join(errors))
            await self._publish()
            return dict(self.extracted)
        finally:
            self._end()
