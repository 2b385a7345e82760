"""
Upload tracker: per-file upload/processing progress with notifications.

Every operation is best-effort. An unknown upload id is ignored, since the
entry may have been cleared while a late callback was still in flight.
"""
import logging
import uuid
from typing import Callable, Dict, List, Optional

from docscribe.models.progress import Notification, UploadProgress, UploadStatus

logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], None]


def log_notifier(notification: Notification) -> None:
    """Default sink: notifications end up in the service log"""
    level = logging.ERROR if notification.level == "error" else logging.INFO
    logger.log(level, "%s: %s", notification.title, notification.message)


class UploadTracker:
    def __init__(self, notifier: Optional[Notifier] = None):
        self._notify = notifier or log_notifier
        self._uploads: Dict[str, UploadProgress] = {}
        self._fully_processed: set = set()

    @property
    def uploads(self) -> List[UploadProgress]:
        return list(self._uploads.values())

    @property
    def is_uploading(self) -> bool:
        return any(u.status in ("uploading", "processing") for u in self._uploads.values())

    def get(self, upload_id: str) -> Optional[UploadProgress]:
        return self._uploads.get(upload_id)

    def _emit(self, notification: Notification) -> None:
        try:
            self._notify(notification)
        except Exception as e:
            logger.warning("Notifier failed: %s", e)

    def notify(self, level: str, title: str, message: str = "") -> None:
        self._emit(Notification(level=level, title=title, message=message))

    def add_upload(self, file_name: str) -> str:
        upload_id = str(uuid.uuid4())
        self._uploads[upload_id] = UploadProgress(id=upload_id, file_name=file_name)
        self._emit(Notification(level="info", title="Upload started", message=f"Uploading {file_name}"))
        return upload_id

    def update_progress(self, upload_id: str, percent: float) -> None:
        upload = self._uploads.get(upload_id)
        if upload is None:
            return
        upload.progress = int(round(min(100, max(0, percent))))

    def update_status(self, upload_id: str, status: UploadStatus, message: Optional[str] = None) -> None:
        upload = self._uploads.get(upload_id)
        if upload is None:
            return

        previous = upload.status
        upload.status = status
        upload.message = message
        if previous == status:
            return

        if status == "complete":
            upload.progress = 100
            self._emit(Notification(
                level="success",
                title="Upload complete",
                message=f"{upload.file_name} has been uploaded successfully.",
            ))
        elif status == "error" and message:
            self._emit(Notification(level="error", title="Upload failed", message=f"{upload.file_name}: {message}"))
        elif status == "processing" and message:
            self._emit(Notification(level="info", title="Processing", message=f"{upload.file_name}: {message}"))

    def update_page_progress(self, upload_id: str, pages_processed: int, page_count: int) -> None:
        upload = self._uploads.get(upload_id)
        if upload is None:
            return

        upload.pages_processed = pages_processed
        upload.page_count = page_count
        upload.status = "processing"
        upload.progress = int(round(min(100, max(0, pages_processed / max(1, page_count) * 100))))

        if page_count > 0 and pages_processed == page_count and upload_id not in self._fully_processed:
            self._fully_processed.add(upload_id)
            self._emit(Notification(
                level="success",
                title="Document processed",
                message=f"All {page_count} pages of {upload.file_name} have been processed.",
            ))

    def clear(self) -> None:
        self._uploads.clear()
        self._fully_processed.clear()
