"""
Page Converter: turns a stored original into one JPEG per page and records a
document_pages row for each page that rendered.

A page that fails to render or upload is skipped. The document only fails
when no page at all could be produced.
"""
import logging
from typing import Callable, List, Optional

from docscribe.clients.storage_client import ObjectStorage, original_path, page_path
from docscribe.document.renderer import render_pdf_page
from docscribe.document.validator import count_pdf_pages
from docscribe.errors import PageConversionError, StorageUnavailableError
from docscribe.models.document import Document, DocumentPage
from docscribe.services.document_registry import DocumentRegistry
from docscribe.services.upload_tracker import UploadTracker

logger = logging.getLogger(__name__)

PageRenderer = Callable[[bytes, int], bytes]


class PageConverter:
    def __init__(
        self,
        registry: DocumentRegistry,
        storage: ObjectStorage,
        tracker: Optional[UploadTracker] = None,
        render_page: PageRenderer = render_pdf_page,
    ):
        self.registry = registry
        self.storage = storage
        self.tracker = tracker
        self.render_page = render_page

    def convert(self, document: Document, data: Optional[bytes] = None, upload_id: Optional[str] = None) -> List[DocumentPage]:
        """
        Produce page rows for a document.

        Args:
            document: the registered document
            data: original bytes, downloaded from storage when omitted
            upload_id: Upload Tracker entry to report page progress to
        Returns:
            the pages actually produced, numbered 1..n
        Raises:
            PageConversionError: when zero pages were produced
            StorageUnavailableError: when storage cannot be reached
        """
        self.registry.clear_pages(document.id)

        if document.type == "image":
            return self._convert_image(document, upload_id)
        return self._convert_pdf(document, data, upload_id)

    def _convert_image(self, document: Document, upload_id: Optional[str]) -> List[DocumentPage]:
        locator = document.original_url or self.storage.public_url(
            original_path(document.user_id, document.id, document.type)
        )
        page = self.registry.save_page(DocumentPage(document_id=document.id, page_number=1, image_url=locator))
        self.registry.update(document.id, page_count=1)
        self.registry.add_log(document.id, "page_conversion", "success", "Image stored as a single page")
        self._report(upload_id, 1, 1)
        return [page]

    def _convert_pdf(self, document: Document, data: Optional[bytes], upload_id: Optional[str]) -> List[DocumentPage]:
        if data is None:
            data = self.storage.download(original_path(document.user_id, document.id, document.type))

        total = count_pdf_pages(data)
        if not total:
            self._fail(document, "Could not read any pages from the PDF")

        pages: List[DocumentPage] = []
        for source_page in range(1, total + 1):
            page_number = len(pages) + 1
            try:
                image = self.render_page(data, source_page)
                url = self.storage.upload(
                    page_path(document.user_id, document.id, page_number), image, "image/jpeg"
                )
                pages.append(self.registry.save_page(
                    DocumentPage(document_id=document.id, page_number=page_number, image_url=url)
                ))
            except StorageUnavailableError:
                raise
            except Exception as e:
                logger.warning("Skipping page %d of %s: %s", source_page, document.id, e)
            self._report(upload_id, source_page, total)

        if not pages:
            self._fail(document, f"None of the {total} pages could be rendered")

        self.registry.update(document.id, page_count=len(pages))
        if len(pages) < total:
            self.registry.add_log(
                document.id,
                "page_conversion",
                "warning",
                f"Rendered {len(pages)} of {total} pages; {total - len(pages)} skipped",
            )
        else:
            self.registry.add_log(document.id, "page_conversion", "success", f"Rendered {total} pages")

        logger.info("Converted %s: %d/%d pages", document.id, len(pages), total)
        return pages

    def _fail(self, document: Document, message: str):
        self.registry.set_status(document.id, "failed", error=message)
        self.registry.add_log(document.id, "page_conversion", "error", message)
        logger.error("Page conversion failed for %s: %s", document.id, message)
        raise PageConversionError(message)

    def _report(self, upload_id: Optional[str], processed: int, total: int) -> None:
        if self.tracker and upload_id:
            self.tracker.update_page_progress(upload_id, processed, total)
