import io
import logging
from typing import Optional

import PyPDF2

from docscribe.config import config

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif", "image/heic")


def detect_kind(file_name: str, content_type: Optional[str] = None) -> Optional[str]:
    """
    Classify an upload as "pdf" or "image".
    Returns: the kind, or None when the file is not something we can process
    """
    content_type = (content_type or "").lower()
    if content_type == "application/pdf" or file_name.lower().endswith(".pdf"):
        return "pdf"
    if content_type.startswith("image/") or file_name.lower().endswith((".jpg", ".jpeg", ".png", ".webp", ".gif", ".heic")):
        return "image"
    return None


def check_size(size: int) -> bool:
    return 0 < size <= config.MAX_UPLOAD_BYTES


def count_pdf_pages(data: bytes) -> Optional[int]:
    """
    Validate PDF bytes and return page count
    Returns: page_count or None if invalid/corrupted
    """
    try:
        pdf_reader = PyPDF2.PdfReader(io.BytesIO(data))
        page_count = len(pdf_reader.pages)
        logger.debug("Valid PDF: %d pages", page_count)
        return page_count
    except Exception as e:
        logger.warning("PDF validation failed: %s", e)
        return None
