"""
Rasterize single PDF pages into display-sized JPEG images.
"""
import io

from pdf2image import convert_from_bytes
from PIL import Image

from docscribe.config import config


def render_pdf_page(data: bytes, page_number: int, dpi: int = None, quality: int = None) -> bytes:
    """
    Render one 1-based page of a PDF to JPEG bytes.

    Pages are rendered one at a time so a broken page only costs that page.
    Raises whatever pdf2image raises for the page; callers decide whether to skip.
    """
    images = convert_from_bytes(
        data,
        dpi=dpi or config.PAGE_RENDER_DPI,
        first_page=page_number,
        last_page=page_number,
    )
    if not images:
        raise ValueError(f"Page {page_number} produced no image")
    return to_jpeg(images[0], quality=quality)


def to_jpeg(image: Image.Image, quality: int = None) -> bytes:
    if image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality or config.PAGE_JPEG_QUALITY)
    return buffer.getvalue()
