"""Local PDF text extraction and page rendering (pdfplumber).

Used by the command line to turn a PDF file into a
:class:`~statement_extraction.pipeline.StatementSource`; the pipeline itself
only ever sees the resulting text and images.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass

import pdfplumber

from .logging_setup import get_logger

# Fewer characters per page than this means the pages are scans, not text.
IMAGE_BASED_CHARS_PER_PAGE = 50

_logger = get_logger("statement_extraction.pdf_text")


@dataclass(frozen=True, slots=True)
class PdfText:
    text: str
    page_count: int
    is_image_based: bool

    @property
    def chars_per_page(self) -> int:
        return round(len(self.text) / self.page_count) if self.page_count else 0


def extract_pdf_text(data: bytes) -> PdfText:
    """Extract the text layer of every page, in page order.

    Pages are joined with a blank line. A PDF that cannot be opened is
    reported as an empty, image-based document rather than raising, so the
    caller falls back to sending the document itself.
    """

    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [(page.extract_text() or "") for page in pdf.pages]
    except Exception as e:  # noqa: BLE001 - pdfminer raises a wide range of parse errors
        _logger.error("pdf_text:extract_failed error=%s", e)
        return PdfText(text="", page_count=0, is_image_based=True)

    text = "\n\n".join(pages).strip()
    page_count = len(pages)
    is_image_based = page_count == 0 or len(text) / page_count < IMAGE_BASED_CHARS_PER_PAGE
    result = PdfText(text=text, page_count=page_count, is_image_based=is_image_based)
    _logger.info(
        "pdf_text:extracted pages=%d chars=%d chars_per_page=%d image_based=%s",
        page_count,
        len(text),
        result.chars_per_page,
        is_image_based,
    )
    return result


def render_page_images(data: bytes, *, resolution: int = 150) -> list[str]:
    """Render each page to a base64-encoded JPEG, in page order."""

    images: list[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            rendered = page.to_image(resolution=resolution).original
            buf = io.BytesIO()
            rendered.convert("RGB").save(buf, format="JPEG", quality=85)
            images.append(base64.b64encode(buf.getvalue()).decode("ascii"))
    _logger.info("pdf_text:rendered pages=%d resolution=%d", len(images), resolution)
    return images


__all__ = ["IMAGE_BASED_CHARS_PER_PAGE", "PdfText", "extract_pdf_text", "render_page_images"]
