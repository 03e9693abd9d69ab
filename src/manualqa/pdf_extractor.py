"""
PDF text extraction. One (page number, text) pair per page, in page order.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import closing

import fitz

from .errors import ExtractionError
from .models import PageText
from .observability import get_logger

logger = get_logger(__name__)


def open_pdf(data: bytes):
    if not data:
        raise ExtractionError("empty PDF buffer")
    try:
        pdf_doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ExtractionError(f"could not open PDF: {exc}") from exc
    if not pdf_doc.is_pdf or pdf_doc.page_count == 0:
        pdf_doc.close()
        raise ExtractionError("buffer is not a PDF document with pages")
    return pdf_doc


def extract_pages(data: bytes) -> Iterator[PageText]:
    """
    Yields page texts lazily. Each call re-opens the buffer, so the sequence
    can be restarted by calling again. Pages without a text layer yield "".
    """
    pdf_doc = open_pdf(data)
    with closing(pdf_doc):
        total = pdf_doc.page_count
        for index in range(total):
            try:
                text = pdf_doc.load_page(index).get_text("text") or ""
            except Exception as exc:
                raise ExtractionError(f"could not read page {index + 1}: {exc}") from exc
            if (index + 1) % 50 == 0:
                logger.info("pdf_pages_extracted", done=index + 1, total=total)
            yield PageText(page_number=index + 1, text=text)


def page_count(data: bytes) -> int:
    with closing(open_pdf(data)) as pdf_doc:
        return int(pdf_doc.page_count)
