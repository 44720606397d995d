"""
HTML to PDF generation with PyMuPDF Story.

Produces paginated A4 documents with page numbers, an optional diagonal
watermark and document metadata. Also validates and concatenates uploaded
PDFs for envelopes.
"""
import html
import io
import logging
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

PRODUCER = "StudioSign"
PAGE_MARGIN_PT = 50
FOOTER_FONT_SIZE = 8

BASE_CSS = """
body { font-family: sans-serif; font-size: 11pt; line-height: 1.45; color: #222; }
h1 { font-size: 18pt; margin-bottom: 4pt; }
h2 { font-size: 14pt; }
.document-number { color: #777; font-size: 9pt; }
.missing-variable { color: #b00020; font-weight: bold; }
"""


class PdfGenerationError(Exception):
    """HTML could not be laid out or a PDF could not be read."""
    pass


@dataclass
class PdfMetadata:
    title: str
    number: str
    watermark: Optional[str] = None


def wrap_html(body: str, title: str, number: str) -> str:
    """Full HTML document with a title block above the rendered template."""
    return (
        "<html><body>"
        f"<h1>{html.escape(title)}</h1>"
        f"<p class=\"document-number\">{html.escape(number)}</p>"
        f"{body}"
        "</body></html>"
    )


class PdfGenerator:
    """Lays out HTML into PDF bytes."""

    def __init__(self, paper: str = "a4"):
        self.paper = paper

    def html_to_pdf(self, body_html: str, meta: PdfMetadata) -> bytes:
        """
        Render HTML into a paginated PDF.

        Raises:
            PdfGenerationError: If layout fails
        """
        try:
            story = fitz.Story(html=wrap_html(body_html, meta.title, meta.number), user_css=BASE_CSS)
            buffer = io.BytesIO()
            writer = fitz.DocumentWriter(buffer)
            mediabox = fitz.paper_rect(self.paper)
            where = mediabox + (PAGE_MARGIN_PT, PAGE_MARGIN_PT, -PAGE_MARGIN_PT, -PAGE_MARGIN_PT)

            more = True
            while more:
                device = writer.begin_page(mediabox)
                more, _ = story.place(where)
                story.draw(device)
                writer.end_page()
            writer.close()
        except Exception as e:
            logger.exception("HTML layout failed")
            raise PdfGenerationError(f"Failed to lay out document: {e}")

        return self.finalize(buffer.getvalue(), meta)

    def merge(self, pdfs: List[bytes], meta: PdfMetadata) -> bytes:
        """Concatenate PDFs in order and apply footer, watermark and metadata."""
        if not pdfs:
            raise PdfGenerationError("No documents to merge")
        merged = fitz.open()
        try:
            for data in pdfs:
                try:
                    src = fitz.open(stream=data, filetype="pdf")
                except (fitz.FileDataError, RuntimeError) as e:
                    raise PdfGenerationError(f"Invalid PDF file: {e}")
                try:
                    merged.insert_pdf(src)
                finally:
                    src.close()
            combined = merged.tobytes(garbage=4, deflate=True)
        finally:
            merged.close()
        return self.finalize(combined, meta)

    def finalize(self, pdf_bytes: bytes, meta: PdfMetadata) -> bytes:
        """Add page numbers, the optional watermark and metadata."""
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        try:
            total = doc.page_count
            for index, page in enumerate(doc, 1):
                rect = page.rect
                page.insert_text(
                    (PAGE_MARGIN_PT, rect.height - PAGE_MARGIN_PT / 2),
                    f"{meta.number}  |  Page {index} of {total}",
                    fontname="helv",
                    fontsize=FOOTER_FONT_SIZE,
                    color=(0.45, 0.45, 0.45),
                )
                if meta.watermark:
                    self._draw_watermark(page, meta.watermark)

            doc.set_metadata({
                "title": meta.title,
                "subject": meta.number,
                "producer": PRODUCER,
                "creator": PRODUCER,
            })
            return doc.tobytes(garbage=4, deflate=True)
        finally:
            doc.close()

    def _draw_watermark(self, page: fitz.Page, text: str) -> None:
        rect = page.rect
        fontsize = 64
        width = fitz.get_text_length(text, fontname="helv", fontsize=fontsize)
        center = fitz.Point(rect.width / 2, rect.height / 2)
        start = fitz.Point(center.x - width / 2, center.y + fontsize / 3)
        page.insert_text(
            start,
            text,
            fontname="helv",
            fontsize=fontsize,
            color=(0.75, 0.75, 0.75),
            fill_opacity=0.35,
            morph=(center, fitz.Matrix(-40)),
        )


def count_pages(pdf_bytes: bytes) -> int:
    """
    Page count of a PDF.

    Raises:
        PdfGenerationError: If the bytes are not a readable PDF with pages
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (fitz.FileDataError, RuntimeError) as e:
        raise PdfGenerationError(f"Invalid PDF file: {e}")
    try:
        if doc.page_count == 0:
            raise PdfGenerationError("PDF has no pages")
        return doc.page_count
    finally:
        doc.close()


# Singleton instance
_pdf_generator: Optional[PdfGenerator] = None


def get_pdf_generator() -> PdfGenerator:
    """Get the PDF generator singleton."""
    global _pdf_generator
    if _pdf_generator is None:
        _pdf_generator = PdfGenerator()
    return _pdf_generator
