"""
PDF signing module using PyMuPDF (fitz).
Places a signature image and a verification stamp with QR code on a
signatures page appended to the document. Each signer gets its own slot.
"""
import base64
import io
import logging
import os
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import fitz  # PyMuPDF
import qrcode
from PIL import Image

logger = logging.getLogger(__name__)

# These fonts are installed in the Docker image: fonts-dejavu-core, fonts-freefont-ttf
FONT_PATHS = {
    "regular": [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    ],
    "bold": [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/freefont/FreeSansBold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    ],
}

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

# Signatures page layout, in points
PAGE_MARGIN = 50
HEADER_HEIGHT = 60
SLOT_HEIGHT = 110
SIGNATURE_WIDTH = 190
SIGNATURE_HEIGHT = 70
STAMP_WIDTH = 260
STAMP_HEIGHT = 92
QR_SIZE = 56
STAMP_PADDING = 6

STAMP_HEADER = "Electronically signed by"
STAMP_BORDER = (0.1, 0.35, 0.7)
STAMP_BACKGROUND = (0.96, 0.97, 1.0)
TEXT_COLOR = (0.1, 0.1, 0.1)
LIGHT_GRAY = (0.45, 0.45, 0.45)


def _find_font(style: str = "regular") -> Optional[str]:
    """Find a TrueType font with full Latin diacritics support."""
    for path in FONT_PATHS.get(style, FONT_PATHS["regular"]):
        if os.path.exists(path):
            return path
    return None


@dataclass
class SignerStamp:
    """
    Information for the verification stamp.

    The document hash is not part of the stamp: it can only be computed after
    the stamp is added. It is stored on the document record and printed in
    the evidence report.
    """
    verification_id: str  # e.g. "VRF-ABC234"
    verify_url: str
    signer_name: str
    signer_email: str
    signed_at: datetime
    document_number: str
    signer_index: int = 0  # how many signatures the PDF already carries
    role: Optional[str] = None
    include_qr: bool = True


class SigningError(Exception):
    """PDF signing error."""
    pass


def decode_signature_data_url(data_url: str) -> bytes:
    """
    Decode a base64 PNG data URL (or bare base64) into PNG bytes.

    Raises:
        SigningError: If the payload is not base64 or not a PNG
    """
    payload = data_url
    if payload.startswith("data:"):
        header, sep, payload = payload.partition(",")
        if not sep or ";base64" not in header:
            raise SigningError("Signature must be a base64 data URL")
    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise SigningError(f"Failed to decode signature: {e}")
    if data[:8] != PNG_MAGIC:
        raise SigningError("Invalid PNG signature")
    return data


class PDFSigner:
    """PDF signature overlay using PyMuPDF."""

    def slots_per_page(self, page_height: float) -> int:
        usable = page_height - 2 * PAGE_MARGIN - HEADER_HEIGHT
        return max(1, int(usable // SLOT_HEIGHT))

    def embed_signature(self, pdf_bytes: bytes, signature_png: bytes, stamp: SignerStamp) -> bytes:
        """
        Add a signature image and verification stamp to a PDF.

        The first signature appends a signatures page; later signatures take
        the next free slot on it and spill onto a new page when it is full.

        Returns:
            The new PDF bytes

        Raises:
            SigningError: If the PDF cannot be opened or written
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (fitz.FileDataError, RuntimeError) as e:
            raise SigningError(f"Invalid PDF file: {e}")

        try:
            if doc.page_count == 0:
                raise SigningError("PDF has no pages")

            template_rect = doc[0].rect
            per_page = self.slots_per_page(template_rect.height)
            slot = stamp.signer_index % per_page

            if slot == 0:
                page = doc.new_page(width=template_rect.width, height=template_rect.height)
                self._draw_page_header(page, stamp.document_number)
            else:
                page = doc[-1]

            top = PAGE_MARGIN + HEADER_HEIGHT + slot * SLOT_HEIGHT
            sig_rect = fitz.Rect(
                PAGE_MARGIN,
                top,
                PAGE_MARGIN + SIGNATURE_WIDTH,
                top + SIGNATURE_HEIGHT,
            )
            page.insert_image(sig_rect, stream=signature_png, keep_proportion=True)

            # Signature line with caption
            line_y = sig_rect.y1 + 4
            page.draw_line(
                fitz.Point(sig_rect.x0, line_y),
                fitz.Point(sig_rect.x1, line_y),
                color=LIGHT_GRAY,
                width=0.5,
            )
            caption = stamp.signer_name if not stamp.role else f"{stamp.signer_name} ({stamp.role})"
            self._insert_text(page, (sig_rect.x0, line_y + 11), caption, 8, TEXT_COLOR, bold=False)

            stamp_rect = fitz.Rect(
                sig_rect.x1 + 20,
                top,
                sig_rect.x1 + 20 + STAMP_WIDTH,
                top + STAMP_HEIGHT,
            )
            self._add_verification_stamp(page, stamp, stamp_rect)

            metadata = doc.metadata or {}
            metadata["keywords"] = (
                f"{metadata.get('keywords') or ''} "
                f"Signed by: {stamp.signer_name} | Verification: {stamp.verification_id}"
            ).strip()
            doc.set_metadata(metadata)

            output = doc.tobytes(garbage=4, deflate=True)
        except SigningError:
            raise
        except Exception as e:
            logger.exception("Failed to sign PDF")
            raise SigningError(f"Failed to sign PDF: {e}")
        finally:
            doc.close()

        logger.info(
            f"Embedded signature {stamp.verification_id} in slot {slot} "
            f"(signer index {stamp.signer_index})"
        )
        return output

    def _draw_page_header(self, page: fitz.Page, document_number: str) -> None:
        self._insert_text(page, (PAGE_MARGIN, PAGE_MARGIN + 14), "Signatures", 16, TEXT_COLOR, bold=True)
        self._insert_text(
            page,
            (PAGE_MARGIN, PAGE_MARGIN + 32),
            f"Document {document_number}",
            9,
            LIGHT_GRAY,
            bold=False,
        )

    def _insert_text(self, page: fitz.Page, point, text: str, size: float, color, bold: bool) -> None:
        font_path = _find_font("bold" if bold else "regular")
        if font_path:
            try:
                page.insert_text(
                    point,
                    text,
                    fontfile=font_path,
                    fontname="F-bold" if bold else "F-regular",
                    fontsize=size,
                    color=color,
                )
                return
            except Exception as e:
                logger.warning(f"Font {font_path} failed: {e}")

        # Built-in Helvetica only covers Latin-1
        ascii_text = text.encode("latin-1", errors="replace").decode("latin-1")
        page.insert_text(
            point,
            ascii_text,
            fontname="hebo" if bold else "helv",
            fontsize=size,
            color=color,
        )

    def _add_verification_stamp(self, page: fitz.Page, stamp: SignerStamp, rect: fitz.Rect) -> None:
        """Draw the bordered stamp box with signing details and an optional QR code."""
        shape = page.new_shape()
        shape.draw_rect(rect)
        shape.finish(color=STAMP_BORDER, fill=STAMP_BACKGROUND, width=1.2)
        shape.commit()

        lines = [
            (STAMP_HEADER, 7, STAMP_BORDER, True),
            (stamp.signer_name, 9, TEXT_COLOR, True),
            (stamp.signer_email, 7, TEXT_COLOR, False),
            (stamp.signed_at.strftime("%Y-%m-%d %H:%M:%S UTC"), 7, TEXT_COLOR, False),
            (f"Document: {stamp.document_number}", 6, LIGHT_GRAY, False),
            (f"ID: {stamp.verification_id}", 6, LIGHT_GRAY, False),
        ]

        x = rect.x0 + STAMP_PADDING
        y = rect.y0 + STAMP_PADDING + 2
        for text, size, color, bold in lines:
            self._insert_text(page, (x, y + size), text, size, color, bold)
            y += size + 4

        if stamp.include_qr:
            qr_rect = fitz.Rect(
                rect.x1 - QR_SIZE - STAMP_PADDING,
                rect.y0 + STAMP_PADDING,
                rect.x1 - STAMP_PADDING,
                rect.y0 + STAMP_PADDING + QR_SIZE,
            )
            try:
                page.insert_image(qr_rect, stream=self._generate_qr_code(stamp.verify_url, QR_SIZE))
            except Exception as e:
                logger.warning(f"Failed to generate QR code: {e}")

    def _generate_qr_code(self, url: str, size: int) -> bytes:
        """QR code as PNG bytes, roughly size points wide."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=4,
            border=1,
        )
        qr.add_data(url)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
        img = img.resize((size * 2, size * 2), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()


def append_pdf(base_pdf: bytes, appendix_pdf: bytes) -> bytes:
    """Concatenate two PDFs (used to attach the evidence report)."""
    base = fitz.open(stream=base_pdf, filetype="pdf")
    appendix = fitz.open(stream=appendix_pdf, filetype="pdf")
    try:
        base.insert_pdf(appendix)
        return base.tobytes(garbage=4, deflate=True)
    finally:
        appendix.close()
        base.close()


def generate_verification_id() -> str:
    """
    Generate a short, human-readable verification ID.
    Format: VRF-XXXXXX (6 alphanumeric chars)
    """
    chars = string.ascii_uppercase + string.digits
    # Remove confusing characters
    chars = chars.replace("O", "").replace("0", "").replace("I", "").replace("1", "").replace("L", "")
    random_part = "".join(secrets.choice(chars) for _ in range(6))
    return f"VRF-{random_part}"


# Singleton instance
_pdf_signer: Optional[PDFSigner] = None


def get_pdf_signer() -> PDFSigner:
    """Get the PDF signer singleton."""
    global _pdf_signer
    if _pdf_signer is None:
        _pdf_signer = PDFSigner()
    return _pdf_signer


__all__: List[str] = [
    "PDFSigner",
    "SignerStamp",
    "SigningError",
    "decode_signature_data_url",
    "append_pdf",
    "get_pdf_signer",
    "generate_verification_id",
]
