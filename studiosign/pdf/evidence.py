"""
Evidence report generator.
Creates a PDF audit certificate that is appended to the signed document
before it is sealed.
"""
import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Spacer,
    Table,
    TableStyle,
)

from studiosign.utils.datetime_utils import format_display, utc_now

logger = logging.getLogger(__name__)

# Unicode TTF families installed in the Docker image, in order of preference.
# Studio clients' names carry diacritics the built-in Helvetica cannot draw.
FONT_FAMILIES = [
    ("DejaVuSans", "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
     "DejaVuSans-Bold", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"),
    ("FreeSans", "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
     "FreeSansBold", "/usr/share/fonts/truetype/freefont/FreeSansBold.ttf"),
]

FONT_NORMAL = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_MONO = "Courier"

_FONTS_REGISTERED = False


def _register_fonts() -> None:
    """Switch to the first TTF family found on disk; Helvetica otherwise."""
    global _FONTS_REGISTERED, FONT_NORMAL, FONT_BOLD
    if _FONTS_REGISTERED:
        return
    _FONTS_REGISTERED = True

    for normal, normal_path, bold, bold_path in FONT_FAMILIES:
        if not (os.path.exists(normal_path) and os.path.exists(bold_path)):
            continue
        try:
            pdfmetrics.registerFont(TTFont(normal, normal_path))
            pdfmetrics.registerFont(TTFont(bold, bold_path))
        except Exception as e:
            logger.warning(f"Failed to register {normal} fonts: {e}")
            continue
        FONT_NORMAL, FONT_BOLD = normal, bold
        return


_register_fonts()


@dataclass
class SignerInfo:
    """Signer information for evidence report."""
    name: str
    email: Optional[str]
    role: Optional[str]
    viewed_at: Optional[datetime]
    otp_verified_at: Optional[datetime]
    signed_at: Optional[datetime]
    ip_address: Optional[str]
    user_agent: Optional[str]
    verification_id: Optional[str] = None


@dataclass
class EventInfo:
    """Audit entry as shown in the report."""
    action: str
    created_at: datetime
    sequence: int
    actor: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class DocumentInfo:
    """Document information for evidence report."""
    id: str
    number: str
    title: str
    created_at: datetime
    completed_at: datetime
    signed_content_hash: str  # hash of the signed pages, before this report is attached
    page_count: int


EVENT_LABELS = {
    "CREATED": "Document created",
    "UPDATED": "Document updated",
    "PDF_GENERATED": "PDF generated",
    "SENT": "Sent for signature",
    "RESENT": "Signing link re-sent",
    "OTP_REQUESTED": "Verification code sent",
    "OTP_VERIFIED": "Verification code confirmed",
    "OTP_FAILED": "Incorrect verification code",
    "VIEWED": "Document viewed",
    "SIGNER_VIEWED": "Document viewed",
    "SIGNED": "Signed",
    "SIGNER_SIGNED": "Signed",
    "SESSION_EXTENDED": "Session extended",
    "EMAIL_SENT": "Email delivered",
    "EMAIL_FAILED": "Email delivery failed",
    "COMPLETED": "All signatures complete",
}


def _key_value_table(rows: List[List[str]], font_size: int, value_font: Optional[str] = None,
                     indent: int = 0) -> Table:
    """Two-column label/value table used by every section but the timeline."""
    table = Table(rows, colWidths=[40*mm, 130*mm])
    table.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (0, -1), FONT_BOLD),
        ('FONTNAME', (1, 0), (1, -1), value_font or FONT_NORMAL),
        ('FONTSIZE', (0, 0), (-1, -1), font_size),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 2 if font_size < 9 else 4),
        ('LEFTPADDING', (0, 0), (-1, -1), indent),
    ]))
    return table


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


class EvidenceReportGenerator:
    """Builds the Certificate of Completion appended to every sealed document."""

    def __init__(self):
        self.styles = getSampleStyleSheet()
        base = self.styles['Normal']
        base.fontName = FONT_NORMAL
        self.styles.add(ParagraphStyle(
            name='CertificateTitle', parent=self.styles['Title'], fontName=FONT_BOLD, fontSize=18, spaceAfter=12,
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader', parent=self.styles['Heading2'], fontName=FONT_BOLD, fontSize=12,
            spaceBefore=12, spaceAfter=6, textColor=colors.HexColor('#1a1a1a'),
        ))
        self.styles.add(ParagraphStyle(name='BodySmall', parent=base, fontSize=9, leading=12))
        self.styles.add(ParagraphStyle(
            name='Footer', parent=base, fontSize=8, textColor=colors.grey, alignment=TA_CENTER,
        ))

    def generate(
        self,
        document: DocumentInfo,
        signers: List[SignerInfo],
        events: List[EventInfo],
    ) -> bytes:
        """
        Render the certificate.

        Args:
            document: The sealed document; signed_content_hash covers the pages before this report
            signers: Signers in signing order (a contract has exactly one)
            events: Audit entries, oldest first

        Returns:
            PDF bytes, ready for append_pdf()
        """
        buffer = io.BytesIO()
        pdf = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=20*mm,
            bottomMargin=20*mm,
            title=f"Audit certificate {document.number}",
        )

        elements = [
            Paragraph("Certificate of Completion", self.styles['CertificateTitle']),
            Paragraph("Electronic signature audit trail", self.styles['Normal']),
            Spacer(1, 10*mm),
        ]
        sections = [
            ("Document", self._document_section(document)),
            ("Signers", self._signers_section(signers)),
            ("Event timeline", [self._timeline(events)]),
            ("Technical details", [self._technical_table(document, signers)]),
        ]
        for heading, content in sections:
            elements.append(Paragraph(heading, self.styles['SectionHeader']))
            elements.extend(content)
            elements.append(Spacer(1, 6*mm))

        elements.append(Spacer(1, 4*mm))
        elements.append(Paragraph(f"Generated: {format_display(utc_now())}", self.styles['Footer']))
        elements.append(Paragraph(
            "Each signer proved control of their email address with a one-time code "
            "before signing. The SHA-256 above identifies the exact pages that were signed.",
            self.styles['Footer'],
        ))

        pdf.build(elements)

        data = buffer.getvalue()
        logger.info(f"Generated evidence report for {document.number} ({len(data)} bytes)")
        return data

    def _document_section(self, document: DocumentInfo) -> list:
        return [_key_value_table([
            ["Title:", document.title],
            ["Number:", document.number],
            ["Document ID:", document.id],
            ["Created:", format_display(document.created_at)],
            ["Completed:", format_display(document.completed_at)],
            ["Pages signed:", str(document.page_count)],
        ], font_size=9)]

    def _signers_section(self, signers: List[SignerInfo]) -> list:
        elements = []
        for position, signer in enumerate(signers, 1):
            heading = f"Signer #{position}: {signer.name}"
            if signer.role:
                heading += f" ({signer.role})"
            elements.append(Paragraph(heading, self.styles['BodySmall']))
            elements.append(_key_value_table([
                ["Email:", signer.email or "-"],
                ["Verification:", "Email one-time code"],
                ["Code confirmed:", format_display(signer.otp_verified_at)],
                ["Viewed:", format_display(signer.viewed_at)],
                ["Signed:", format_display(signer.signed_at)],
                ["IP address:", signer.ip_address or "-"],
                ["Verification ID:", signer.verification_id or "-"],
            ], font_size=8, indent=10))
            elements.append(Spacer(1, 4*mm))
        return elements

    def _timeline(self, events: List[EventInfo]) -> Table:
        rows = [["#", "Time", "Event", "Actor", "IP address"]]
        rows.extend(
            [
                str(event.sequence),
                format_display(event.created_at),
                EVENT_LABELS.get(event.action, event.action),
                event.actor or "-",
                event.ip_address or "-",
            ]
            for event in events
        )
        table = Table(rows, colWidths=[10*mm, 40*mm, 50*mm, 40*mm, 30*mm], repeatRows=1)
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, 0), FONT_BOLD),
            ('FONTNAME', (0, 1), (-1, -1), FONT_NORMAL),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f0f0f0')),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('TOPPADDING', (0, 0), (-1, -1), 4),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]))
        return table

    def _technical_table(self, document: DocumentInfo, signers: List[SignerInfo]) -> Table:
        rows = [["Signed content SHA-256:", ""], ["", document.signed_content_hash]]
        user_agents = sorted({s.user_agent for s in signers if s.user_agent})
        if user_agents:
            rows.append(["User-Agent(s):", ""])
            rows.extend(["", _clip(ua, 80)] for ua in user_agents[:3])
        return _key_value_table(rows, font_size=7, value_font=FONT_MONO)


_evidence_generator: Optional[EvidenceReportGenerator] = None


def get_evidence_generator() -> EvidenceReportGenerator:
    global _evidence_generator
    if _evidence_generator is None:
        _evidence_generator = EvidenceReportGenerator()
    return _evidence_generator
