# PDF module
from studiosign.pdf.render import RenderResult, render, render_document, find_placeholders
from studiosign.pdf.generate import (
    PdfGenerator,
    PdfGenerationError,
    PdfMetadata,
    count_pages,
    get_pdf_generator,
)
from studiosign.pdf.sign import (
    PDFSigner,
    get_pdf_signer,
    SignerStamp,
    SigningError,
    append_pdf,
    decode_signature_data_url,
    generate_verification_id,
)
from studiosign.pdf.evidence import (
    EvidenceReportGenerator,
    DocumentInfo,
    EventInfo,
    SignerInfo,
    get_evidence_generator,
)
from studiosign.pdf.integrity import (
    IntegrityReport,
    IntegrityVerifier,
    signature_image_hash,
    verify_bytes,
    verify_signature_image,
)

__all__ = [
    "RenderResult",
    "render",
    "render_document",
    "find_placeholders",
    "PdfGenerator",
    "PdfGenerationError",
    "PdfMetadata",
    "count_pages",
    "get_pdf_generator",
    "PDFSigner",
    "get_pdf_signer",
    "SignerStamp",
    "SigningError",
    "append_pdf",
    "decode_signature_data_url",
    "generate_verification_id",
    "EvidenceReportGenerator",
    "DocumentInfo",
    "EventInfo",
    "SignerInfo",
    "get_evidence_generator",
    "IntegrityReport",
    "IntegrityVerifier",
    "signature_image_hash",
    "verify_bytes",
    "verify_signature_image",
]
