"""
PDF artifact pipeline: render a document to document.pdf, stamp signatures
onto it and seal the final signed.pdf with the evidence certificate.

PyMuPDF and reportlab work is CPU bound and runs in the threadpool.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from studiosign.config import Settings, get_settings
from studiosign.exceptions import RenderFailure, ValidationFailure
from studiosign.models import (
    AuditAction,
    AuditEntry,
    DocumentKind,
    DocumentRecord,
    MissingVariablePolicy,
    SignerRecord,
)
from studiosign.pdf import (
    DocumentInfo,
    EventInfo,
    EvidenceReportGenerator,
    PDFSigner,
    PdfGenerationError,
    PdfGenerator,
    PdfMetadata,
    SignerInfo,
    SignerStamp,
    SigningError,
    append_pdf,
    count_pages,
    decode_signature_data_url,
    get_evidence_generator,
    get_pdf_generator,
    get_pdf_signer,
    render_document,
)
from studiosign.services.audit import AuditLog
from studiosign.storage import ArtifactStorage, document_pdf_path, signed_pdf_path
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import utc_now
from studiosign.utils.security import compute_bytes_hash

logger = logging.getLogger(__name__)


@dataclass
class StoredPdf:
    path: str
    hash: str
    page_count: int


def _metadata(document: DocumentRecord) -> PdfMetadata:
    return PdfMetadata(title=document.title, number=document.number, watermark=document.watermark)


class ArtifactPipeline:

    def __init__(
        self,
        store: SigningStore,
        storage: ArtifactStorage,
        audit: AuditLog,
        settings: Optional[Settings] = None,
        generator: Optional[PdfGenerator] = None,
        signer: Optional[PDFSigner] = None,
        evidence: Optional[EvidenceReportGenerator] = None,
    ):
        self.store = store
        self.storage = storage
        self.audit = audit
        self.settings = settings or get_settings()
        self.generator = generator or get_pdf_generator()
        self.signer = signer or get_pdf_signer()
        self.evidence = evidence or get_evidence_generator()

    @property
    def default_policy(self) -> MissingVariablePolicy:
        return MissingVariablePolicy(self.settings.missing_variable_policy)

    async def generate(self, document: DocumentRecord) -> DocumentRecord:
        """
        Render the document to document.pdf and record path, hash and page count.

        Envelopes with uploaded PDFs are merged in upload order; everything else
        is laid out from the rendered template.

        Raises:
            RenderFailure: Strict rendering found missing variables, or layout failed
            ValidationFailure: The document has no content at all
        """
        meta = _metadata(document)
        uploads = []
        if document.kind == DocumentKind.ENVELOPE:
            uploads = self.store.list_envelope_documents(document.id)

        rendered_html = None
        missing: List[str] = []
        try:
            if uploads:
                sources = [self.storage.read_bytes(u.storage_path) for u in uploads]
                pdf_bytes = await run_in_threadpool(self.generator.merge, sources, meta)
            else:
                if not document.template.strip():
                    raise ValidationFailure(["Document has no template text or uploaded files"])
                result = render_document(document, utc_now(), self.default_policy)
                rendered_html, missing = result.html, result.missing
                pdf_bytes = await run_in_threadpool(self.generator.html_to_pdf, result.html, meta)
        except PdfGenerationError as e:
            raise RenderFailure(str(e))
        except FileNotFoundError as e:
            raise RenderFailure(f"Uploaded file is missing from storage: {e}")

        stored = await self._store(document_pdf_path(document.id), pdf_bytes)
        updated = self.store.update_document(document.kind, document.id, {
            "rendered_html": rendered_html,
            "pdf_path": stored.path,
            "pdf_hash": stored.hash,
            "page_count": stored.page_count,
        })
        self.audit.append(document.id, document.kind, AuditAction.PDF_GENERATED, {
            "pdf_hash": stored.hash,
            "page_count": stored.page_count,
            "missing_variables": missing or None,
            "source": "uploads" if uploads else "template",
        })
        return updated or document

    async def embed(self, pdf_bytes: bytes, signature_data_url: str, stamp: SignerStamp) -> bytes:
        try:
            png = decode_signature_data_url(signature_data_url)
            return await run_in_threadpool(self.signer.embed_signature, pdf_bytes, png, stamp)
        except SigningError as e:
            raise ValidationFailure([str(e)])

    async def seal(
        self,
        document: DocumentRecord,
        signed_bytes: bytes,
        signers: Sequence[SignerInfo],
        pending_events: Sequence[str] = (),
        completed_at: Optional[datetime] = None,
    ) -> StoredPdf:
        """
        Append the evidence certificate to the signed content and store signed.pdf.

        pending_events are actions about to be audited once the status change
        commits; they are listed on the certificate after the existing entries.
        """
        completed_at = completed_at or utc_now()
        events = self.events_for(document.id)
        sequence = events[-1].sequence if events else 0
        for offset, action in enumerate(pending_events, 1):
            events.append(EventInfo(action=action, created_at=completed_at, sequence=sequence + offset))

        content_hash = compute_bytes_hash(signed_bytes)
        content_pages = await run_in_threadpool(count_pages, signed_bytes)
        info = DocumentInfo(
            id=document.id,
            number=document.number,
            title=document.title,
            created_at=document.created_at,
            completed_at=completed_at,
            signed_content_hash=content_hash,
            page_count=content_pages,
        )
        report = await run_in_threadpool(self.evidence.generate, info, list(signers), events)
        final = await run_in_threadpool(append_pdf, signed_bytes, report)
        return await self._store(signed_pdf_path(document.id), final)

    def events_for(self, document_id: str) -> List[EventInfo]:
        return [
            EventInfo(
                action=entry.action.value,
                created_at=entry.created_at,
                sequence=entry.sequence,
                actor=entry.metadata.get("email"),
                ip_address=entry.metadata.get("ip"),
            )
            for entry in self.audit.chronological(document_id)
        ]

    async def _store(self, path: str, data: bytes) -> StoredPdf:
        pages = await run_in_threadpool(count_pages, data)
        self.storage.write_bytes(path, data)
        digest = compute_bytes_hash(data)
        logger.info(f"Stored {path} ({len(data)} bytes, {pages} pages, sha256 {digest[:12]})")
        return StoredPdf(path=path, hash=digest, page_count=pages)


def otp_verified_times(entries: Sequence[AuditEntry]) -> Dict[Optional[str], datetime]:
    """Latest OTP_VERIFIED time per signer_id (None for contracts)."""
    times: Dict[Optional[str], datetime] = {}
    for entry in entries:
        if entry.action == AuditAction.OTP_VERIFIED:
            times[entry.metadata.get("signer_id")] = entry.created_at
    return times


def signer_info_from_record(signer: SignerRecord, otp_verified_at: Optional[datetime]) -> SignerInfo:
    return SignerInfo(
        name=signer.name,
        email=signer.email,
        role=signer.role,
        viewed_at=signer.viewed_at,
        otp_verified_at=otp_verified_at,
        signed_at=signer.signed_at,
        ip_address=signer.ip_address,
        user_agent=signer.user_agent,
        verification_id=signer.verification_id,
    )
