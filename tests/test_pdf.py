"""
Tests for PDF generation, signature embedding, evidence reports and integrity checks.
"""
import base64
from datetime import datetime, timezone

import fitz  # PyMuPDF
import pytest

from studiosign.models import ContractRecord
from studiosign.pdf import (
    DocumentInfo,
    EventInfo,
    EvidenceReportGenerator,
    IntegrityVerifier,
    PdfGenerationError,
    PdfGenerator,
    PdfMetadata,
    PDFSigner,
    SignerInfo,
    SignerStamp,
    SigningError,
    append_pdf,
    count_pages,
    decode_signature_data_url,
    generate_verification_id,
    verify_bytes,
)
from studiosign.utils.security import compute_bytes_hash

SIGNED_AT = datetime(2026, 5, 4, 13, 7, 9, tzinfo=timezone.utc)


@pytest.fixture
def generator():
    return PdfGenerator()


@pytest.fixture
def base_pdf(generator):
    return generator.html_to_pdf("<p>Hello studio</p>", PdfMetadata(title="Agreement", number="CT-2026-0001"))


def stamp(index=0, name="Jana Novak"):
    return SignerStamp(
        verification_id=generate_verification_id(),
        verify_url="https://sign.example.com/verify/ct-1",
        signer_name=name,
        signer_email="jana@example.com",
        signed_at=SIGNED_AT,
        document_number="CT-2026-0001",
        signer_index=index,
    )


def page_text(pdf_bytes, page_index):
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        return doc[page_index].get_text()
    finally:
        doc.close()


class TestGenerate:
    """Tests for HTML to PDF layout."""

    def test_single_page(self, base_pdf):
        assert count_pages(base_pdf) == 1
        text = page_text(base_pdf, 0)
        assert "Hello studio" in text
        assert "CT-2026-0001" in text
        assert "Page 1 of 1" in text

    def test_long_document_paginates(self, generator):
        body = "".join(f"<p>Clause {i}: the photographer retains copyright.</p>" for i in range(200))
        pdf = generator.html_to_pdf(body, PdfMetadata(title="Long", number="CT-2026-0002"))
        total = count_pages(pdf)
        assert total > 1
        assert f"Page {total} of {total}" in page_text(pdf, total - 1)

    def test_metadata(self, base_pdf):
        doc = fitz.open(stream=base_pdf, filetype="pdf")
        try:
            assert doc.metadata["title"] == "Agreement"
            assert doc.metadata["producer"] == "StudioSign"
        finally:
            doc.close()

    def test_generation_is_deterministic_in_content(self, generator):
        """Same input gives the same visible text."""
        meta = PdfMetadata(title="Agreement", number="CT-2026-0001")
        a = generator.html_to_pdf("<p>Same</p>", meta)
        b = generator.html_to_pdf("<p>Same</p>", meta)
        assert page_text(a, 0) == page_text(b, 0)

    def test_watermark(self, generator):
        pdf = generator.html_to_pdf(
            "<p>Draft</p>",
            PdfMetadata(title="Agreement", number="CT-2026-0001", watermark="PREVIEW"),
        )
        assert "PREVIEW" in page_text(pdf, 0)

    def test_merge(self, generator, base_pdf):
        merged = generator.merge([base_pdf, base_pdf], PdfMetadata(title="Pack", number="ENV-2026-0001"))
        assert count_pages(merged) == 2
        assert "Page 2 of 2" in page_text(merged, 1)

    def test_merge_rejects_garbage(self, generator):
        with pytest.raises(PdfGenerationError):
            generator.merge([b"not a pdf"], PdfMetadata(title="Pack", number="ENV-2026-0001"))

    def test_merge_requires_documents(self, generator):
        with pytest.raises(PdfGenerationError):
            generator.merge([], PdfMetadata(title="Pack", number="ENV-2026-0001"))

    def test_count_pages_rejects_garbage(self):
        with pytest.raises(PdfGenerationError):
            count_pages(b"%PDF-broken")


class TestDecodeSignature:
    """Tests for signature image decoding."""

    def test_data_url(self, signature_data_url, sample_png_bytes):
        assert decode_signature_data_url(signature_data_url) == sample_png_bytes

    def test_bare_base64(self, sample_png_bytes):
        assert decode_signature_data_url(base64.b64encode(sample_png_bytes).decode()) == sample_png_bytes

    def test_not_base64(self):
        with pytest.raises(SigningError):
            decode_signature_data_url("data:image/png;base64,***")

    def test_not_png(self):
        payload = base64.b64encode(b"GIF89a fake").decode()
        with pytest.raises(SigningError):
            decode_signature_data_url(f"data:image/gif;base64,{payload}")

    def test_missing_base64_marker(self, sample_png_bytes):
        payload = base64.b64encode(sample_png_bytes).decode()
        with pytest.raises(SigningError):
            decode_signature_data_url(f"data:image/png,{payload}")


class TestEmbedSignature:
    """Tests for the signatures page."""

    def test_first_signature_adds_page(self, base_pdf, sample_png_bytes):
        signed = PDFSigner().embed_signature(base_pdf, sample_png_bytes, stamp())

        assert count_pages(signed) == 2
        text = page_text(signed, 1)
        assert "Signatures" in text
        assert "Jana Novak" in text
        assert "2026-05-04 13:07:09 UTC" in text

    def test_second_signature_shares_page(self, base_pdf, sample_png_bytes):
        signer = PDFSigner()
        once = signer.embed_signature(base_pdf, sample_png_bytes, stamp(0, "Anna Model"))
        twice = signer.embed_signature(once, sample_png_bytes, stamp(1, "Petr Guardian"))

        assert count_pages(twice) == 2
        text = page_text(twice, 1)
        assert "Anna Model" in text and "Petr Guardian" in text

    def test_full_page_spills_over(self, base_pdf, sample_png_bytes):
        signer = PDFSigner()
        per_page = signer.slots_per_page(fitz.paper_rect("a4").height)
        signed = signer.embed_signature(base_pdf, sample_png_bytes, stamp(per_page))
        assert count_pages(signed) == 2
        assert per_page > 1

    def test_embedding_changes_hash(self, base_pdf, sample_png_bytes):
        signed = PDFSigner().embed_signature(base_pdf, sample_png_bytes, stamp())
        assert compute_bytes_hash(signed) != compute_bytes_hash(base_pdf)

    def test_invalid_pdf(self, sample_png_bytes):
        with pytest.raises(SigningError):
            PDFSigner().embed_signature(b"nope", sample_png_bytes, stamp())


class TestEvidenceReport:

    def test_report_appended(self, base_pdf):
        report = EvidenceReportGenerator().generate(
            DocumentInfo(
                id="ct-1",
                number="CT-2026-0001",
                title="Agreement",
                created_at=SIGNED_AT,
                completed_at=SIGNED_AT,
                signed_content_hash=compute_bytes_hash(base_pdf),
                page_count=1,
            ),
            [SignerInfo(
                name="Jana Novak",
                email="jana@example.com",
                role=None,
                viewed_at=SIGNED_AT,
                otp_verified_at=SIGNED_AT,
                signed_at=SIGNED_AT,
                ip_address="203.0.113.7",
                user_agent="pytest",
                verification_id="VRF-ABCDEF",
            )],
            [
                EventInfo(action="SENT", created_at=SIGNED_AT, sequence=1),
                EventInfo(action="SIGNED", created_at=SIGNED_AT, sequence=2, actor="Jana Novak"),
            ],
        )
        assert report.startswith(b"%PDF")

        combined = append_pdf(base_pdf, report)
        assert count_pages(combined) == count_pages(base_pdf) + count_pages(report)
        assert "Certificate of Completion" in page_text(combined, 1)


class TestVerificationId:

    def test_format(self):
        vid = generate_verification_id()
        assert vid.startswith("VRF-")
        assert len(vid) == 10
        assert not set(vid[4:]) & set("O0I1L")


class TestIntegrity:
    """Tests for integrity verification."""

    def make_record(self, path, pdf_hash):
        return ContractRecord(
            id="ct-1", number="CT-2026-0001", title="Agreement", recipient_name="Jana",
            pdf_path=path, pdf_hash=pdf_hash, created_at=SIGNED_AT,
        )

    def test_matching_hash(self, storage, base_pdf):
        storage.write_bytes("documents/ct-1/signed.pdf", base_pdf)
        report = IntegrityVerifier(storage).verify(
            self.make_record("documents/ct-1/signed.pdf", compute_bytes_hash(base_pdf))
        )
        assert report.valid is True
        assert report.recomputed_hash == report.sealed_hash

    def test_tampered_artifact(self, storage, base_pdf):
        storage.write_bytes("documents/ct-1/signed.pdf", base_pdf)
        record = self.make_record("documents/ct-1/signed.pdf", compute_bytes_hash(base_pdf))
        storage.write_bytes("documents/ct-1/signed.pdf", base_pdf + b"\n%tampered")

        report = IntegrityVerifier(storage).verify(record)
        assert report.valid is False
        assert report.recomputed_hash != report.sealed_hash

    def test_missing_artifact(self, storage):
        report = IntegrityVerifier(storage).verify(self.make_record("documents/ct-1/signed.pdf", "ab" * 32))
        assert report.valid is False
        assert report.recomputed_hash is None

    def test_unsealed_document(self, storage):
        report = IntegrityVerifier(storage).verify(self.make_record(None, None))
        assert report.valid is False

    def test_verify_bytes(self, base_pdf):
        digest = compute_bytes_hash(base_pdf)
        assert verify_bytes(base_pdf, digest)
        assert verify_bytes(base_pdf, digest.upper())
        assert not verify_bytes(base_pdf + b"x", digest)
        assert not verify_bytes(base_pdf, None)
