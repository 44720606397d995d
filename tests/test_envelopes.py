"""
End-to-end tests for multi-signer envelopes.
"""
import asyncio
import base64
import hashlib
from datetime import timedelta
from unittest.mock import patch

import pytest

from studiosign.exceptions import (
    AlreadySigned,
    IllegalStateTransition,
    NotFoundError,
    RenderFailure,
    SequenceNotEligible,
    SessionExpired,
    ValidationFailure,
)
from studiosign.models import (
    AddEnvelopeDocumentRequest,
    AuditAction,
    DeclineRequest,
    EnvelopeStatus,
    SignerInput,
    SignerStatus,
    SigningWorkflow,
    TokenInvalidReason,
    UpdateEnvelopeRequest,
    UpdateSignerRequest,
)
from studiosign.pdf import PdfGenerator, PdfMetadata, count_pages
from studiosign.services.state_machine import transition
from studiosign.store.base import StoreUnavailable
from studiosign.utils.datetime_utils import utc_now


def token_from(link):
    return link.url.rsplit("/", 1)[1]


def signer_named(engine, envelope_id, email):
    return next(s for s in engine.envelopes.signers(envelope_id) if s.email == email)


def upload_request(name="Usage terms"):
    pdf = PdfGenerator().html_to_pdf(f"<p>{name}</p>", PdfMetadata(title=name, number="UPLOAD"))
    return AddEnvelopeDocumentRequest(name=name, content_base64=base64.b64encode(pdf).decode())


class TestDraftEditing:
    """Tests for building an envelope before it is sent."""

    def test_create_with_signers(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        signers = engine.envelopes.signers(envelope.id)

        assert envelope.number.startswith("ENV-")
        assert envelope.status == EnvelopeStatus.DRAFT
        assert [(s.name, s.position) for s in signers] == [("Anna Model", 1), ("Petr Guardian", 2)]

    def test_duplicate_signer_email(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        with pytest.raises(ValidationFailure):
            engine.envelopes.add_signer(envelope.id, SignerInput(name="Anna Again", email="ANNA@example.com"))

    def test_position_collision(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        with pytest.raises(ValidationFailure):
            engine.envelopes.add_signer(
                envelope.id, SignerInput(name="Eva Stylist", email="eva@example.com", position=2)
            )

    def test_update_and_remove_signer(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        petr = signer_named(engine, envelope.id, "petr@example.com")

        updated = engine.envelopes.update_signer(envelope.id, petr.id, UpdateSignerRequest(position=5))
        assert updated.position == 5

        engine.envelopes.remove_signer(envelope.id, petr.id)
        assert [s.email for s in engine.envelopes.signers(envelope.id)] == ["anna@example.com"]
        with pytest.raises(NotFoundError):
            engine.envelopes.remove_signer(envelope.id, petr.id)

    def test_detail_hides_signature_images(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        detail = engine.envelopes.detail(envelope.id)

        assert detail["envelope"]["number"] == envelope.number
        assert all("signature_data_url" not in s for s in detail["signers"])
        assert [s["can_act"] for s in detail["signers"]] == [True, False]

    @pytest.mark.asyncio
    async def test_uploads_merged_in_order(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        first = await engine.envelopes.add_document(envelope.id, upload_request("Usage terms"))
        second = await engine.envelopes.add_document(envelope.id, upload_request("Model release"))

        assert (first.order, second.order) == (1, 2)
        generated = await engine.envelopes.generate_pdf(envelope.id)
        assert generated.page_count == 2
        assert generated.rendered_html is None

    @pytest.mark.asyncio
    async def test_upload_must_be_pdf(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        with pytest.raises(ValidationFailure):
            await engine.envelopes.add_document(
                envelope.id,
                AddEnvelopeDocumentRequest(name="notes", content_base64=base64.b64encode(b"plain text").decode()),
            )
        with pytest.raises(ValidationFailure):
            await engine.envelopes.add_document(
                envelope.id, AddEnvelopeDocumentRequest(name="notes", content_base64="!!!not base64")
            )

    @pytest.mark.asyncio
    async def test_remove_upload_drops_rendered_pdf(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        upload = await engine.envelopes.add_document(envelope.id, upload_request())
        await engine.envelopes.generate_pdf(envelope.id)

        engine.envelopes.remove_document(envelope.id, upload.id)

        assert engine.envelopes.get(envelope.id).pdf_path is None
        assert engine.envelopes.documents(envelope.id) == []

    @pytest.mark.asyncio
    async def test_signers_frozen_after_send(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(envelope.id)

        with pytest.raises(IllegalStateTransition):
            engine.envelopes.add_signer(envelope.id, SignerInput(name="Eva", email="eva@example.com"))

    @pytest.mark.asyncio
    async def test_send_without_signers(self, engine, envelope_request):
        envelope_request.signers = []
        envelope = engine.envelopes.create(envelope_request)
        with pytest.raises(ValidationFailure):
            await engine.envelopes.send(envelope.id)


class TestSequential:
    """Signers sign one after another."""

    @pytest.mark.asyncio
    async def test_only_first_signer_emailed(self, engine, email_service, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)

        assert sent.status == "PENDING"
        delivered = {link.email: link.email_delivered for link in sent.links}
        assert delivered == {"anna@example.com": True, "petr@example.com": None}
        assert email_service.sent_to("petr@example.com") == []

    @pytest.mark.asyncio
    async def test_later_signer_must_wait(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        petr_link = next(link for link in sent.links if link.email == "petr@example.com")

        with pytest.raises(SequenceNotEligible) as exc_info:
            await flow.sign(envelope.id, token_from(petr_link), "Petr Guardian", "petr@example.com")

        assert exc_info.value.details == {"waitingFor": ["Anna Model"]}
        assert signer_named(engine, envelope.id, "petr@example.com").status == SignerStatus.VIEWED

    @pytest.mark.asyncio
    async def test_full_flow(self, engine, flow, email_service, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(envelope.id)
        petr_id = signer_named(engine, envelope.id, "petr@example.com").id
        first_petr_link = (await engine.envelopes.resend_signer(envelope.id, petr_id)).links[0]

        anna = await flow.sign(
            envelope.id, email_service.last_token_for("anna@example.com"), "Anna Model", "anna@example.com"
        )
        assert anna.status == "IN_PROGRESS"
        assert anna.signed_pdf_path is None

        # The next signer gets a fresh link; the earlier one is revoked
        assert email_service.sent_to("petr@example.com")[-1]["subject"].startswith("Your turn")
        assert engine.tokens.validate(token_from(first_petr_link)).reason == TokenInvalidReason.REVOKED

        petr = await flow.sign(
            envelope.id, email_service.last_token_for("petr@example.com"), "Petr Guardian", "petr@example.com"
        )
        assert petr.status == "COMPLETED"
        assert petr.signed_pdf_path == f"documents/{envelope.id}/signed.pdf"

        completed = engine.envelopes.get(envelope.id)
        assert completed.completed_at is not None
        assert engine.envelopes.verify_integrity(envelope.id).valid is True

        trail = [e.action for e in engine.audit.chronological(envelope.id)]
        assert trail.count(AuditAction.SIGNER_SIGNED) == 2
        assert trail.index(AuditAction.COMPLETED) > max(
            i for i, a in enumerate(trail) if a == AuditAction.SIGNER_SIGNED
        )
        assert all(
            m["subject"].startswith("Signed:")
            for m in (email_service.sent_to("anna@example.com")[-1], email_service.sent_to("petr@example.com")[-1])
        )

    @pytest.mark.asyncio
    async def test_both_signatures_on_one_page(self, engine, flow, email_service, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        content_pages = engine.envelopes.get(envelope.id).page_count

        await flow.sign(envelope.id, token_from(sent.links[0]), "Anna Model", "anna@example.com")
        await flow.sign(
            envelope.id, email_service.last_token_for("petr@example.com"), "Petr Guardian", "petr@example.com"
        )

        working = engine.storage.read_bytes(f"documents/{envelope.id}/working.pdf")
        assert count_pages(working) == content_pages + 1

    @pytest.mark.asyncio
    async def test_pdf_frozen_after_first_signature(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        await flow.sign(envelope.id, token_from(sent.links[0]), "Anna Model", "anna@example.com")

        with pytest.raises(IllegalStateTransition):
            await engine.envelopes.generate_pdf(envelope.id)

    @pytest.mark.asyncio
    async def test_signer_session_ends_after_signing(self, engine, flow, envelope_request):
        """A signer's session closes with their signature; a second submission is refused."""
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        anna_token = token_from(sent.links[0])
        grant = await flow.verify(anna_token, "anna@example.com")
        request = flow.sign_request(grant.session_id, "Anna Model", "anna@example.com")

        await engine.signing.submit_signature(envelope.id, request)

        with pytest.raises(SessionExpired):
            await engine.signing.submit_signature(envelope.id, request)


class TestParallel:

    @pytest.mark.asyncio
    async def test_any_order(self, engine, flow, email_service, envelope_request):
        envelope_request.workflow = SigningWorkflow.PARALLEL
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)

        assert all(link.email_delivered for link in sent.links)
        links = {link.email: token_from(link) for link in sent.links}

        petr = await flow.sign(envelope.id, links["petr@example.com"], "Petr Guardian", "petr@example.com")
        assert petr.status == "IN_PROGRESS"
        anna = await flow.sign(envelope.id, links["anna@example.com"], "Anna Model", "anna@example.com")
        assert anna.status == "COMPLETED"


class TestDeclineAndCancel:

    @pytest.mark.asyncio
    async def test_signer_decline_cancels_envelope(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        grant = await flow.verify(token_from(sent.links[0]), "anna@example.com")

        response = await engine.signing.decline(
            envelope.id, DeclineRequest(session_id=grant.session_id, reason="Not comfortable")
        )

        assert response.status == "CANCELLED"
        cancelled = engine.envelopes.get(envelope.id)
        assert cancelled.cancel_reason == "Declined by Anna Model"
        anna = signer_named(engine, envelope.id, "anna@example.com")
        assert anna.status == SignerStatus.DECLINED
        assert anna.decline_reason == "Not comfortable"
        petr_token = token_from(sent.links[1])
        assert engine.tokens.validate(petr_token).reason == TokenInvalidReason.REVOKED

    @pytest.mark.asyncio
    async def test_admin_cancel(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)

        cancelled = await engine.envelopes.cancel(envelope.id, "Shoot postponed")

        assert cancelled.status == EnvelopeStatus.CANCELLED
        assert all(
            engine.tokens.validate(token_from(link)).reason == TokenInvalidReason.REVOKED for link in sent.links
        )
        with pytest.raises(IllegalStateTransition):
            await engine.envelopes.cancel(envelope.id)

    @pytest.mark.asyncio
    async def test_resend_finished_signer_refused(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        await flow.sign(envelope.id, token_from(sent.links[0]), "Anna Model", "anna@example.com")

        anna = signer_named(engine, envelope.id, "anna@example.com")
        with pytest.raises(IllegalStateTransition):
            await engine.envelopes.resend_signer(envelope.id, anna.id)


async def sign_first(engine, flow, envelope_request):
    """Send the envelope and have Anna sign; returns (envelope, Petr's token)."""
    envelope = engine.envelopes.create(envelope_request)
    sent = await engine.envelopes.send(envelope.id)
    await flow.sign(envelope.id, token_from(sent.links[0]), "Anna Model", "anna@example.com")
    return envelope, flow.email_service.last_token_for("petr@example.com")


def fail_completion(store, kind, document_id, target, **kwargs):
    if target == EnvelopeStatus.COMPLETED:
        raise StoreUnavailable("connection reset")
    return transition(store, kind, document_id, target, **kwargs)


class TestCompletion:
    """Tests for sealing the last signature and recovering a stalled completion."""

    @pytest.mark.asyncio
    async def test_failed_seal_commits_nothing(self, engine, flow, envelope_request):
        envelope, petr_token = await sign_first(engine, flow, envelope_request)
        grant = await flow.verify(petr_token, "petr@example.com")
        request = flow.sign_request(grant.session_id, "Petr Guardian", "petr@example.com")

        with patch.object(engine.pipeline, "seal", side_effect=RenderFailure("bucket unavailable")):
            with pytest.raises(RenderFailure):
                await engine.signing.submit_signature(envelope.id, request)

        assert signer_named(engine, envelope.id, "petr@example.com").status == SignerStatus.VIEWED
        assert engine.envelopes.get(envelope.id).status == EnvelopeStatus.IN_PROGRESS

        # Same session, second try
        response = await engine.signing.submit_signature(envelope.id, request)
        assert response.status == "COMPLETED"
        trail = [e.action for e in engine.audit.chronological(envelope.id)]
        assert trail.count(AuditAction.SIGNER_SIGNED) == 2

    @pytest.mark.asyncio
    async def test_stalled_completion_finished_by_admin(self, engine, flow, envelope_request):
        envelope, petr_token = await sign_first(engine, flow, envelope_request)

        with patch("studiosign.services.envelopes.transition", side_effect=fail_completion):
            with pytest.raises(StoreUnavailable):
                await flow.sign(envelope.id, petr_token, "Petr Guardian", "petr@example.com")

        stalled = engine.envelopes.get(envelope.id)
        assert stalled.status == EnvelopeStatus.IN_PROGRESS
        assert all(s.status == SignerStatus.SIGNED for s in engine.envelopes.signers(envelope.id))

        completed = await engine.envelopes.complete_if_ready(envelope.id)

        assert completed.status == EnvelopeStatus.COMPLETED
        assert completed.pdf_path == f"documents/{envelope.id}/signed.pdf"
        assert engine.envelopes.verify_integrity(envelope.id).valid is True

        again = await engine.envelopes.complete_if_ready(envelope.id)
        assert again.pdf_hash == completed.pdf_hash
        trail = [e.action for e in engine.audit.chronological(envelope.id)]
        assert trail.count(AuditAction.COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_sweep_completes_stalled_envelope(self, engine, flow, envelope_request):
        envelope, petr_token = await sign_first(engine, flow, envelope_request)
        with patch("studiosign.services.envelopes.transition", side_effect=fail_completion):
            with pytest.raises(StoreUnavailable):
                await flow.sign(envelope.id, petr_token, "Petr Guardian", "petr@example.com")

        assert await engine.envelopes.complete_stranded() == 1
        assert engine.envelopes.get(envelope.id).status == EnvelopeStatus.COMPLETED
        assert await engine.envelopes.complete_stranded() == 0

    @pytest.mark.asyncio
    async def test_complete_before_everyone_signed(self, engine, flow, envelope_request):
        envelope, _ = await sign_first(engine, flow, envelope_request)

        with pytest.raises(IllegalStateTransition):
            await engine.envelopes.complete_if_ready(envelope.id)
        assert await engine.envelopes.complete_stranded() == 0

    @pytest.mark.asyncio
    async def test_lost_race_leaves_working_pdf_alone(self, engine, store, flow, envelope_request):
        """A signer row claimed elsewhere mid-submission: no stamp is written."""
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        grant = await flow.verify(token_from(sent.links[0]), "anna@example.com")
        anna = signer_named(engine, envelope.id, "anna@example.com")
        real_embed = engine.pipeline.embed

        async def embed_elsewhere_signed(*args, **kwargs):
            store.update_signer(anna.id, {"status": SignerStatus.SIGNED})
            return await real_embed(*args, **kwargs)

        with patch.object(engine.pipeline, "embed", side_effect=embed_elsewhere_signed):
            with pytest.raises(AlreadySigned):
                await engine.signing.submit_signature(
                    envelope.id, flow.sign_request(grant.session_id, "Anna Model", "anna@example.com")
                )

        assert not engine.storage.exists(f"documents/{envelope.id}/working.pdf")

    @pytest.mark.asyncio
    async def test_unstored_stamp_rolls_signature_back(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        grant = await flow.verify(token_from(sent.links[0]), "anna@example.com")
        request = flow.sign_request(grant.session_id, "Anna Model", "anna@example.com")

        with patch.object(engine.storage, "write_bytes", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await engine.signing.submit_signature(envelope.id, request)

        anna = signer_named(engine, envelope.id, "anna@example.com")
        assert anna.status == SignerStatus.VIEWED
        assert anna.signed_at is None and anna.signature_hash is None
        assert AuditAction.SIGNER_SIGNED not in [e.action for e in engine.audit.chronological(envelope.id)]

        response = await engine.signing.submit_signature(envelope.id, request)
        assert response.status == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_concurrent_submissions_sign_once(self, engine, flow, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        sent = await engine.envelopes.send(envelope.id)
        grant = await flow.verify(token_from(sent.links[0]), "anna@example.com")
        request = flow.sign_request(grant.session_id, "Anna Model", "anna@example.com")

        results = await asyncio.gather(
            engine.signing.submit_signature(envelope.id, request),
            engine.signing.submit_signature(envelope.id, request),
            return_exceptions=True,
        )

        signed = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(signed) == 1
        assert len(errors) == 1 and isinstance(errors[0], (SessionExpired, AlreadySigned))
        trail = [e.action for e in engine.audit.chronological(envelope.id)]
        assert trail.count(AuditAction.SIGNER_SIGNED) == 1


class TestSignatureHash:

    @pytest.mark.asyncio
    async def test_hash_recorded_and_audited(self, engine, flow, envelope_request, signature_data_url):
        envelope, _ = await sign_first(engine, flow, envelope_request)

        expected = hashlib.sha256(signature_data_url.encode("utf-8")).hexdigest()
        assert signer_named(engine, envelope.id, "anna@example.com").signature_hash == expected
        signed_entry = next(
            e for e in engine.audit.chronological(envelope.id) if e.action == AuditAction.SIGNER_SIGNED
        )
        assert signed_entry.metadata["signature_hash"] == expected

    @pytest.mark.asyncio
    async def test_altered_signature_image_reported(self, engine, store, flow, envelope_request):
        envelope, petr_token = await sign_first(engine, flow, envelope_request)
        await flow.sign(envelope.id, petr_token, "Petr Guardian", "petr@example.com")
        assert engine.envelopes.verify_integrity(envelope.id).valid is True

        anna = signer_named(engine, envelope.id, "anna@example.com")
        store.update_signer(anna.id, {"signature_data_url": "data:image/png;base64,AAAA"})

        report = engine.envelopes.verify_integrity(envelope.id)
        assert report.valid is False
        assert report.tampered_signatures == [anna.id]
        # The sealed PDF itself is untouched
        assert report.recomputed_hash == report.sealed_hash


class TestAdminQueries:
    """Tests for envelope listing, lookup, stats and draft updates."""

    @pytest.mark.asyncio
    async def test_list_and_filter(self, engine, envelope_request):
        draft = engine.envelopes.create(envelope_request)
        sent = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(sent.id)

        assert [e.id for e in engine.envelopes.list(EnvelopeStatus.PENDING)] == [sent.id]
        assert {e.id for e in engine.envelopes.list()} == {draft.id, sent.id}
        assert len(engine.envelopes.list(limit=1)) == 1

    def test_by_number(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)

        assert engine.envelopes.by_number(envelope.number).id == envelope.id
        with pytest.raises(NotFoundError):
            engine.envelopes.by_number("ENV-1999-0001")

    @pytest.mark.asyncio
    async def test_stats(self, engine, flow, envelope_request):
        engine.envelopes.create(envelope_request)
        await sign_first(engine, flow, envelope_request)

        stats = engine.envelopes.stats()
        assert stats.total == 2
        assert stats.by_status == {"DRAFT": 1, "IN_PROGRESS": 1}
        assert stats.signers == 4
        assert stats.signatures == 1

    @pytest.mark.asyncio
    async def test_update_draft(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.generate_pdf(envelope.id)

        updated = engine.envelopes.update(envelope.id, UpdateEnvelopeRequest(
            title="Model Release (amended)", workflow=SigningWorkflow.PARALLEL,
        ))

        assert updated.title == "Model Release (amended)"
        assert updated.workflow == SigningWorkflow.PARALLEL
        assert updated.pdf_path is None

    def test_update_ignores_cleared_required_fields(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        updated = engine.envelopes.update(envelope.id, UpdateEnvelopeRequest(title=None, description="Spring"))
        assert updated.title == "Model Release"
        assert updated.description == "Spring"

    def test_update_past_deadline(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        with pytest.raises(ValidationFailure):
            engine.envelopes.update(envelope.id, UpdateEnvelopeRequest(expires_at=utc_now() - timedelta(hours=1)))

    @pytest.mark.asyncio
    async def test_update_after_send_refused(self, engine, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(envelope.id)

        with pytest.raises(IllegalStateTransition):
            engine.envelopes.update(envelope.id, UpdateEnvelopeRequest(title="Too late"))
