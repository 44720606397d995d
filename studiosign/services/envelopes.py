"""
Envelope administration: multi-signer documents with optional uploaded PDFs.

Signers, positions and uploads can only change while the envelope is a
DRAFT. Sending mints a magic link for every signer; in a SEQUENTIAL
envelope only the signers who may act right away are emailed, the rest are
invited as the signers ahead of them finish.
"""
import base64
import binascii
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from starlette.concurrency import run_in_threadpool

from studiosign.exceptions import IllegalStateTransition, NotFoundError, RenderFailure, ValidationFailure
from studiosign.models import (
    AddEnvelopeDocumentRequest,
    AuditAction,
    AuditEntry,
    CreateEnvelopeRequest,
    DocumentKind,
    DocumentStats,
    EnvelopeDocumentRecord,
    EnvelopeRecord,
    EnvelopeStatus,
    IntegrityResponse,
    IssuedLink,
    SendResponse,
    SignerInput,
    SignerRecord,
    SignerStatus,
    SigningWorkflow,
    UpdateEnvelopeRequest,
    UpdateSignerRequest,
)
from studiosign.pdf import PdfGenerationError, count_pages
from studiosign.services.artifacts import StoredPdf, otp_verified_times, signer_info_from_record
from studiosign.services.contracts import RENDER_FIELDS, format_number
from studiosign.services.sequencer import (
    ACTIVE_SIGNER_STATUSES,
    all_signed,
    can_act,
    check_position_free,
    eligible_signers,
    find_signer,
    next_eligible,
    next_position,
    ordered,
)
from studiosign.services.state_machine import is_terminal, load_document, refresh_expiry, transition
from studiosign.storage import document_pdf_path, upload_pdf_path, working_pdf_path
from studiosign.utils.datetime_utils import is_past, utc_now
from studiosign.utils.logging import mask_email, set_context
from studiosign.utils.security import compute_bytes_hash
from studiosign.utils.validation import is_valid_email, same_email

if TYPE_CHECKING:
    from studiosign.services.engine import SigningEngine

logger = logging.getLogger(__name__)

KIND = DocumentKind.ENVELOPE
NUMBER_PREFIX = "ENV"
# Columns an edit may not clear
REQUIRED_FIELDS = {"title", "workflow", "template", "variables"}


class EnvelopeService:

    def __init__(self, engine: "SigningEngine"):
        self.engine = engine
        self.store = engine.store

    # Reads

    def get(self, envelope_id: str) -> EnvelopeRecord:
        envelope = load_document(self.store, KIND, envelope_id)
        return refresh_expiry(self.store, self.engine.audit, envelope)

    def signers(self, envelope_id: str) -> List[SignerRecord]:
        return ordered(self.store.list_signers(envelope_id))

    def documents(self, envelope_id: str) -> List[EnvelopeDocumentRecord]:
        return self.store.list_envelope_documents(envelope_id)

    def detail(self, envelope_id: str) -> Dict[str, Any]:
        envelope = self.get(envelope_id)
        signers = self.signers(envelope_id)
        return {
            "envelope": envelope.model_dump(mode="json"),
            "signers": [
                {**s.model_dump(mode="json", exclude={"signature_data_url"}),
                 "can_act": can_act(envelope, signers, s.id)}
                for s in signers
            ],
            "documents": [d.model_dump(mode="json") for d in self.documents(envelope_id)],
        }

    def list(
        self,
        status: Optional[EnvelopeStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[EnvelopeRecord]:
        """Envelopes newest first. Expiry is applied by get(), not while listing."""
        statuses = [status] if status is not None else None
        return self.store.list_documents(KIND, statuses, limit=limit, offset=offset)

    def by_number(self, number: str) -> EnvelopeRecord:
        envelope = self.store.get_document_by_number(KIND, number)
        if envelope is None:
            raise NotFoundError("Envelope", number)
        return refresh_expiry(self.store, self.engine.audit, envelope)

    def stats(self) -> DocumentStats:
        by_status = self.store.status_counts(KIND)
        signers = self.store.signer_status_counts()
        return DocumentStats(
            total=sum(by_status.values()),
            by_status=by_status,
            signers=sum(signers.values()),
            signatures=signers.get(SignerStatus.SIGNED.value, 0),
        )

    def audit_trail(self, envelope_id: str, limit: int = 100, offset: int = 0) -> List[AuditEntry]:
        load_document(self.store, KIND, envelope_id)
        return self.engine.audit.list(envelope_id, limit=limit, offset=offset)

    def verify_integrity(self, envelope_id: str) -> IntegrityResponse:
        envelope = load_document(self.store, KIND, envelope_id)
        return self.engine.check_integrity(envelope)

    # Draft editing

    def create(self, request: CreateEnvelopeRequest) -> EnvelopeRecord:
        if request.expires_at is not None and is_past(request.expires_at):
            raise ValidationFailure(["Deadline must be in the future"])

        now = utc_now()
        number = format_number(NUMBER_PREFIX, now.year, self.store.next_number(KIND, now.year))
        envelope = self.store.insert_document(EnvelopeRecord(
            id=str(uuid.uuid4()),
            number=number,
            created_at=now,
            updated_at=now,
            **request.model_dump(exclude_none=True, exclude={"signers"}),
        ))
        set_context(document_id=envelope.id)
        self.engine.audit.append(envelope.id, KIND, AuditAction.CREATED, {
            "number": number,
            "workflow": envelope.workflow.value,
        })
        for signer in request.signers:
            self.add_signer(envelope.id, signer)
        logger.info(f"Created envelope {number} with {len(request.signers)} signer(s)")
        return envelope

    def update(self, envelope_id: str, request: UpdateEnvelopeRequest) -> EnvelopeRecord:
        envelope = self._require_draft(envelope_id, "Only draft envelopes can be edited")

        changes: Dict[str, Any] = {
            key: value for key, value in request.model_dump(exclude_unset=True).items()
            if value is not None or key not in REQUIRED_FIELDS
        }
        if changes.get("expires_at") is not None and is_past(changes["expires_at"]):
            raise ValidationFailure(["Deadline must be in the future"])
        if not changes:
            return envelope

        if RENDER_FIELDS & changes.keys():
            changes.update({"rendered_html": None, "pdf_path": None, "pdf_hash": None, "page_count": None})
        changes["updated_at"] = utc_now()

        updated = self.store.update_document(KIND, envelope_id, changes)
        self.engine.audit.append(envelope_id, KIND, AuditAction.UPDATED, {
            "fields": sorted(request.model_fields_set & changes.keys()),
        })
        return updated

    def delete(self, envelope_id: str) -> None:
        envelope = self._require_draft(envelope_id, "Only draft envelopes can be deleted")
        for upload in self.store.list_envelope_documents(envelope_id):
            self.engine.storage.delete(upload.storage_path)
        self.engine.storage.delete(document_pdf_path(envelope_id))
        self.store.delete_document(KIND, envelope_id)
        self.engine.audit.append(envelope_id, KIND, AuditAction.DELETED, {"number": envelope.number})

    def add_signer(self, envelope_id: str, request: SignerInput) -> SignerRecord:
        self._require_draft(envelope_id, "Signers can only be changed before sending")
        existing = self.store.list_signers(envelope_id)

        errors = self._signer_errors(existing, request.email)
        if errors:
            raise ValidationFailure(errors)

        position = request.position if request.position is not None else next_position(existing)
        check_position_free(existing, position)

        signer = self.store.insert_signer(SignerRecord(
            id=str(uuid.uuid4()),
            envelope_id=envelope_id,
            name=request.name.strip(),
            email=request.email.strip(),
            role=request.role,
            position=position,
            created_at=utc_now(),
        ))
        self.engine.audit.append(envelope_id, KIND, AuditAction.SIGNER_ADDED, {
            "signer_id": signer.id,
            "email": signer.email,
            "position": position,
        })
        return signer

    def update_signer(self, envelope_id: str, signer_id: str, request: UpdateSignerRequest) -> SignerRecord:
        self._require_draft(envelope_id, "Signers can only be changed before sending")
        existing = self.store.list_signers(envelope_id)
        signer = find_signer(existing, signer_id)
        if signer is None:
            raise NotFoundError("Signer", signer_id)

        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if "email" in changes:
            others = [s for s in existing if s.id != signer_id]
            errors = self._signer_errors(others, changes["email"])
            if errors:
                raise ValidationFailure(errors)
        if "position" in changes:
            check_position_free(existing, changes["position"], exclude_signer_id=signer_id)
        if not changes:
            return signer

        updated = self.store.update_signer(signer_id, changes)
        self.engine.audit.append(envelope_id, KIND, AuditAction.SIGNER_UPDATED, {
            "signer_id": signer_id,
            "fields": sorted(changes.keys()),
        })
        return updated

    def remove_signer(self, envelope_id: str, signer_id: str) -> None:
        self._require_draft(envelope_id, "Signers can only be changed before sending")
        signer = find_signer(self.store.list_signers(envelope_id), signer_id)
        if signer is None:
            raise NotFoundError("Signer", signer_id)
        self.store.delete_signer(signer_id)
        self.engine.audit.append(envelope_id, KIND, AuditAction.SIGNER_REMOVED, {
            "signer_id": signer_id,
            "email": signer.email,
        })

    async def add_document(self, envelope_id: str, request: AddEnvelopeDocumentRequest) -> EnvelopeDocumentRecord:
        """Attach an uploaded PDF. Uploads are merged in order when the envelope is rendered."""
        self._require_draft(envelope_id, "Documents can only be changed before sending")
        try:
            data = base64.b64decode(request.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationFailure(["File content is not valid base64"])
        try:
            pages = await run_in_threadpool(count_pages, data)
        except PdfGenerationError as e:
            raise ValidationFailure([f"File is not a readable PDF: {e}"])

        upload_id = str(uuid.uuid4())
        path = upload_pdf_path(envelope_id, upload_id)
        self.engine.storage.write_bytes(path, data)

        existing = self.store.list_envelope_documents(envelope_id)
        document = self.store.insert_envelope_document(EnvelopeDocumentRecord(
            id=upload_id,
            envelope_id=envelope_id,
            name=request.name,
            storage_path=path,
            file_hash=compute_bytes_hash(data),
            page_count=pages,
            order=max((d.order for d in existing), default=0) + 1,
            created_at=utc_now(),
        ))
        self._drop_rendered(envelope_id)
        self.engine.audit.append(envelope_id, KIND, AuditAction.DOCUMENT_ADDED, {
            "upload_id": upload_id,
            "name": request.name,
            "file_hash": document.file_hash,
            "page_count": pages,
        })
        return document

    def remove_document(self, envelope_id: str, upload_id: str) -> None:
        self._require_draft(envelope_id, "Documents can only be changed before sending")
        removed = self.store.delete_envelope_document(envelope_id, upload_id)
        if removed is None:
            raise NotFoundError("Envelope document", upload_id)
        self.engine.storage.delete(removed.storage_path)
        self._drop_rendered(envelope_id)
        self.engine.audit.append(envelope_id, KIND, AuditAction.DOCUMENT_REMOVED, {
            "upload_id": upload_id,
            "name": removed.name,
        })

    async def generate_pdf(self, envelope_id: str) -> EnvelopeRecord:
        """Render (or re-render) document.pdf. Only allowed before anyone has signed."""
        async with self.engine.locks.hold(envelope_id):
            envelope = self.get(envelope_id)
            if is_terminal(envelope.status):
                raise IllegalStateTransition(
                    envelope.status.value, message="The PDF can no longer be regenerated"
                )
            if any(s.status == SignerStatus.SIGNED for s in self.store.list_signers(envelope_id)):
                raise IllegalStateTransition(
                    envelope.status.value, message="The PDF cannot change once someone has signed"
                )
            return await self.engine.pipeline.generate(envelope)

    # Lifecycle

    async def send(self, envelope_id: str) -> SendResponse:
        async with self.engine.locks.hold(envelope_id):
            envelope = load_document(self.store, KIND, envelope_id)
            set_context(document_id=envelope_id)
            if envelope.status != EnvelopeStatus.DRAFT:
                raise IllegalStateTransition(envelope.status.value, EnvelopeStatus.PENDING.value)

            signers = self.signers(envelope_id)
            errors = []
            if envelope.expires_at is not None and is_past(envelope.expires_at):
                errors.append("Deadline must be in the future")
            if not signers:
                errors.append("Envelope has no signers")
            errors.extend(f"Signer {s.name} has an invalid email" for s in signers if not is_valid_email(s.email))
            if errors:
                raise ValidationFailure(errors)

            if not envelope.pdf_path:
                envelope = await self.engine.pipeline.generate(envelope)

            envelope = transition(
                self.store, KIND, envelope_id, EnvelopeStatus.PENDING,
                expected=[EnvelopeStatus.DRAFT],
                fields={"sent_at": utc_now()},
            )

            eligible = {s.id for s in eligible_signers(envelope, signers)}
            links = []
            for signer in signers:
                links.append(await self._issue_link(envelope, signer, notify=signer.id in eligible))

            self.engine.audit.append(envelope_id, KIND, AuditAction.SENT, {
                "signers": len(signers),
                "notified": len(eligible),
                "workflow": envelope.workflow.value,
            })
            return SendResponse(id=envelope_id, status=envelope.status.value, links=links)

    async def resend_signer(self, envelope_id: str, signer_id: str) -> SendResponse:
        """Reissue one signer's link (revoking the old one) and email a reminder."""
        async with self.engine.locks.hold(envelope_id):
            envelope = self.get(envelope_id)
            if envelope.status not in (EnvelopeStatus.PENDING, EnvelopeStatus.IN_PROGRESS):
                raise IllegalStateTransition(
                    envelope.status.value, message="Only sent envelopes can be resent"
                )
            signer = find_signer(self.store.list_signers(envelope_id), signer_id)
            if signer is None:
                raise NotFoundError("Signer", signer_id)
            if signer.status not in ACTIVE_SIGNER_STATUSES:
                raise IllegalStateTransition(
                    signer.status.value, message="This signer has already finished"
                )

            link = await self._issue_link(envelope, signer, notify=True, reminder=True)
            self.engine.audit.append(envelope_id, KIND, AuditAction.RESENT, {
                "signer_id": signer_id,
                "email": signer.email,
                "email_delivered": link.email_delivered,
            })
            return SendResponse(id=envelope_id, status=envelope.status.value, links=[link])

    async def cancel(self, envelope_id: str, reason: Optional[str] = None) -> EnvelopeRecord:
        async with self.engine.locks.hold(envelope_id):
            self.get(envelope_id)
            envelope = transition(
                self.store, KIND, envelope_id, EnvelopeStatus.CANCELLED,
                expected=[EnvelopeStatus.DRAFT, EnvelopeStatus.PENDING, EnvelopeStatus.IN_PROGRESS],
                fields={"cancel_reason": reason},
            )
            self._close(envelope_id)
            self.engine.audit.append(envelope_id, KIND, AuditAction.CANCELLED, {"reason": reason})
            return envelope

    async def on_signer_completed(
        self,
        envelope_id: str,
        before: Sequence[SignerRecord],
        sealed: Optional[StoredPdf] = None,
        completed_at: Optional[datetime] = None,
    ) -> EnvelopeRecord:
        """
        Recompute the envelope after a signature. Caller holds the envelope lock.

        The first signature moves PENDING -> IN_PROGRESS. When everyone has
        signed the envelope is COMPLETED with the sealed artifact (sealed here
        from working.pdf if the caller did not bring one). Otherwise, signers
        who just became eligible in a SEQUENTIAL envelope get a fresh link by
        email.
        """
        envelope = load_document(self.store, KIND, envelope_id)
        after = self.signers(envelope_id)

        if envelope.status == EnvelopeStatus.PENDING:
            envelope = transition(
                self.store, KIND, envelope_id, EnvelopeStatus.IN_PROGRESS,
                expected=[EnvelopeStatus.PENDING],
            )

        if all_signed(after):
            return await self._complete(envelope, after, sealed, completed_at)

        if envelope.workflow == SigningWorkflow.SEQUENTIAL:
            for signer in next_eligible(envelope, before, after):
                await self._issue_link(envelope, signer, notify=True, your_turn=True)
        return envelope

    async def complete_if_ready(self, envelope_id: str) -> EnvelopeRecord:
        """
        Finish an envelope whose signers have all signed but which never reached
        COMPLETED. Completed envelopes are returned unchanged.

        Raises:
            IllegalStateTransition: The envelope is closed or someone has not signed yet
        """
        async with self.engine.locks.hold(envelope_id):
            envelope = load_document(self.store, KIND, envelope_id)
            if envelope.status == EnvelopeStatus.COMPLETED:
                return envelope
            signers = self.signers(envelope_id)
            if envelope.status not in (EnvelopeStatus.PENDING, EnvelopeStatus.IN_PROGRESS) or not all_signed(signers):
                raise IllegalStateTransition(
                    envelope.status.value,
                    EnvelopeStatus.COMPLETED.value,
                    message="Envelope is not ready to complete",
                )
            logger.warning(f"Completing stranded envelope {envelope.number}")
            return await self.on_signer_completed(envelope_id, signers)

    async def complete_stranded(self) -> int:
        """Complete every open envelope that is only waiting on its seal. Returns how many."""
        completed = 0
        for envelope in self.store.list_documents(KIND, [EnvelopeStatus.PENDING, EnvelopeStatus.IN_PROGRESS]):
            if not all_signed(self.signers(envelope.id)):
                continue
            try:
                result = await self.complete_if_ready(envelope.id)
            except IllegalStateTransition:
                # Closed by someone else since it was listed
                continue
            if result.status == EnvelopeStatus.COMPLETED:
                completed += 1
        return completed

    async def seal(
        self,
        envelope: EnvelopeRecord,
        signers: Sequence[SignerRecord],
        signed_bytes: bytes,
        completed_at: datetime,
        pending_events: Sequence[str] = (AuditAction.COMPLETED.value,),
    ) -> StoredPdf:
        """Store signed.pdf: the stamped content plus the evidence certificate for these signers."""
        verified = otp_verified_times(self.engine.audit.chronological(envelope.id))
        infos = [signer_info_from_record(s, verified.get(s.id)) for s in signers]
        return await self.engine.pipeline.seal(
            envelope, signed_bytes, infos,
            pending_events=list(pending_events),
            completed_at=completed_at,
        )

    async def _complete(
        self,
        envelope: EnvelopeRecord,
        signers: List[SignerRecord],
        sealed: Optional[StoredPdf] = None,
        completed_at: Optional[datetime] = None,
    ) -> EnvelopeRecord:
        completed_at = completed_at or utc_now()
        if sealed is None:
            try:
                working = self.engine.storage.read_bytes(working_pdf_path(envelope.id))
            except FileNotFoundError:
                raise RenderFailure("The signed working PDF is missing from storage")
            sealed = await self.seal(envelope, signers, working, completed_at)

        envelope = transition(
            self.store, KIND, envelope.id, EnvelopeStatus.COMPLETED,
            expected=[EnvelopeStatus.IN_PROGRESS],
            fields={
                "pdf_path": sealed.path,
                "pdf_hash": sealed.hash,
                "page_count": sealed.page_count,
                "completed_at": completed_at,
            },
        )
        self.engine.audit.append(envelope.id, KIND, AuditAction.COMPLETED, {
            "pdf_hash": sealed.hash,
            "signers": len(signers),
        })
        self._close(envelope.id)

        verify_url = self.engine.settings.verify_url(envelope.id)
        for signer in signers:
            await self.engine.email.send_completed_notification(
                to_email=signer.email,
                recipient_name=signer.name,
                document_title=envelope.title,
                document_number=envelope.number,
                completed_at=completed_at,
                verify_url=verify_url,
                audit_callback=self.engine.audit.email_callback(KIND),
                document_id=envelope.id,
            )
        logger.info(f"Envelope {envelope.number} completed")
        return envelope

    # Helpers

    def _require_draft(self, envelope_id: str, message: str) -> EnvelopeRecord:
        envelope = load_document(self.store, KIND, envelope_id)
        if envelope.status != EnvelopeStatus.DRAFT:
            raise IllegalStateTransition(envelope.status.value, message=message)
        return envelope

    def _signer_errors(self, others: Sequence[SignerRecord], email: str) -> List[str]:
        if not is_valid_email(email):
            return [f"{email} is not a valid email address"]
        if any(same_email(s.email, email) for s in others):
            return [f"{email} is already a signer on this envelope"]
        return []

    def _drop_rendered(self, envelope_id: str) -> None:
        self.store.update_document(KIND, envelope_id, {
            "rendered_html": None,
            "pdf_path": None,
            "pdf_hash": None,
            "page_count": None,
            "updated_at": utc_now(),
        })

    def _close(self, envelope_id: str) -> None:
        self.engine.tokens.revoke_for(envelope_id)
        self.engine.sessions.end_for_document(envelope_id)

    async def _issue_link(
        self,
        envelope: EnvelopeRecord,
        signer: SignerRecord,
        notify: bool,
        reminder: bool = False,
        your_turn: bool = False,
    ) -> IssuedLink:
        issued = self.engine.tokens.issue(envelope.id, KIND, signer.id)
        url = self.engine.settings.magic_link_url(issued.value)
        delivered = None

        if notify:
            callback = self.engine.audit.email_callback(KIND)
            if your_turn:
                result = await self.engine.email.send_your_turn(
                    to_email=signer.email,
                    recipient_name=signer.name,
                    document_title=envelope.title,
                    sign_url=url,
                    audit_callback=callback,
                    document_id=envelope.id,
                )
            else:
                result = await self.engine.email.send_signing_invitation(
                    to_email=signer.email,
                    recipient_name=signer.name,
                    document_title=envelope.title,
                    sign_url=url,
                    expires_at=issued.expires_at,
                    reminder=reminder,
                    audit_callback=callback,
                    document_id=envelope.id,
                )
            delivered = result.is_delivered
            if not delivered:
                logger.warning(
                    f"Link for {mask_email(signer.email)} on {envelope.number} "
                    f"not delivered ({result.delivery_status.value})"
                )

        return IssuedLink(
            signer_id=signer.id,
            email=signer.email,
            url=url,
            expires_at=issued.expires_at,
            email_delivered=delivered,
        )
