"""
Public signing flow: what a recipient can do with a verified session.

Signature submission, decline and completion for one document are
serialised by a per-document lock; status writes are compare-and-swap, so a
losing concurrent submission sees AlreadySigned or IllegalStateTransition.
"""
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from studiosign.exceptions import (
    AlreadySigned,
    IllegalStateTransition,
    IntegrityMismatch,
    NotFoundError,
    RenderFailure,
    SequenceNotEligible,
    SessionExpired,
    ValidationFailure,
)
from studiosign.models import (
    AuditAction,
    ContractRecord,
    ContractStatus,
    DeclineRequest,
    DeclineResponse,
    DocumentKind,
    DocumentRecord,
    DocumentViewResponse,
    EnvelopeRecord,
    EnvelopeStatus,
    ExtendSessionRequest,
    ExtendSessionResponse,
    PublicVerificationResponse,
    SignDocumentRequest,
    SignDocumentResponse,
    SignerRecord,
    SignerStatus,
    SignerView,
    SigningSessionRecord,
)
from studiosign.pdf import (
    SignerInfo,
    SignerStamp,
    SigningError,
    decode_signature_data_url,
    generate_verification_id,
    signature_image_hash,
    verify_bytes,
)
from studiosign.services.artifacts import otp_verified_times
from studiosign.services.otp import Recipient
from studiosign.services.sequencer import blocking_signers, can_act, find_signer, ordered
from studiosign.services.state_machine import (
    is_terminal,
    load_document,
    refresh_expiry,
    transition,
    transition_signer,
)
from studiosign.storage import working_pdf_path
from studiosign.utils.datetime_utils import utc_now
from studiosign.utils.logging import fingerprint, set_context
from studiosign.utils.security import compute_bytes_hash
from studiosign.utils.validation import is_valid_email, same_email

if TYPE_CHECKING:
    from studiosign.services.engine import SigningEngine

logger = logging.getLogger(__name__)

ENVELOPE_SIGNABLE = (EnvelopeStatus.PENDING, EnvelopeStatus.IN_PROGRESS)
CONTRACT_DECLINABLE = (ContractStatus.SENT, ContractStatus.VIEWED)
SIGNATURE_FIELDS = (
    "signed_at",
    "ip_address",
    "user_agent",
    "signature_data_url",
    "signature_hash",
    "verification_id",
)


@dataclass
class LinkContext:
    """What the landing page for a magic link needs to know."""
    document: DocumentRecord
    recipient: Recipient


def validate_signature_payload(request: SignDocumentRequest, expected_email: str) -> List[str]:
    """Every problem with a submission, in one list."""
    errors = []

    data_url = (request.signature_data_url or "").strip()
    if not data_url:
        errors.append("Signature image is required")
    elif not data_url.startswith("data:image"):
        errors.append("Signature must be an image data URL")
    else:
        try:
            decode_signature_data_url(data_url)
        except SigningError as e:
            errors.append(str(e))

    if len((request.signer_name or "").strip()) < 2:
        errors.append("Full name is required (at least 2 characters)")

    if not is_valid_email(request.signer_email):
        errors.append("A valid email address is required")
    elif not same_email(request.signer_email, expected_email):
        errors.append("Email does not match the invited recipient")

    if not request.agreed_to_terms:
        errors.append("You must agree to the terms before signing")

    return errors


class SigningService:

    def __init__(self, engine: "SigningEngine"):
        self.engine = engine
        self.store = engine.store

    async def open_link(self, token: str) -> LinkContext:
        """
        Resolve a magic link without consuming it.

        Raises:
            InvalidToken, ExpiredToken, TokenAlreadyConsumed: Link is unusable
            IllegalStateTransition: The document is closed
        """
        validation = self.engine.tokens.require_valid(token)
        set_context(document_id=validation.document_id, token_fp=fingerprint(validation.token_hash))
        document, recipient = self.engine.otp.resolve(validation)
        return LinkContext(document=document, recipient=recipient)

    def find_document(self, document_id: str, session_id: Optional[str] = None) -> DocumentRecord:
        """Look a document up by id alone; the session, if any, says which kind it is."""
        session = self.store.get_session(session_id) if session_id else None
        if session is not None and session.document_id == document_id:
            return load_document(self.store, session.kind, document_id)
        for kind in (DocumentKind.CONTRACT, DocumentKind.ENVELOPE):
            document = self.store.get_document(kind, document_id)
            if document is not None:
                return document
        raise NotFoundError("Document", document_id)

    def view(self, document_id: str, session_id: str) -> DocumentViewResponse:
        document = refresh_expiry(self.store, self.engine.audit, self.find_document(document_id, session_id))
        session = self.engine.sessions.validate(session_id, document_id)
        set_context(document_id=document_id, signer_id=session.signer_id, session_fp=fingerprint(session_id))

        response = DocumentViewResponse(
            id=document.id,
            kind=document.kind,
            number=document.number,
            title=document.title,
            status=document.status.value,
            html=document.rendered_html,
            pdf_hash=document.pdf_hash,
            page_count=document.page_count,
            expires_at=document.expires_at,
            session_expires_at=session.expires_at,
        )
        if isinstance(document, ContractRecord):
            response.signer_name = document.recipient_name
            response.can_sign = document.status == ContractStatus.VIEWED
            return response

        signers = ordered(self.store.list_signers(document_id))
        signer = find_signer(signers, session.signer_id)
        response.signer_name = signer.name if signer else None
        response.signers = [
            SignerView(
                id=s.id,
                name=s.name,
                role=s.role,
                position=s.position,
                status=s.status,
                signed_at=s.signed_at,
            )
            for s in signers
        ]
        response.can_sign = signer is not None and signer.status == SignerStatus.VIEWED and can_act(
            document, signers, signer.id
        )
        return response

    async def submit_signature(
        self,
        document_id: str,
        request: SignDocumentRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignDocumentResponse:
        async with self.engine.locks.hold(document_id):
            document = self.find_document(document_id, request.session_id)
            document = refresh_expiry(self.store, self.engine.audit, document)
            if isinstance(document, ContractRecord):
                return await self._sign_contract(document, request, ip_address, user_agent)
            return await self._sign_envelope(document, request, ip_address, user_agent)

    async def _sign_contract(
        self,
        contract: ContractRecord,
        request: SignDocumentRequest,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> SignDocumentResponse:
        if contract.status == ContractStatus.SIGNED:
            raise AlreadySigned()
        if contract.status != ContractStatus.VIEWED:
            raise IllegalStateTransition(contract.status.value, ContractStatus.SIGNED.value)

        session = self.engine.sessions.validate(request.session_id, contract.id)
        set_context(document_id=contract.id, session_fp=fingerprint(session.id))

        errors = validate_signature_payload(request, contract.recipient_email)
        if errors:
            raise ValidationFailure(errors)
        source = self._read_source(contract, working=False)

        signed_at = utc_now()
        verification_id = generate_verification_id()
        signer_name = request.signer_name.strip()
        signed = await self.engine.pipeline.embed(
            source,
            request.signature_data_url,
            SignerStamp(
                verification_id=verification_id,
                verify_url=self.engine.settings.verify_url(contract.id),
                signer_name=signer_name,
                signer_email=request.signer_email.strip(),
                signed_at=signed_at,
                document_number=contract.number,
            ),
        )

        verified = otp_verified_times(self.engine.audit.chronological(contract.id))
        info = SignerInfo(
            name=signer_name,
            email=request.signer_email.strip(),
            role=None,
            viewed_at=contract.viewed_at,
            otp_verified_at=verified.get(None),
            signed_at=signed_at,
            ip_address=ip_address,
            user_agent=user_agent,
            verification_id=verification_id,
        )
        sealed = await self.engine.pipeline.seal(
            contract, signed, [info],
            pending_events=[AuditAction.SIGNED.value],
            completed_at=signed_at,
        )

        try:
            contract = transition(
                self.store, DocumentKind.CONTRACT, contract.id, ContractStatus.SIGNED,
                expected=[ContractStatus.VIEWED],
                fields={
                    "pdf_path": sealed.path,
                    "pdf_hash": sealed.hash,
                    "page_count": sealed.page_count,
                    "verification_id": verification_id,
                    "signer_name": signer_name,
                    "signer_email": request.signer_email.strip(),
                    "signer_ip": ip_address,
                    "signer_user_agent": user_agent,
                    "completed_at": signed_at,
                },
            )
        except IllegalStateTransition as e:
            if e.current == ContractStatus.SIGNED.value:
                raise AlreadySigned()
            raise

        self.engine.audit.append(contract.id, DocumentKind.CONTRACT, AuditAction.SIGNED, {
            "email": contract.signer_email,
            "name": signer_name,
            "ip": ip_address,
            "user_agent": user_agent,
            "verification_id": verification_id,
            "signature_hash": signature_image_hash(request.signature_data_url),
            "pdf_hash": sealed.hash,
        })
        self.engine.sessions.end_for_document(contract.id)
        self.engine.tokens.revoke_for(contract.id)

        await self.engine.email.send_completed_notification(
            to_email=contract.recipient_email,
            recipient_name=contract.recipient_name,
            document_title=contract.title,
            document_number=contract.number,
            completed_at=signed_at,
            verify_url=self.engine.settings.verify_url(contract.id),
            audit_callback=self.engine.audit.email_callback(DocumentKind.CONTRACT),
            document_id=contract.id,
        )
        logger.info(f"Contract {contract.number} signed")
        return SignDocumentResponse(
            signed_at=signed_at,
            signed_pdf_path=sealed.path,
            status=contract.status.value,
        )

    async def _sign_envelope(
        self,
        envelope: EnvelopeRecord,
        request: SignDocumentRequest,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> SignDocumentResponse:
        if envelope.status not in ENVELOPE_SIGNABLE:
            raise IllegalStateTransition(envelope.status.value, SignerStatus.SIGNED.value)

        session = self.engine.sessions.validate(request.session_id, envelope.id)
        before = ordered(self.store.list_signers(envelope.id))
        signer = self._session_signer(session, before)
        set_context(document_id=envelope.id, signer_id=signer.id, session_fp=fingerprint(session.id))

        if signer.status == SignerStatus.SIGNED:
            raise AlreadySigned()
        blockers = blocking_signers(envelope, before, signer.id)
        if blockers:
            raise SequenceNotEligible([s.name for s in blockers])

        errors = validate_signature_payload(request, signer.email)
        if errors:
            raise ValidationFailure(errors)
        source = self._read_source(envelope, working=True)

        signed_at = utc_now()
        verification_id = generate_verification_id()
        signed = await self.engine.pipeline.embed(
            source,
            request.signature_data_url,
            SignerStamp(
                verification_id=verification_id,
                verify_url=self.engine.settings.verify_url(envelope.id),
                signer_name=request.signer_name.strip(),
                signer_email=signer.email,
                signed_at=signed_at,
                document_number=envelope.number,
                signer_index=sum(1 for s in before if s.status == SignerStatus.SIGNED),
                role=signer.role,
            ),
        )
        signature_hash = signature_image_hash(request.signature_data_url)
        fields = {
            "signed_at": signed_at,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "signature_data_url": request.signature_data_url,
            "signature_hash": signature_hash,
            "verification_id": verification_id,
        }

        # The last signature seals the envelope before anything commits, so a
        # failed seal leaves the signer free to retry
        sealed = None
        if all(s.status == SignerStatus.SIGNED for s in before if s.id != signer.id):
            projected = [
                s.model_copy(update={**fields, "status": SignerStatus.SIGNED}) if s.id == signer.id else s
                for s in before
            ]
            sealed = await self.engine.envelopes.seal(
                envelope, projected, signed, signed_at,
                pending_events=[AuditAction.SIGNER_SIGNED.value, AuditAction.COMPLETED.value],
            )

        try:
            signed_signer = transition_signer(self.store, signer, SignerStatus.SIGNED, fields)
        except IllegalStateTransition as e:
            if e.current == SignerStatus.SIGNED.value:
                raise AlreadySigned()
            raise
        self._store_working(envelope, signer, signed)
        signer = signed_signer

        self.engine.audit.append(envelope.id, DocumentKind.ENVELOPE, AuditAction.SIGNER_SIGNED, {
            "signer_id": signer.id,
            "email": signer.email,
            "name": request.signer_name.strip(),
            "ip": ip_address,
            "user_agent": user_agent,
            "verification_id": verification_id,
            "signature_hash": signature_hash,
        })
        self.engine.sessions.end_for_document(envelope.id, signer_id=signer.id)

        envelope = await self.engine.envelopes.on_signer_completed(
            envelope.id, before, sealed=sealed, completed_at=signed_at
        )
        return SignDocumentResponse(
            signed_at=signed_at,
            signed_pdf_path=envelope.pdf_path if envelope.status == EnvelopeStatus.COMPLETED else None,
            status=envelope.status.value,
        )

    async def decline(
        self,
        document_id: str,
        request: DeclineRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeclineResponse:
        """
        A contract recipient declining closes the contract. An envelope signer
        declining cancels the whole envelope.
        """
        async with self.engine.locks.hold(document_id):
            document = self.find_document(document_id, request.session_id)
            document = refresh_expiry(self.store, self.engine.audit, document)
            kind = document.kind

            if isinstance(document, ContractRecord):
                if document.status not in CONTRACT_DECLINABLE:
                    raise IllegalStateTransition(document.status.value, ContractStatus.DECLINED.value)
                session = self.engine.sessions.validate(request.session_id, document_id)
                document = transition(
                    self.store, kind, document_id, ContractStatus.DECLINED,
                    expected=CONTRACT_DECLINABLE,
                    fields={"decline_reason": request.reason},
                )
                self.engine.audit.append(document_id, kind, AuditAction.DECLINED, {
                    "email": session.email,
                    "reason": request.reason,
                    "ip": ip_address,
                    "user_agent": user_agent,
                })
            else:
                if document.status not in ENVELOPE_SIGNABLE:
                    raise IllegalStateTransition(document.status.value, SignerStatus.DECLINED.value)
                session = self.engine.sessions.validate(request.session_id, document_id)
                signer = self._session_signer(session, self.store.list_signers(document_id))
                if signer.status == SignerStatus.SIGNED:
                    raise AlreadySigned()
                transition_signer(self.store, signer, SignerStatus.DECLINED, {
                    "declined_at": utc_now(),
                    "decline_reason": request.reason,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                })
                self.engine.audit.append(document_id, kind, AuditAction.SIGNER_DECLINED, {
                    "signer_id": signer.id,
                    "email": signer.email,
                    "reason": request.reason,
                    "ip": ip_address,
                })
                document = transition(
                    self.store, kind, document_id, EnvelopeStatus.CANCELLED,
                    expected=ENVELOPE_SIGNABLE,
                    fields={"cancel_reason": f"Declined by {signer.name}"},
                )
                self.engine.audit.append(document_id, kind, AuditAction.CANCELLED, {
                    "reason": "declined",
                    "signer_id": signer.id,
                })

            self.engine.sessions.end_for_document(document_id)
            self.engine.tokens.revoke_for(document_id)
            return DeclineResponse(status=document.status.value)

    def extend_session(self, request: ExtendSessionRequest) -> ExtendSessionResponse:
        session = self.engine.sessions.extend(request.session_id, request.document_id)
        return ExtendSessionResponse(expires_at=session.expires_at)

    def public_verify(self, document_id: str) -> PublicVerificationResponse:
        """What the QR code on a signed page resolves to."""
        document = refresh_expiry(self.store, self.engine.audit, self.find_document(document_id))
        sealed = document.status in (ContractStatus.SIGNED, EnvelopeStatus.COMPLETED)
        report = self.engine.integrity.verify(document) if sealed else None
        return PublicVerificationResponse(
            document_id=document.id,
            number=document.number,
            status=document.status.value,
            sealed_hash=document.pdf_hash if sealed else None,
            completed_at=document.completed_at,
            valid=bool(report and report.valid),
        )

    def sweep_expired(self) -> int:
        """Apply derived expiry to every open document. Returns how many expired."""
        expired = 0
        for kind, statuses in (
            (DocumentKind.CONTRACT, [ContractStatus.SENT, ContractStatus.VIEWED]),
            (DocumentKind.ENVELOPE, list(ENVELOPE_SIGNABLE)),
        ):
            for document in self.store.list_documents(kind, statuses):
                refreshed = refresh_expiry(self.store, self.engine.audit, document)
                if is_terminal(refreshed.status) and refreshed.status != document.status:
                    expired += 1
        if expired:
            logger.info(f"Expiry sweep closed {expired} document(s)")
        return expired

    def _session_signer(self, session: SigningSessionRecord, signers: List[SignerRecord]) -> SignerRecord:
        signer = find_signer(signers, session.signer_id) if session.signer_id else None
        if signer is None:
            raise SessionExpired("Signing session is not valid for this document.")
        return signer

    def _store_working(self, envelope: EnvelopeRecord, signer: SignerRecord, signed: bytes) -> None:
        """
        Keep the stamped PDF for the next signer. If it cannot be stored the
        signer's row is put back as it was, so no signature stands without its stamp.
        """
        try:
            self.engine.storage.write_bytes(working_pdf_path(envelope.id), signed)
        except Exception:
            logger.error(f"Could not store the stamped PDF for {envelope.number}; rolling the signature back")
            self.store.compare_and_set_signer_status(
                signer.id,
                [SignerStatus.SIGNED],
                signer.status,
                {key: getattr(signer, key) for key in SIGNATURE_FIELDS},
            )
            raise

    def _read_source(self, document: DocumentRecord, working: bool) -> bytes:
        """The PDF to stamp the next signature onto."""
        storage = self.engine.storage
        if working and storage.exists(working_pdf_path(document.id)):
            return storage.read_bytes(working_pdf_path(document.id))
        if not document.pdf_path:
            raise RenderFailure("This document has no rendered PDF to sign")
        try:
            source = storage.read_bytes(document.pdf_path)
        except FileNotFoundError:
            raise RenderFailure("This document's PDF is missing from storage")
        # Signers only ever sign the bytes that were rendered and hashed
        if not verify_bytes(source, document.pdf_hash):
            raise IntegrityMismatch(document.pdf_hash, compute_bytes_hash(source))
        return source
