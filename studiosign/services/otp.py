"""
Email one-time codes.

A request mints a challenge bound to the magic-link token, supersedes any
earlier active challenge and emails the code. Only an HMAC of the code is
stored. A correct code consumes the challenge and the token, then grants a
signing session.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from studiosign.config import Settings, get_settings
from studiosign.email import EmailService
from studiosign.exceptions import (
    ChallengeAttemptsExhausted,
    ChallengeExpired,
    ChallengeMismatch,
    ChallengeNotFound,
    DeliveryFailure,
    ExpiredToken,
    IllegalStateTransition,
    InvalidToken,
    TokenAlreadyConsumed,
    ValidationFailure,
)
from studiosign.models import (
    AuditAction,
    ChallengeState,
    ContractStatus,
    DocumentKind,
    DocumentRecord,
    OTPChallengeRecord,
    SignerStatus,
)
from studiosign.services.audit import AuditLog
from studiosign.services.sessions import SessionService
from studiosign.services.state_machine import (
    EXPIRED_STATUS,
    is_terminal,
    load_document,
    refresh_expiry,
    transition,
    transition_signer,
)
from studiosign.services.tokens import TokenService, TokenValidation
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import is_past, utc_now
from studiosign.utils.logging import fingerprint, mask_email, set_context
from studiosign.utils.rate_limiter import RateLimiter
from studiosign.utils.security import generate_numeric_code, hash_otp_code, verify_otp_code
from studiosign.utils.validation import same_email

logger = logging.getLogger(__name__)


@dataclass
class ChallengeIssued:
    challenge_id: str
    expires_at: datetime


@dataclass
class SessionGrant:
    session_id: str
    expires_at: datetime
    document_id: str
    kind: DocumentKind
    signer_id: Optional[str] = None


@dataclass
class Recipient:
    name: str
    email: str
    signer_id: Optional[str] = None


class OTPService:

    def __init__(
        self,
        store: SigningStore,
        tokens: TokenService,
        sessions: SessionService,
        audit: AuditLog,
        email_service: EmailService,
        rate_limiter: RateLimiter,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.email_service = email_service
        self.rate_limiter = rate_limiter
        self.settings = settings or get_settings()

    def resolve(self, validation: TokenValidation) -> Tuple[DocumentRecord, Recipient]:
        """
        Document and recipient bound to a valid token, with derived expiry applied.

        Raises:
            ExpiredToken: The document expired
            IllegalStateTransition: The document is otherwise closed
            InvalidToken: The bound signer no longer exists
        """
        document = load_document(self.store, validation.kind, validation.document_id)
        document = refresh_expiry(self.store, self.audit, document)
        if document.status == EXPIRED_STATUS[document.kind]:
            raise ExpiredToken()
        if is_terminal(document.status):
            raise IllegalStateTransition(document.status.value)

        if validation.kind == DocumentKind.CONTRACT:
            return document, Recipient(name=document.recipient_name, email=document.recipient_email or "")

        signer = self.store.get_signer(validation.signer_id) if validation.signer_id else None
        if signer is None or signer.envelope_id != document.id:
            raise InvalidToken("SIGNER_NOT_FOUND")
        return document, Recipient(name=signer.name, email=signer.email, signer_id=signer.id)

    async def request_challenge(
        self,
        token: str,
        email: str,
        ip_address: Optional[str] = None,
    ) -> ChallengeIssued:
        validation = self.tokens.require_valid(token)
        token_fp = fingerprint(validation.token_hash)
        set_context(document_id=validation.document_id, signer_id=validation.signer_id, token_fp=token_fp)

        self.rate_limiter.check(token_fp)

        document, recipient = self.resolve(validation)
        if not same_email(email, recipient.email):
            logger.warning(f"OTP request with non-matching email {mask_email(email)}")
            raise ValidationFailure(["Email does not match the recipient of this document"])

        superseded = self.store.supersede_challenges(validation.token_hash)

        now = utc_now()
        challenge_id = str(uuid.uuid4())
        code = generate_numeric_code(self.settings.otp_length)
        challenge = self.store.insert_challenge(OTPChallengeRecord(
            id=challenge_id,
            token_hash=validation.token_hash,
            document_id=document.id,
            kind=document.kind,
            signer_id=recipient.signer_id,
            email=recipient.email,
            code_hash=hash_otp_code(challenge_id, code, self.settings.otp_secret),
            expires_at=now + timedelta(minutes=self.settings.otp_ttl_minutes),
            max_attempts=self.settings.otp_max_attempts,
            created_at=now,
        ))

        result = await self.email_service.send_otp_code(
            to_email=recipient.email,
            code=code,
            document_title=document.title,
            audit_callback=self.audit.email_callback(document.kind),
            document_id=document.id,
        )
        if result.is_failed:
            self.store.set_challenge_state(challenge_id, ChallengeState.ACTIVE, ChallengeState.BURNED)
            raise DeliveryFailure()

        self.audit.append(document.id, document.kind, AuditAction.OTP_REQUESTED, {
            "signer_id": recipient.signer_id,
            "email": recipient.email,
            "ip": ip_address,
            "superseded": superseded,
        })
        logger.info(f"OTP challenge issued to {mask_email(recipient.email)} (superseded {superseded})")
        return ChallengeIssued(challenge_id=challenge.id, expires_at=challenge.expires_at)

    async def verify(
        self,
        token: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionGrant:
        validation = self.tokens.require_valid(token)
        token_fp = fingerprint(validation.token_hash)
        set_context(document_id=validation.document_id, signer_id=validation.signer_id, token_fp=token_fp)

        challenge = self.store.get_active_challenge(validation.token_hash)
        if challenge is None:
            raise ChallengeNotFound()

        # Expiry wins over a matching code
        if is_past(challenge.expires_at):
            raise ChallengeExpired()

        if challenge.attempts >= challenge.max_attempts:
            self.store.set_challenge_state(challenge.id, ChallengeState.ACTIVE, ChallengeState.BURNED)
            self.audit.append(challenge.document_id, challenge.kind, AuditAction.OTP_FAILED, {
                "signer_id": challenge.signer_id,
                "reason": "attempts_exhausted",
                "ip": ip_address,
            })
            raise ChallengeAttemptsExhausted()

        if not verify_otp_code(challenge.id, code, challenge.code_hash, self.settings.otp_secret):
            updated = self.store.increment_challenge_attempts(challenge.id)
            if updated is None:
                raise ChallengeNotFound()
            self.audit.append(challenge.document_id, challenge.kind, AuditAction.OTP_FAILED, {
                "signer_id": challenge.signer_id,
                "attempts": updated.attempts,
                "ip": ip_address,
            })
            logger.info(f"OTP mismatch, {updated.attempts_remaining} attempt(s) remaining")
            raise ChallengeMismatch(updated.attempts_remaining)

        document, recipient = self.resolve(validation)

        if not self.store.set_challenge_state(challenge.id, ChallengeState.ACTIVE, ChallengeState.CONSUMED):
            raise TokenAlreadyConsumed()
        if not self.tokens.consume(validation.token_hash):
            raise TokenAlreadyConsumed()

        session = self.sessions.create(document, email=recipient.email, signer_id=recipient.signer_id)
        self.rate_limiter.reset(token_fp)

        self.audit.append(document.id, document.kind, AuditAction.OTP_VERIFIED, {
            "signer_id": recipient.signer_id,
            "email": recipient.email,
            "ip": ip_address,
            "user_agent": user_agent,
        })
        self.mark_viewed(document, recipient, ip_address)

        return SessionGrant(
            session_id=session.id,
            expires_at=session.expires_at,
            document_id=document.id,
            kind=document.kind,
            signer_id=recipient.signer_id,
        )

    def mark_viewed(self, document: DocumentRecord, recipient: Recipient, ip_address: Optional[str] = None) -> None:
        """First view moves SENT -> VIEWED (or signer PENDING -> VIEWED). Every view is audited."""
        now = utc_now()
        first_view = False

        if document.kind == DocumentKind.CONTRACT:
            if document.status == ContractStatus.SENT:
                try:
                    transition(
                        self.store,
                        DocumentKind.CONTRACT,
                        document.id,
                        ContractStatus.VIEWED,
                        expected=[ContractStatus.SENT],
                        fields={"viewed_at": now},
                    )
                    first_view = True
                except IllegalStateTransition:
                    # Viewed concurrently
                    pass
            self.audit.append(document.id, document.kind, AuditAction.VIEWED, {
                "email": recipient.email,
                "ip": ip_address,
                "first_view": first_view,
            })
            return

        signer = self.store.get_signer(recipient.signer_id)
        if signer is not None and signer.status == SignerStatus.PENDING:
            try:
                transition_signer(self.store, signer, SignerStatus.VIEWED, {"viewed_at": now})
                first_view = True
            except IllegalStateTransition:
                pass
        self.audit.append(document.id, document.kind, AuditAction.SIGNER_VIEWED, {
            "signer_id": recipient.signer_id,
            "email": recipient.email,
            "ip": ip_address,
            "first_view": first_view,
        })
