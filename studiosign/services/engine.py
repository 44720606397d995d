"""
Signing engine: one object that owns the store, artifact storage and every
service built on them. Routers depend on get_engine(); tests build their own
SigningEngine around an in-memory store.
"""
import logging
from typing import Optional

from studiosign.config import Settings, get_settings
from studiosign.email import EmailService, get_email_service
from studiosign.models import AuditAction, DocumentKind, DocumentRecord, IntegrityResponse, SignerStatus
from studiosign.pdf import IntegrityVerifier, verify_signature_image
from studiosign.services.artifacts import ArtifactPipeline
from studiosign.services.audit import AuditLog
from studiosign.services.contracts import ContractService
from studiosign.services.envelopes import EnvelopeService
from studiosign.services.otp import OTPService
from studiosign.services.sessions import SessionService
from studiosign.services.signing import SigningService
from studiosign.services.tokens import TokenService
from studiosign.storage import ArtifactStorage, get_storage
from studiosign.store import SigningStore, get_store
from studiosign.utils.locks import KeyedLocks
from studiosign.utils.rate_limiter import RateLimiter, get_otp_rate_limiter

logger = logging.getLogger(__name__)


class SigningEngine:

    def __init__(
        self,
        store: SigningStore,
        storage: ArtifactStorage,
        settings: Optional[Settings] = None,
        email: Optional[EmailService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        pipeline: Optional[ArtifactPipeline] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.storage = storage
        self.email = email or EmailService(self.settings)
        self.locks = KeyedLocks()

        self.audit = AuditLog(store)
        self.tokens = TokenService(store, self.settings)
        self.sessions = SessionService(store, self.audit, self.settings)
        self.otp = OTPService(
            store,
            self.tokens,
            self.sessions,
            self.audit,
            self.email,
            rate_limiter or RateLimiter(
                self.settings.otp_rate_limit_requests,
                self.settings.otp_rate_limit_window_seconds,
            ),
            self.settings,
        )
        self.pipeline = pipeline or ArtifactPipeline(store, storage, self.audit, self.settings)
        self.integrity = IntegrityVerifier(storage)

        self.contracts = ContractService(self)
        self.envelopes = EnvelopeService(self)
        self.signing = SigningService(self)

    def check_integrity(self, document: DocumentRecord) -> IntegrityResponse:
        """
        Re-hash the stored artifact against its seal and audit the outcome.
        For envelopes every signed signer's stored signature image is checked too.
        """
        report = self.integrity.verify(document)
        tampered = None
        if document.kind == DocumentKind.ENVELOPE:
            tampered = [
                s.id for s in self.store.list_signers(document.id)
                if s.status == SignerStatus.SIGNED
                and not verify_signature_image(s.signature_data_url, s.signature_hash)
            ]
        valid = report.valid and not tampered
        self.audit.append(document.id, document.kind, AuditAction.INTEGRITY_CHECKED, {
            "valid": valid,
            "sealed_hash": report.sealed_hash,
            "recomputed_hash": report.recomputed_hash,
            "tampered_signatures": tampered or None,
        })
        return IntegrityResponse(
            valid=valid,
            recomputed_hash=report.recomputed_hash,
            sealed_hash=report.sealed_hash,
            tampered_signatures=tampered,
        )


# Singleton instance
_engine: Optional[SigningEngine] = None


def get_engine() -> SigningEngine:
    """Get the signing engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = SigningEngine(
            store=get_store(),
            storage=get_storage(),
            settings=settings,
            email=get_email_service(),
            rate_limiter=get_otp_rate_limiter(settings),
        )
        logger.info(
            f"Signing engine ready (store={settings.store_backend}, storage={settings.storage_backend})"
        )
    return _engine
