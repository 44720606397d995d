"""
Signing sessions: the time-boxed capability granted after OTP verification.
A session authorizes actions on exactly one document.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from studiosign.config import Settings, get_settings
from studiosign.exceptions import SessionExpired
from studiosign.models import AuditAction, DocumentRecord, SigningSessionRecord
from studiosign.services.audit import AuditLog
from studiosign.services.state_machine import is_terminal, refresh_expiry
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import earliest, is_past, utc_now
from studiosign.utils.logging import fingerprint

logger = logging.getLogger(__name__)


class SessionService:

    def __init__(self, store: SigningStore, audit: AuditLog, settings: Optional[Settings] = None):
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings()

    def create(
        self,
        document: DocumentRecord,
        email: str,
        signer_id: Optional[str] = None,
    ) -> SigningSessionRecord:
        now = utc_now()
        expires_at = earliest(
            now + timedelta(hours=self.settings.session_ttl_hours),
            document.expires_at,
        )
        session = self.store.insert_session(SigningSessionRecord(
            id=str(uuid.uuid4()),
            document_id=document.id,
            kind=document.kind,
            signer_id=signer_id,
            email=email,
            created_at=now,
            expires_at=expires_at,
        ))
        logger.info(f"Session {fingerprint(session.id)} created for {document.kind.value} {document.id}")
        return session

    def validate(self, session_id: str, document_id: str) -> SigningSessionRecord:
        """
        Return the session if it may act on document_id.

        Raises:
            SessionExpired: Unknown, revoked, expired, bound to another
                document, or the document has reached a terminal status
        """
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise SessionExpired("Signing session not found. Please verify again.")
        if session.document_id != document_id:
            logger.warning(f"Session {fingerprint(session_id)} presented for another document")
            raise SessionExpired("Signing session is not valid for this document.")
        if session.revoked_at is not None:
            raise SessionExpired("Your signing session has ended.")
        if is_past(session.expires_at):
            raise SessionExpired()

        document = self.store.get_document(session.kind, document_id)
        if document is None:
            raise SessionExpired("Signing session is not valid for this document.")
        document = refresh_expiry(self.store, self.audit, document)
        if is_terminal(document.status):
            raise SessionExpired(f"This document is {document.status.value.lower()}.")
        return session

    def extend(self, session_id: str, document_id: str) -> SigningSessionRecord:
        """
        Push expiry out to now + SESSION_EXTENSION_HOURS, capped at the
        document deadline. Never shortens a session.
        """
        session = self.validate(session_id, document_id)
        document = self.store.get_document(session.kind, document_id)

        proposed = utc_now() + timedelta(hours=self.settings.session_extension_hours)
        new_expiry: datetime = max(proposed, session.expires_at)
        new_expiry = earliest(new_expiry, document.expires_at if document else None)

        updated = self.store.extend_session(session_id, new_expiry)
        if updated is None:
            raise SessionExpired("Your signing session has ended.")

        self.audit.append(document_id, session.kind, AuditAction.SESSION_EXTENDED, {
            "signer_id": session.signer_id,
            "session_fp": fingerprint(session_id),
            "expires_at": new_expiry.isoformat(),
        })
        return updated

    def end_for_document(self, document_id: str, signer_id: Optional[str] = None) -> int:
        count = self.store.revoke_sessions(document_id, utc_now(), signer_id=signer_id)
        if count:
            logger.info(f"Revoked {count} session(s) for {document_id}")
        return count
