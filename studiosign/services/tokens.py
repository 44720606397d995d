"""
Magic-link tokens.

Only a salted hash of each token is stored. Validation reports a reason
instead of raising; require_valid() maps the reason onto an exception for
callers that want one.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from studiosign.config import Settings, get_settings
from studiosign.exceptions import ExpiredToken, InvalidToken, TokenAlreadyConsumed
from studiosign.models import DocumentKind, MagicLinkTokenRecord, TokenInvalidReason
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import is_past, utc_now
from studiosign.utils.logging import fingerprint
from studiosign.utils.security import generate_signing_token, hash_signing_token

logger = logging.getLogger(__name__)


@dataclass
class IssuedToken:
    value: str  # plain token, only ever returned here
    token_hash: str
    document_id: str
    signer_id: Optional[str]
    expires_at: datetime


@dataclass
class TokenValidation:
    valid: bool
    token_hash: str
    record: Optional[MagicLinkTokenRecord] = None
    reason: Optional[TokenInvalidReason] = None

    @property
    def document_id(self) -> Optional[str]:
        return self.record.document_id if self.record else None

    @property
    def kind(self) -> Optional[DocumentKind]:
        return self.record.kind if self.record else None

    @property
    def signer_id(self) -> Optional[str]:
        return self.record.signer_id if self.record else None


class TokenService:

    def __init__(self, store: SigningStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def hash(self, value: str) -> str:
        return hash_signing_token(value, self.settings.signing_token_salt)

    def issue(
        self,
        document_id: str,
        kind: DocumentKind,
        signer_id: Optional[str] = None,
    ) -> IssuedToken:
        """
        Mint a token for (document, signer), revoking any outstanding one for
        the same pair first. Stamps the document's sent_at on first issuance.
        """
        now = utc_now()
        revoked = self.store.revoke_tokens(document_id, signer_id, now)

        value, token_hash = generate_signing_token(self.settings.signing_token_salt)
        expires_at = now + timedelta(hours=self.settings.token_ttl_hours)
        self.store.insert_token(MagicLinkTokenRecord(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            document_id=document_id,
            kind=kind,
            signer_id=signer_id,
            issued_at=now,
            expires_at=expires_at,
        ))

        document = self.store.get_document(kind, document_id)
        if document is not None and document.sent_at is None:
            self.store.update_document(kind, document_id, {"sent_at": now})

        logger.info(
            f"Issued token {fingerprint(value)} for {kind.value} {document_id}"
            f"{f' signer {signer_id}' if signer_id else ''} (revoked {revoked} prior)"
        )
        return IssuedToken(
            value=value,
            token_hash=token_hash,
            document_id=document_id,
            signer_id=signer_id,
            expires_at=expires_at,
        )

    def validate(self, value: str) -> TokenValidation:
        """Check existence, revocation, consumption and expiry. Never raises."""
        token_hash = self.hash(value or "")
        record = self.store.get_token_by_hash(token_hash) if value else None

        if record is None:
            reason = TokenInvalidReason.NOT_FOUND
        elif record.revoked_at is not None:
            reason = TokenInvalidReason.REVOKED
        elif record.consumed_at is not None:
            reason = TokenInvalidReason.ALREADY_CONSUMED
        elif is_past(record.expires_at):
            reason = TokenInvalidReason.EXPIRED
        else:
            return TokenValidation(valid=True, token_hash=token_hash, record=record)

        logger.info(f"Token {fingerprint(value or '')} invalid: {reason.value}")
        return TokenValidation(valid=False, token_hash=token_hash, record=record, reason=reason)

    def require_valid(self, value: str) -> TokenValidation:
        validation = self.validate(value)
        if validation.valid:
            return validation
        if validation.reason == TokenInvalidReason.EXPIRED:
            raise ExpiredToken()
        if validation.reason == TokenInvalidReason.ALREADY_CONSUMED:
            raise TokenAlreadyConsumed()
        raise InvalidToken(validation.reason.value)

    def revoke(self, value: str) -> bool:
        return self.store.revoke_token(self.hash(value), utc_now())

    def revoke_for(self, document_id: str, signer_id: Optional[str] = None) -> int:
        """Revoke outstanding tokens for one signer, or every token of the document."""
        if signer_id is None:
            return self.store.revoke_all_tokens(document_id, utc_now())
        return self.store.revoke_tokens(document_id, signer_id, utc_now())

    def consume(self, token_hash: str) -> bool:
        """Compare-and-swap consumption; False if someone else consumed or revoked it first."""
        return self.store.consume_token(token_hash, utc_now())
