"""
Persistence interface for the signing engine.

Every status write is compare-and-swap: the caller names the statuses it
expects and the store applies the update only if the current row still has
one of them. A None/False return means another writer got there first.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from studiosign.models import (
    AuditAction,
    AuditEntry,
    ChallengeState,
    ContractRecord,
    DocumentKind,
    DocumentRecord,
    EnvelopeDocumentRecord,
    EnvelopeRecord,
    MagicLinkTokenRecord,
    OTPChallengeRecord,
    SignerRecord,
    SignerStatus,
    SigningSessionRecord,
)

Status = Union[str, Any]


class StoreUnavailable(Exception):
    """Backend could not be reached."""


class SigningStore(ABC):
    """Abstract store. Implementations: InMemoryStore, SupabaseStore."""

    # Documents (contracts and envelopes)

    @abstractmethod
    def next_number(self, kind: DocumentKind, year: int) -> int:
        """Allocate the next per-year sequence number for a document kind."""

    @abstractmethod
    def insert_document(self, record: DocumentRecord) -> DocumentRecord: ...

    @abstractmethod
    def get_document(self, kind: DocumentKind, document_id: str) -> Optional[DocumentRecord]: ...

    @abstractmethod
    def update_document(self, kind: DocumentKind, document_id: str, fields: Dict[str, Any]) -> Optional[DocumentRecord]:
        """Update non-status fields. Returns the updated record or None if missing."""

    @abstractmethod
    def compare_and_set_status(
        self,
        kind: DocumentKind,
        document_id: str,
        expected: Iterable[Status],
        new: Status,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[DocumentRecord]:
        """Set status (plus extra fields) only if the current status is in expected."""

    @abstractmethod
    def delete_document(self, kind: DocumentKind, document_id: str) -> bool: ...

    @abstractmethod
    def get_document_by_number(self, kind: DocumentKind, number: str) -> Optional[DocumentRecord]: ...

    @abstractmethod
    def list_documents(
        self,
        kind: DocumentKind,
        statuses: Optional[Iterable[Status]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DocumentRecord]:
        """Documents newest first, optionally only those in the given statuses."""

    @abstractmethod
    def status_counts(self, kind: DocumentKind) -> Dict[str, int]:
        """Number of documents of a kind per status value."""

    # Envelope signers and documents

    @abstractmethod
    def insert_signer(self, signer: SignerRecord) -> SignerRecord: ...

    @abstractmethod
    def get_signer(self, signer_id: str) -> Optional[SignerRecord]: ...

    @abstractmethod
    def list_signers(self, envelope_id: str) -> List[SignerRecord]:
        """Signers ordered by (position, created_at)."""

    @abstractmethod
    def update_signer(self, signer_id: str, fields: Dict[str, Any]) -> Optional[SignerRecord]: ...

    @abstractmethod
    def compare_and_set_signer_status(
        self,
        signer_id: str,
        expected: Iterable[SignerStatus],
        new: SignerStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[SignerRecord]: ...

    @abstractmethod
    def delete_signer(self, signer_id: str) -> bool: ...

    @abstractmethod
    def signer_status_counts(self) -> Dict[str, int]:
        """Number of envelope signers per status value, across all envelopes."""

    @abstractmethod
    def insert_envelope_document(self, document: EnvelopeDocumentRecord) -> EnvelopeDocumentRecord: ...

    @abstractmethod
    def list_envelope_documents(self, envelope_id: str) -> List[EnvelopeDocumentRecord]: ...

    @abstractmethod
    def delete_envelope_document(self, envelope_id: str, document_id: str) -> Optional[EnvelopeDocumentRecord]: ...

    # Magic-link tokens

    @abstractmethod
    def insert_token(self, token: MagicLinkTokenRecord) -> MagicLinkTokenRecord: ...

    @abstractmethod
    def get_token_by_hash(self, token_hash: str) -> Optional[MagicLinkTokenRecord]: ...

    @abstractmethod
    def list_tokens(self, document_id: str, outstanding_only: bool = False) -> List[MagicLinkTokenRecord]:
        """Tokens for a document. Outstanding means neither consumed nor revoked."""

    @abstractmethod
    def revoke_tokens(self, document_id: str, signer_id: Optional[str], now: datetime) -> int:
        """Revoke outstanding tokens for exactly this (document, signer) pair."""

    @abstractmethod
    def revoke_all_tokens(self, document_id: str, now: datetime) -> int: ...

    @abstractmethod
    def revoke_token(self, token_hash: str, now: datetime) -> bool: ...

    @abstractmethod
    def consume_token(self, token_hash: str, now: datetime) -> bool:
        """Mark consumed if still outstanding. False if already consumed/revoked."""

    # OTP challenges

    @abstractmethod
    def insert_challenge(self, challenge: OTPChallengeRecord) -> OTPChallengeRecord: ...

    @abstractmethod
    def get_active_challenge(self, token_hash: str) -> Optional[OTPChallengeRecord]:
        """Most recent ACTIVE challenge for a token, if any."""

    @abstractmethod
    def supersede_challenges(self, token_hash: str) -> int: ...

    @abstractmethod
    def increment_challenge_attempts(self, challenge_id: str) -> Optional[OTPChallengeRecord]:
        """Atomically add one attempt to an ACTIVE challenge and return it."""

    @abstractmethod
    def set_challenge_state(
        self,
        challenge_id: str,
        expected: ChallengeState,
        new: ChallengeState,
    ) -> bool: ...

    # Signing sessions

    @abstractmethod
    def insert_session(self, session: SigningSessionRecord) -> SigningSessionRecord: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[SigningSessionRecord]: ...

    @abstractmethod
    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[SigningSessionRecord]:
        """Move expires_at if the session has not been revoked."""

    @abstractmethod
    def revoke_sessions(self, document_id: str, now: datetime, signer_id: Optional[str] = None) -> int:
        """Revoke sessions for a document (optionally only one signer's)."""

    # Audit log

    @abstractmethod
    def append_audit(
        self,
        document_id: str,
        kind: DocumentKind,
        action: AuditAction,
        metadata: Dict[str, Any],
        created_at: datetime,
    ) -> AuditEntry:
        """Append an entry; the store assigns id and a per-document increasing sequence."""

    @abstractmethod
    def list_audit(
        self,
        document_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        before_sequence: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Entries newest first by sequence; before_sequence keeps only older ones."""

    # Health

    @abstractmethod
    def ping(self) -> bool: ...


def record_class(kind: DocumentKind):
    return ContractRecord if kind == DocumentKind.CONTRACT else EnvelopeRecord


def status_value(status: Status) -> str:
    return status.value if hasattr(status, "value") else str(status)
