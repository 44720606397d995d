"""
In-memory store for local development and tests.
One lock guards all tables, which makes every compare-and-swap atomic.
"""
import threading
import uuid
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from studiosign.models import (
    AuditAction,
    AuditEntry,
    ChallengeState,
    DocumentKind,
    DocumentRecord,
    EnvelopeDocumentRecord,
    MagicLinkTokenRecord,
    OTPChallengeRecord,
    SignerRecord,
    SigningSessionRecord,
)
from studiosign.store.base import SigningStore, status_value


class InMemoryStore(SigningStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: Dict[DocumentKind, Dict[str, DocumentRecord]] = {
            DocumentKind.CONTRACT: {},
            DocumentKind.ENVELOPE: {},
        }
        self._counters: Dict[tuple, int] = defaultdict(int)
        self._signers: Dict[str, SignerRecord] = {}
        self._envelope_documents: Dict[str, EnvelopeDocumentRecord] = {}
        self._tokens: Dict[str, MagicLinkTokenRecord] = {}
        self._challenges: Dict[str, OTPChallengeRecord] = {}
        self._sessions: Dict[str, SigningSessionRecord] = {}
        self._audit: Dict[str, List[AuditEntry]] = defaultdict(list)

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True) if record is not None else None

    @staticmethod
    def _apply(record, fields: Optional[Dict[str, Any]]):
        updated = record.model_copy(deep=True)
        for key, value in (fields or {}).items():
            setattr(updated, key, value)
        return updated

    # Documents

    def next_number(self, kind: DocumentKind, year: int) -> int:
        with self._lock:
            self._counters[(kind, year)] += 1
            return self._counters[(kind, year)]

    def insert_document(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            self._documents[record.kind][record.id] = self._copy(record)
            return self._copy(record)

    def get_document(self, kind: DocumentKind, document_id: str) -> Optional[DocumentRecord]:
        with self._lock:
            return self._copy(self._documents[kind].get(document_id))

    def update_document(self, kind, document_id, fields):
        with self._lock:
            current = self._documents[kind].get(document_id)
            if current is None:
                return None
            updated = self._apply(current, fields)
            self._documents[kind][document_id] = updated
            return self._copy(updated)

    def compare_and_set_status(self, kind, document_id, expected, new, fields=None):
        expected_values = {status_value(s) for s in expected}
        with self._lock:
            current = self._documents[kind].get(document_id)
            if current is None or status_value(current.status) not in expected_values:
                return None
            updated = self._apply(current, {**(fields or {}), "status": new})
            self._documents[kind][document_id] = updated
            return self._copy(updated)

    def delete_document(self, kind: DocumentKind, document_id: str) -> bool:
        with self._lock:
            if self._documents[kind].pop(document_id, None) is None:
                return False
            for signer_id in [s.id for s in self._signers.values() if s.envelope_id == document_id]:
                del self._signers[signer_id]
            for doc_id in [d.id for d in self._envelope_documents.values() if d.envelope_id == document_id]:
                del self._envelope_documents[doc_id]
            return True

    def get_document_by_number(self, kind: DocumentKind, number: str) -> Optional[DocumentRecord]:
        with self._lock:
            found = next((r for r in self._documents[kind].values() if r.number == number), None)
            return self._copy(found)

    def list_documents(self, kind, statuses=None, limit=None, offset=0) -> List[DocumentRecord]:
        wanted = {status_value(s) for s in statuses} if statuses is not None else None
        with self._lock:
            records = [
                self._copy(r) for r in self._documents[kind].values()
                if wanted is None or status_value(r.status) in wanted
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return records[offset:end]

    def status_counts(self, kind: DocumentKind) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(status_value(r.status) for r in self._documents[kind].values()))

    # Signers

    def insert_signer(self, signer: SignerRecord) -> SignerRecord:
        with self._lock:
            self._signers[signer.id] = self._copy(signer)
            return self._copy(signer)

    def get_signer(self, signer_id: str) -> Optional[SignerRecord]:
        with self._lock:
            return self._copy(self._signers.get(signer_id))

    def list_signers(self, envelope_id: str) -> List[SignerRecord]:
        with self._lock:
            signers = [self._copy(s) for s in self._signers.values() if s.envelope_id == envelope_id]
        return sorted(signers, key=lambda s: (s.position, s.created_at))

    def update_signer(self, signer_id, fields):
        with self._lock:
            current = self._signers.get(signer_id)
            if current is None:
                return None
            updated = self._apply(current, fields)
            self._signers[signer_id] = updated
            return self._copy(updated)

    def compare_and_set_signer_status(self, signer_id, expected, new, fields=None):
        expected_values = {status_value(s) for s in expected}
        with self._lock:
            current = self._signers.get(signer_id)
            if current is None or status_value(current.status) not in expected_values:
                return None
            updated = self._apply(current, {**(fields or {}), "status": new})
            self._signers[signer_id] = updated
            return self._copy(updated)

    def delete_signer(self, signer_id: str) -> bool:
        with self._lock:
            return self._signers.pop(signer_id, None) is not None

    def signer_status_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(status_value(s.status) for s in self._signers.values()))

    def insert_envelope_document(self, document):
        with self._lock:
            self._envelope_documents[document.id] = self._copy(document)
            return self._copy(document)

    def list_envelope_documents(self, envelope_id: str) -> List[EnvelopeDocumentRecord]:
        with self._lock:
            docs = [self._copy(d) for d in self._envelope_documents.values() if d.envelope_id == envelope_id]
        return sorted(docs, key=lambda d: (d.order, d.created_at))

    def delete_envelope_document(self, envelope_id, document_id):
        with self._lock:
            current = self._envelope_documents.get(document_id)
            if current is None or current.envelope_id != envelope_id:
                return None
            return self._envelope_documents.pop(document_id)

    # Tokens

    def insert_token(self, token: MagicLinkTokenRecord) -> MagicLinkTokenRecord:
        with self._lock:
            self._tokens[token.token_hash] = self._copy(token)
            return self._copy(token)

    def get_token_by_hash(self, token_hash: str) -> Optional[MagicLinkTokenRecord]:
        with self._lock:
            return self._copy(self._tokens.get(token_hash))

    def list_tokens(self, document_id: str, outstanding_only: bool = False) -> List[MagicLinkTokenRecord]:
        with self._lock:
            return [
                self._copy(t) for t in self._tokens.values()
                if t.document_id == document_id
                and (not outstanding_only or (t.consumed_at is None and t.revoked_at is None))
            ]

    def _revoke_where(self, predicate, now: datetime) -> int:
        count = 0
        for token in self._tokens.values():
            if token.consumed_at is None and token.revoked_at is None and predicate(token):
                token.revoked_at = now
                count += 1
        return count

    def revoke_tokens(self, document_id: str, signer_id: Optional[str], now: datetime) -> int:
        with self._lock:
            return self._revoke_where(
                lambda t: t.document_id == document_id and t.signer_id == signer_id, now
            )

    def revoke_all_tokens(self, document_id: str, now: datetime) -> int:
        with self._lock:
            return self._revoke_where(lambda t: t.document_id == document_id, now)

    def revoke_token(self, token_hash: str, now: datetime) -> bool:
        with self._lock:
            return self._revoke_where(lambda t: t.token_hash == token_hash, now) == 1

    def consume_token(self, token_hash: str, now: datetime) -> bool:
        with self._lock:
            token = self._tokens.get(token_hash)
            if token is None or token.consumed_at is not None or token.revoked_at is not None:
                return False
            token.consumed_at = now
            return True

    # Challenges

    def insert_challenge(self, challenge: OTPChallengeRecord) -> OTPChallengeRecord:
        with self._lock:
            self._challenges[challenge.id] = self._copy(challenge)
            return self._copy(challenge)

    def get_active_challenge(self, token_hash: str) -> Optional[OTPChallengeRecord]:
        with self._lock:
            active = [
                c for c in self._challenges.values()
                if c.token_hash == token_hash and c.state == ChallengeState.ACTIVE
            ]
            if not active:
                return None
            return self._copy(max(active, key=lambda c: c.created_at))

    def supersede_challenges(self, token_hash: str) -> int:
        with self._lock:
            count = 0
            for challenge in self._challenges.values():
                if challenge.token_hash == token_hash and challenge.state == ChallengeState.ACTIVE:
                    challenge.state = ChallengeState.SUPERSEDED
                    count += 1
            return count

    def increment_challenge_attempts(self, challenge_id: str) -> Optional[OTPChallengeRecord]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None or challenge.state != ChallengeState.ACTIVE:
                return None
            challenge.attempts += 1
            return self._copy(challenge)

    def set_challenge_state(self, challenge_id, expected, new) -> bool:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None or challenge.state != expected:
                return False
            challenge.state = new
            return True

    # Sessions

    def insert_session(self, session: SigningSessionRecord) -> SigningSessionRecord:
        with self._lock:
            self._sessions[session.id] = self._copy(session)
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[SigningSessionRecord]:
        with self._lock:
            return self._copy(self._sessions.get(session_id))

    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[SigningSessionRecord]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.revoked_at is not None:
                return None
            session.expires_at = expires_at
            return self._copy(session)

    def revoke_sessions(self, document_id: str, now: datetime, signer_id: Optional[str] = None) -> int:
        with self._lock:
            count = 0
            for session in self._sessions.values():
                if session.document_id != document_id or session.revoked_at is not None:
                    continue
                if signer_id is not None and session.signer_id != signer_id:
                    continue
                session.revoked_at = now
                count += 1
            return count

    # Audit

    def append_audit(self, document_id, kind, action: AuditAction, metadata, created_at) -> AuditEntry:
        with self._lock:
            entries = self._audit[document_id]
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                document_id=document_id,
                kind=kind,
                action=action,
                created_at=created_at,
                sequence=len(entries) + 1,
                metadata=dict(metadata),
            )
            entries.append(entry)
            return self._copy(entry)

    def list_audit(self, document_id, limit=None, offset=0, before_sequence=None) -> List[AuditEntry]:
        with self._lock:
            entries = [
                e for e in reversed(self._audit.get(document_id, []))
                if before_sequence is None or e.sequence < before_sequence
            ]
        end = None if limit is None else offset + limit
        return [self._copy(e) for e in entries[offset:end]]

    def ping(self) -> bool:
        return True
