"""
Supabase (PostgREST) store.

Compare-and-swap is expressed as a filtered UPDATE: the status/consumption
filters are part of the WHERE clause, so PostgreSQL applies the row lock and
an empty result means the swap was lost.

Expected schema (see DESIGN.md): contracts, envelopes, envelope_signers,
envelope_documents, magic_link_tokens, otp_challenges, signing_sessions,
audit_entries (unique document_id+sequence) and the next_document_number RPC.
"""
import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from pydantic_core import to_jsonable_python
from supabase import create_client, Client

from studiosign.config import Settings, get_settings
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
from studiosign.store.base import SigningStore, record_class, status_value

logger = logging.getLogger(__name__)

DOCUMENT_TABLES = {
    DocumentKind.CONTRACT: "contracts",
    DocumentKind.ENVELOPE: "envelopes",
}

# Optimistic retries for read-then-conditional-write operations
MAX_CAS_RETRIES = 5
UNIQUE_VIOLATION = "23505"


def _row(fields: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready row: enums to values, datetimes to ISO strings."""
    return to_jsonable_python(fields)


class SupabaseStore(SigningStore):
    """Store backed by Supabase tables using the service key."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(self.settings.supabase_url, self.settings.supabase_key)
        return self._client

    def table(self, table_name: str):
        return self.client.table(table_name)

    @staticmethod
    def _first(result) -> Optional[Dict[str, Any]]:
        data = result.data or []
        if isinstance(data, dict):
            return data
        return data[0] if data else None

    # Documents

    def next_number(self, kind: DocumentKind, year: int) -> int:
        result = self.client.rpc(
            "next_document_number", {"p_kind": kind.value, "p_year": year}
        ).execute()
        return int(result.data)

    def insert_document(self, record: DocumentRecord) -> DocumentRecord:
        result = self.table(DOCUMENT_TABLES[record.kind]).insert(_row(record.model_dump())).execute()
        return type(record).model_validate(self._first(result))

    def get_document(self, kind: DocumentKind, document_id: str) -> Optional[DocumentRecord]:
        result = self.table(DOCUMENT_TABLES[kind]).select("*").eq("id", document_id).limit(1).execute()
        row = self._first(result)
        return record_class(kind).model_validate(row) if row else None

    def update_document(self, kind, document_id, fields):
        result = self.table(DOCUMENT_TABLES[kind]).update(_row(fields)).eq("id", document_id).execute()
        row = self._first(result)
        return record_class(kind).model_validate(row) if row else None

    def compare_and_set_status(self, kind, document_id, expected, new, fields=None):
        update = _row({**(fields or {}), "status": status_value(new)})
        result = (
            self.table(DOCUMENT_TABLES[kind])
            .update(update)
            .eq("id", document_id)
            .in_("status", [status_value(s) for s in expected])
            .execute()
        )
        row = self._first(result)
        if not row:
            logger.info(f"CAS lost on {kind.value} {document_id} -> {status_value(new)}")
            return None
        return record_class(kind).model_validate(row)

    def delete_document(self, kind: DocumentKind, document_id: str) -> bool:
        result = self.table(DOCUMENT_TABLES[kind]).delete().eq("id", document_id).execute()
        return bool(result.data)

    def get_document_by_number(self, kind: DocumentKind, number: str) -> Optional[DocumentRecord]:
        result = self.table(DOCUMENT_TABLES[kind]).select("*").eq("number", number).limit(1).execute()
        row = self._first(result)
        return record_class(kind).model_validate(row) if row else None

    def list_documents(self, kind, statuses=None, limit=None, offset=0) -> List[DocumentRecord]:
        query = self.table(DOCUMENT_TABLES[kind]).select("*")
        if statuses is not None:
            query = query.in_("status", [status_value(s) for s in statuses])
        query = query.order("created_at", desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        result = query.execute()
        return [record_class(kind).model_validate(r) for r in result.data or []]

    def status_counts(self, kind: DocumentKind) -> Dict[str, int]:
        result = self.table(DOCUMENT_TABLES[kind]).select("status").execute()
        return dict(Counter(r["status"] for r in result.data or []))

    # Signers

    def insert_signer(self, signer: SignerRecord) -> SignerRecord:
        result = self.table("envelope_signers").insert(_row(signer.model_dump())).execute()
        return SignerRecord.model_validate(self._first(result))

    def get_signer(self, signer_id: str) -> Optional[SignerRecord]:
        result = self.table("envelope_signers").select("*").eq("id", signer_id).limit(1).execute()
        row = self._first(result)
        return SignerRecord.model_validate(row) if row else None

    def list_signers(self, envelope_id: str) -> List[SignerRecord]:
        result = (
            self.table("envelope_signers")
            .select("*")
            .eq("envelope_id", envelope_id)
            .order("position")
            .order("created_at")
            .execute()
        )
        return [SignerRecord.model_validate(r) for r in result.data or []]

    def update_signer(self, signer_id, fields):
        result = self.table("envelope_signers").update(_row(fields)).eq("id", signer_id).execute()
        row = self._first(result)
        return SignerRecord.model_validate(row) if row else None

    def compare_and_set_signer_status(self, signer_id, expected, new, fields=None):
        result = (
            self.table("envelope_signers")
            .update(_row({**(fields or {}), "status": status_value(new)}))
            .eq("id", signer_id)
            .in_("status", [status_value(s) for s in expected])
            .execute()
        )
        row = self._first(result)
        return SignerRecord.model_validate(row) if row else None

    def delete_signer(self, signer_id: str) -> bool:
        result = self.table("envelope_signers").delete().eq("id", signer_id).execute()
        return bool(result.data)

    def signer_status_counts(self) -> Dict[str, int]:
        result = self.table("envelope_signers").select("status").execute()
        return dict(Counter(r["status"] for r in result.data or []))

    def insert_envelope_document(self, document):
        result = self.table("envelope_documents").insert(_row(document.model_dump())).execute()
        return EnvelopeDocumentRecord.model_validate(self._first(result))

    def list_envelope_documents(self, envelope_id: str) -> List[EnvelopeDocumentRecord]:
        result = (
            self.table("envelope_documents")
            .select("*")
            .eq("envelope_id", envelope_id)
            .order("order")
            .order("created_at")
            .execute()
        )
        return [EnvelopeDocumentRecord.model_validate(r) for r in result.data or []]

    def delete_envelope_document(self, envelope_id, document_id):
        result = (
            self.table("envelope_documents")
            .delete()
            .eq("id", document_id)
            .eq("envelope_id", envelope_id)
            .execute()
        )
        row = self._first(result)
        return EnvelopeDocumentRecord.model_validate(row) if row else None

    # Tokens

    def insert_token(self, token: MagicLinkTokenRecord) -> MagicLinkTokenRecord:
        result = self.table("magic_link_tokens").insert(_row(token.model_dump())).execute()
        return MagicLinkTokenRecord.model_validate(self._first(result))

    def get_token_by_hash(self, token_hash: str) -> Optional[MagicLinkTokenRecord]:
        result = self.table("magic_link_tokens").select("*").eq("token_hash", token_hash).limit(1).execute()
        row = self._first(result)
        return MagicLinkTokenRecord.model_validate(row) if row else None

    def list_tokens(self, document_id: str, outstanding_only: bool = False) -> List[MagicLinkTokenRecord]:
        query = self.table("magic_link_tokens").select("*").eq("document_id", document_id)
        if outstanding_only:
            query = query.is_("consumed_at", "null").is_("revoked_at", "null")
        result = query.execute()
        return [MagicLinkTokenRecord.model_validate(r) for r in result.data or []]

    def _outstanding_update(self, now: datetime):
        return (
            self.table("magic_link_tokens")
            .update({"revoked_at": now.isoformat()})
            .is_("consumed_at", "null")
            .is_("revoked_at", "null")
        )

    def revoke_tokens(self, document_id: str, signer_id: Optional[str], now: datetime) -> int:
        query = self._outstanding_update(now).eq("document_id", document_id)
        query = query.eq("signer_id", signer_id) if signer_id else query.is_("signer_id", "null")
        return len(query.execute().data or [])

    def revoke_all_tokens(self, document_id: str, now: datetime) -> int:
        return len(self._outstanding_update(now).eq("document_id", document_id).execute().data or [])

    def revoke_token(self, token_hash: str, now: datetime) -> bool:
        return bool(self._outstanding_update(now).eq("token_hash", token_hash).execute().data)

    def consume_token(self, token_hash: str, now: datetime) -> bool:
        result = (
            self.table("magic_link_tokens")
            .update({"consumed_at": now.isoformat()})
            .eq("token_hash", token_hash)
            .is_("consumed_at", "null")
            .is_("revoked_at", "null")
            .execute()
        )
        return bool(result.data)

    # Challenges

    def insert_challenge(self, challenge: OTPChallengeRecord) -> OTPChallengeRecord:
        result = self.table("otp_challenges").insert(_row(challenge.model_dump())).execute()
        return OTPChallengeRecord.model_validate(self._first(result))

    def get_active_challenge(self, token_hash: str) -> Optional[OTPChallengeRecord]:
        result = (
            self.table("otp_challenges")
            .select("*")
            .eq("token_hash", token_hash)
            .eq("state", ChallengeState.ACTIVE.value)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        row = self._first(result)
        return OTPChallengeRecord.model_validate(row) if row else None

    def supersede_challenges(self, token_hash: str) -> int:
        result = (
            self.table("otp_challenges")
            .update({"state": ChallengeState.SUPERSEDED.value})
            .eq("token_hash", token_hash)
            .eq("state", ChallengeState.ACTIVE.value)
            .execute()
        )
        return len(result.data or [])

    def increment_challenge_attempts(self, challenge_id: str) -> Optional[OTPChallengeRecord]:
        for _ in range(MAX_CAS_RETRIES):
            current = self.table("otp_challenges").select("*").eq("id", challenge_id).limit(1).execute()
            row = self._first(current)
            if not row or row.get("state") != ChallengeState.ACTIVE.value:
                return None
            attempts = int(row.get("attempts") or 0)
            result = (
                self.table("otp_challenges")
                .update({"attempts": attempts + 1})
                .eq("id", challenge_id)
                .eq("attempts", attempts)
                .eq("state", ChallengeState.ACTIVE.value)
                .execute()
            )
            updated = self._first(result)
            if updated:
                return OTPChallengeRecord.model_validate(updated)
        logger.warning(f"increment_challenge_attempts: gave up after {MAX_CAS_RETRIES} races")
        return None

    def set_challenge_state(self, challenge_id, expected, new) -> bool:
        result = (
            self.table("otp_challenges")
            .update({"state": new.value})
            .eq("id", challenge_id)
            .eq("state", expected.value)
            .execute()
        )
        return bool(result.data)

    # Sessions

    def insert_session(self, session: SigningSessionRecord) -> SigningSessionRecord:
        result = self.table("signing_sessions").insert(_row(session.model_dump())).execute()
        return SigningSessionRecord.model_validate(self._first(result))

    def get_session(self, session_id: str) -> Optional[SigningSessionRecord]:
        result = self.table("signing_sessions").select("*").eq("id", session_id).limit(1).execute()
        row = self._first(result)
        return SigningSessionRecord.model_validate(row) if row else None

    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[SigningSessionRecord]:
        result = (
            self.table("signing_sessions")
            .update({"expires_at": expires_at.isoformat()})
            .eq("id", session_id)
            .is_("revoked_at", "null")
            .execute()
        )
        row = self._first(result)
        return SigningSessionRecord.model_validate(row) if row else None

    def revoke_sessions(self, document_id: str, now: datetime, signer_id: Optional[str] = None) -> int:
        query = (
            self.table("signing_sessions")
            .update({"revoked_at": now.isoformat()})
            .eq("document_id", document_id)
            .is_("revoked_at", "null")
        )
        if signer_id is not None:
            query = query.eq("signer_id", signer_id)
        return len(query.execute().data or [])

    # Audit

    def append_audit(self, document_id, kind, action: AuditAction, metadata, created_at) -> AuditEntry:
        """
        Insert with the next sequence number. A concurrent append for the same
        document hits the unique (document_id, sequence) index and is retried.
        """
        last_error: Optional[Exception] = None
        for _ in range(MAX_CAS_RETRIES):
            latest = (
                self.table("audit_entries")
                .select("sequence")
                .eq("document_id", document_id)
                .order("sequence", desc=True)
                .limit(1)
                .execute()
            )
            row = self._first(latest)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                document_id=document_id,
                kind=kind,
                action=action,
                created_at=created_at,
                sequence=(int(row["sequence"]) if row else 0) + 1,
                metadata=dict(metadata),
            )
            try:
                result = self.table("audit_entries").insert(_row(entry.model_dump())).execute()
            except APIError as e:
                if e.code == UNIQUE_VIOLATION:
                    last_error = e
                    continue
                raise
            return AuditEntry.model_validate(self._first(result))
        raise last_error

    def list_audit(self, document_id, limit=None, offset=0, before_sequence=None) -> List[AuditEntry]:
        query = self.table("audit_entries").select("*").eq("document_id", document_id)
        if before_sequence is not None:
            query = query.lt("sequence", before_sequence)
        query = query.order("sequence", desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        elif offset:
            query = query.range(offset, offset + 10_000)
        result = query.execute()
        return [AuditEntry.model_validate(r) for r in result.data or []]

    def ping(self) -> bool:
        try:
            self.table("contracts").select("id").limit(1).execute()
            return True
        except Exception as e:
            logger.warning(f"Supabase ping failed: {e}")
            return False
