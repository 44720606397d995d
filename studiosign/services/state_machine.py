"""
Signing state machine for contracts, envelopes and envelope signers.

Legal edges live in closed transition tables keyed by the status enums.
Every status write is a compare-and-swap on the store: an edge that is not
in the table, or a row that changed underneath us, raises
IllegalStateTransition carrying the current status.
"""
import logging
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Union

from studiosign.exceptions import IllegalStateTransition, NotFoundError
from studiosign.models import (
    AuditAction,
    ContractStatus,
    DocumentKind,
    DocumentRecord,
    EnvelopeStatus,
    SignerRecord,
    SignerStatus,
)
from studiosign.services.audit import AuditLog
from studiosign.store.base import SigningStore
from studiosign.utils.datetime_utils import is_past, utc_now

logger = logging.getLogger(__name__)

DocumentStatus = Union[ContractStatus, EnvelopeStatus]

CONTRACT_TRANSITIONS: Mapping[ContractStatus, FrozenSet[ContractStatus]] = {
    ContractStatus.DRAFT: frozenset({ContractStatus.SENT, ContractStatus.VOIDED}),
    ContractStatus.SENT: frozenset({
        ContractStatus.VIEWED,
        ContractStatus.DECLINED,
        ContractStatus.VOIDED,
        ContractStatus.EXPIRED,
    }),
    ContractStatus.VIEWED: frozenset({
        ContractStatus.SIGNED,
        ContractStatus.DECLINED,
        ContractStatus.VOIDED,
        ContractStatus.EXPIRED,
    }),
    ContractStatus.SIGNED: frozenset(),
    ContractStatus.DECLINED: frozenset(),
    ContractStatus.VOIDED: frozenset(),
    ContractStatus.EXPIRED: frozenset(),
}

ENVELOPE_TRANSITIONS: Mapping[EnvelopeStatus, FrozenSet[EnvelopeStatus]] = {
    EnvelopeStatus.DRAFT: frozenset({EnvelopeStatus.PENDING, EnvelopeStatus.CANCELLED}),
    EnvelopeStatus.PENDING: frozenset({
        EnvelopeStatus.IN_PROGRESS,
        EnvelopeStatus.CANCELLED,
        EnvelopeStatus.EXPIRED,
    }),
    EnvelopeStatus.IN_PROGRESS: frozenset({
        EnvelopeStatus.COMPLETED,
        EnvelopeStatus.CANCELLED,
        EnvelopeStatus.EXPIRED,
    }),
    EnvelopeStatus.COMPLETED: frozenset(),
    EnvelopeStatus.CANCELLED: frozenset(),
    EnvelopeStatus.EXPIRED: frozenset(),
}

SIGNER_TRANSITIONS: Mapping[SignerStatus, FrozenSet[SignerStatus]] = {
    SignerStatus.PENDING: frozenset({SignerStatus.VIEWED, SignerStatus.DECLINED}),
    SignerStatus.VIEWED: frozenset({SignerStatus.SIGNED, SignerStatus.DECLINED}),
    SignerStatus.SIGNED: frozenset(),
    SignerStatus.DECLINED: frozenset(),
}

EXPIRED_STATUS = {
    DocumentKind.CONTRACT: ContractStatus.EXPIRED,
    DocumentKind.ENVELOPE: EnvelopeStatus.EXPIRED,
}


def transitions_for(kind: DocumentKind) -> Mapping:
    return CONTRACT_TRANSITIONS if kind == DocumentKind.CONTRACT else ENVELOPE_TRANSITIONS


def can_transition(kind: DocumentKind, current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in transitions_for(kind).get(current, frozenset())


def is_terminal(status: Union[DocumentStatus, SignerStatus]) -> bool:
    if isinstance(status, ContractStatus):
        return not CONTRACT_TRANSITIONS[status]
    if isinstance(status, EnvelopeStatus):
        return not ENVELOPE_TRANSITIONS[status]
    return not SIGNER_TRANSITIONS[status]


def load_document(store: SigningStore, kind: DocumentKind, document_id: str) -> DocumentRecord:
    document = store.get_document(kind, document_id)
    if document is None:
        raise NotFoundError(kind.value.capitalize(), document_id)
    return document


def transition(
    store: SigningStore,
    kind: DocumentKind,
    document_id: str,
    target: DocumentStatus,
    expected: Optional[Iterable[DocumentStatus]] = None,
    fields: Optional[Dict[str, Any]] = None,
) -> DocumentRecord:
    """
    Move a document to target.

    Args:
        expected: Statuses the caller is prepared to transition from. When
            omitted, any status with a legal edge to target is accepted.
        fields: Extra columns written in the same compare-and-swap

    Raises:
        IllegalStateTransition: Edge not allowed, or the status changed concurrently
    """
    document = load_document(store, kind, document_id)
    current = document.status
    allowed = set(expected) if expected is not None else None

    if (allowed is not None and current not in allowed) or not can_transition(kind, current, target):
        raise IllegalStateTransition(current.value, target.value)

    updated = store.compare_and_set_status(kind, document_id, [current], target, fields)
    if updated is None:
        latest = load_document(store, kind, document_id)
        logger.warning(
            f"Lost status race on {kind.value} {document_id}: "
            f"{current.value} -> {target.value}, now {latest.status.value}"
        )
        raise IllegalStateTransition(latest.status.value, target.value)

    logger.info(f"{kind.value} {document_id}: {current.value} -> {target.value}")
    return updated


def transition_signer(
    store: SigningStore,
    signer: SignerRecord,
    target: SignerStatus,
    fields: Optional[Dict[str, Any]] = None,
) -> SignerRecord:
    """Compare-and-swap a signer's status from its currently observed value."""
    if target not in SIGNER_TRANSITIONS[signer.status]:
        raise IllegalStateTransition(signer.status.value, target.value)

    updated = store.compare_and_set_signer_status(signer.id, [signer.status], target, fields)
    if updated is None:
        latest = store.get_signer(signer.id)
        current = latest.status.value if latest else "DELETED"
        raise IllegalStateTransition(current, target.value)

    logger.info(f"signer {signer.id}: {signer.status.value} -> {target.value}")
    return updated


def _is_unopened(store: SigningStore, document: DocumentRecord) -> bool:
    if document.kind == DocumentKind.CONTRACT:
        return document.status == ContractStatus.SENT
    if document.status != EnvelopeStatus.PENDING:
        return False
    return all(s.status == SignerStatus.PENDING for s in store.list_signers(document.id))


def expiry_reason(store: SigningStore, document: DocumentRecord, now=None) -> Optional[str]:
    """
    Why a non-terminal document should now be EXPIRED, or None.

    Sent documents expire at their deadline. Documents nobody has opened also
    expire once every outstanding link has run out.

    An envelope everyone has signed is only waiting on its seal and never expires.
    """
    now = now or utc_now()
    if is_terminal(document.status) or document.status in (ContractStatus.DRAFT, EnvelopeStatus.DRAFT):
        return None
    if document.kind == DocumentKind.ENVELOPE:
        signers = store.list_signers(document.id)
        if signers and all(s.status == SignerStatus.SIGNED for s in signers):
            return None
    if is_past(document.expires_at, now):
        return "deadline"
    if _is_unopened(store, document):
        outstanding = store.list_tokens(document.id, outstanding_only=True)
        if outstanding and all(is_past(t.expires_at, now) for t in outstanding):
            return "links_expired"
    return None


def refresh_expiry(store: SigningStore, audit: AuditLog, document: DocumentRecord) -> DocumentRecord:
    """
    Apply derived expiry on access. Returns the document as it now stands.
    Expiring revokes outstanding tokens and sessions.
    """
    now = utc_now()
    reason = expiry_reason(store, document, now)
    if reason is None:
        return document

    kind = document.kind
    updated = store.compare_and_set_status(kind, document.id, [document.status], EXPIRED_STATUS[kind])
    if updated is None:
        return load_document(store, kind, document.id)

    store.revoke_all_tokens(document.id, now)
    store.revoke_sessions(document.id, now)
    audit.append(document.id, kind, AuditAction.EXPIRED, {
        "reason": reason,
        "previous_status": document.status.value,
    })
    logger.info(f"{kind.value} {document.id} expired ({reason})")
    return updated
