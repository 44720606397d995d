"""
Signer ordering for envelopes.

PARALLEL: any signer who has not finished may act.
SEQUENTIAL: a signer may act only once every signer with a strictly lower
position has signed. Positions are unique within an envelope.
"""
from typing import Iterable, List, Optional, Sequence

from studiosign.exceptions import ValidationFailure
from studiosign.models import EnvelopeRecord, SignerRecord, SignerStatus, SigningWorkflow
from studiosign.services.state_machine import is_terminal

ACTIVE_SIGNER_STATUSES = (SignerStatus.PENDING, SignerStatus.VIEWED)


def ordered(signers: Iterable[SignerRecord]) -> List[SignerRecord]:
    return sorted(signers, key=lambda s: (s.position, s.created_at))


def blocking_signers(
    envelope: EnvelopeRecord,
    signers: Sequence[SignerRecord],
    signer_id: str,
) -> List[SignerRecord]:
    """Earlier signers that still have to sign before signer_id may act."""
    if envelope.workflow == SigningWorkflow.PARALLEL:
        return []
    signer = find_signer(signers, signer_id)
    if signer is None:
        return []
    return [
        s for s in ordered(signers)
        if s.position < signer.position and s.status != SignerStatus.SIGNED
    ]


def can_act(envelope: EnvelopeRecord, signers: Sequence[SignerRecord], signer_id: str) -> bool:
    if is_terminal(envelope.status):
        return False
    signer = find_signer(signers, signer_id)
    if signer is None or signer.status not in ACTIVE_SIGNER_STATUSES:
        return False
    return not blocking_signers(envelope, signers, signer_id)


def eligible_signers(envelope: EnvelopeRecord, signers: Sequence[SignerRecord]) -> List[SignerRecord]:
    """Signers who may act right now."""
    return [s for s in ordered(signers) if can_act(envelope, signers, s.id)]


def next_eligible(
    envelope: EnvelopeRecord,
    before: Sequence[SignerRecord],
    after: Sequence[SignerRecord],
) -> List[SignerRecord]:
    """Signers eligible after a change who were not eligible before it."""
    previously = {s.id for s in eligible_signers(envelope, before)}
    return [s for s in eligible_signers(envelope, after) if s.id not in previously]


def all_signed(signers: Sequence[SignerRecord]) -> bool:
    return bool(signers) and all(s.status == SignerStatus.SIGNED for s in signers)


def find_signer(signers: Sequence[SignerRecord], signer_id: str) -> Optional[SignerRecord]:
    return next((s for s in signers if s.id == signer_id), None)


def next_position(signers: Sequence[SignerRecord]) -> int:
    return max((s.position for s in signers), default=0) + 1


def check_position_free(
    signers: Sequence[SignerRecord],
    position: int,
    exclude_signer_id: Optional[str] = None,
) -> None:
    """Reject a position already held by another signer."""
    for s in signers:
        if s.position == position and s.id != exclude_signer_id:
            raise ValidationFailure([f"Position {position} is already taken by another signer"])
