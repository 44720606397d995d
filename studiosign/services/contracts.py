"""
Contract administration: single-recipient documents.
"""
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from studiosign.exceptions import IllegalStateTransition, NotFoundError, ValidationFailure
from studiosign.models import (
    AuditAction,
    AuditEntry,
    ContractRecord,
    ContractStatus,
    CreateContractRequest,
    DocumentKind,
    DocumentStats,
    IntegrityResponse,
    IssuedLink,
    SendResponse,
    UpdateContractRequest,
)
from studiosign.services.state_machine import is_terminal, load_document, refresh_expiry, transition
from studiosign.storage import document_pdf_path
from studiosign.utils.datetime_utils import is_past, utc_now
from studiosign.utils.logging import mask_email, set_context
from studiosign.utils.validation import is_valid_email

if TYPE_CHECKING:
    from studiosign.services.engine import SigningEngine

logger = logging.getLogger(__name__)

KIND = DocumentKind.CONTRACT
NUMBER_PREFIX = "CT"

# Fields that change what gets rendered; editing any of them drops the stale PDF
RENDER_FIELDS = {
    "title",
    "template",
    "variables",
    "recipient_name",
    "recipient_email",
    "missing_variable_policy",
    "watermark",
}


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:04d}"


def _check_deadline(expires_at) -> List[str]:
    if expires_at is not None and is_past(expires_at):
        return ["Deadline must be in the future"]
    return []


class ContractService:

    def __init__(self, engine: "SigningEngine"):
        self.engine = engine
        self.store = engine.store

    def get(self, contract_id: str) -> ContractRecord:
        contract = load_document(self.store, KIND, contract_id)
        return refresh_expiry(self.store, self.engine.audit, contract)

    def list(
        self,
        status: Optional[ContractStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ContractRecord]:
        statuses = [status] if status is not None else None
        return self.store.list_documents(KIND, statuses, limit=limit, offset=offset)

    def by_number(self, number: str) -> ContractRecord:
        contract = self.store.get_document_by_number(KIND, number)
        if contract is None:
            raise NotFoundError("Contract", number)
        return refresh_expiry(self.store, self.engine.audit, contract)

    def stats(self) -> DocumentStats:
        by_status = self.store.status_counts(KIND)
        return DocumentStats(total=sum(by_status.values()), by_status=by_status)

    def create(self, request: CreateContractRequest) -> ContractRecord:
        errors = _check_deadline(request.expires_at)
        if request.recipient_email and not is_valid_email(request.recipient_email):
            errors.append("Recipient email is not a valid email address")
        if errors:
            raise ValidationFailure(errors)

        now = utc_now()
        number = format_number(NUMBER_PREFIX, now.year, self.store.next_number(KIND, now.year))
        contract = self.store.insert_document(ContractRecord(
            id=str(uuid.uuid4()),
            number=number,
            created_at=now,
            updated_at=now,
            **request.model_dump(exclude_none=True),
        ))
        set_context(document_id=contract.id)
        self.engine.audit.append(contract.id, KIND, AuditAction.CREATED, {
            "number": number,
            "recipient": mask_email(contract.recipient_email) if contract.recipient_email else None,
        })
        logger.info(f"Created contract {number}")
        return contract

    def update(self, contract_id: str, request: UpdateContractRequest) -> ContractRecord:
        contract = load_document(self.store, KIND, contract_id)
        if contract.status != ContractStatus.DRAFT:
            raise IllegalStateTransition(
                contract.status.value, message="Only draft contracts can be edited"
            )

        changes: Dict[str, Any] = request.model_dump(exclude_unset=True)
        errors = _check_deadline(changes.get("expires_at"))
        if changes.get("recipient_email") and not is_valid_email(changes["recipient_email"]):
            errors.append("Recipient email is not a valid email address")
        if errors:
            raise ValidationFailure(errors)
        if not changes:
            return contract

        if RENDER_FIELDS & changes.keys():
            changes.update({"rendered_html": None, "pdf_path": None, "pdf_hash": None, "page_count": None})
        changes["updated_at"] = utc_now()

        updated = self.store.update_document(KIND, contract_id, changes)
        self.engine.audit.append(contract_id, KIND, AuditAction.UPDATED, {
            "fields": sorted(request.model_dump(exclude_unset=True).keys()),
        })
        return updated

    def delete(self, contract_id: str) -> None:
        contract = load_document(self.store, KIND, contract_id)
        if contract.status != ContractStatus.DRAFT:
            raise IllegalStateTransition(
                contract.status.value, message="Only draft contracts can be deleted"
            )
        self.engine.storage.delete(document_pdf_path(contract_id))
        self.store.delete_document(KIND, contract_id)
        self.engine.audit.append(contract_id, KIND, AuditAction.DELETED, {"number": contract.number})
        logger.info(f"Deleted draft contract {contract.number}")

    async def generate_pdf(self, contract_id: str) -> ContractRecord:
        """Render (or re-render) document.pdf. Only allowed before anyone has signed."""
        async with self.engine.locks.hold(contract_id):
            contract = self.get(contract_id)
            if is_terminal(contract.status):
                raise IllegalStateTransition(
                    contract.status.value, message="The PDF can no longer be regenerated"
                )
            return await self.engine.pipeline.generate(contract)

    async def send(self, contract_id: str) -> SendResponse:
        """Render if needed, move DRAFT -> SENT, mint the magic link and email it."""
        async with self.engine.locks.hold(contract_id):
            contract = load_document(self.store, KIND, contract_id)
            set_context(document_id=contract_id)
            if contract.status != ContractStatus.DRAFT:
                raise IllegalStateTransition(contract.status.value, ContractStatus.SENT.value)

            errors = _check_deadline(contract.expires_at)
            if not is_valid_email(contract.recipient_email):
                errors.append("Recipient email is missing or invalid")
            if errors:
                raise ValidationFailure(errors)

            if not contract.pdf_path:
                contract = await self.engine.pipeline.generate(contract)

            contract = transition(
                self.store, KIND, contract_id, ContractStatus.SENT,
                expected=[ContractStatus.DRAFT],
                fields={"sent_at": utc_now()},
            )
            link = await self._issue_and_email(contract, reminder=False)
            self.engine.audit.append(contract_id, KIND, AuditAction.SENT, {
                "email": contract.recipient_email,
                "email_delivered": link.email_delivered,
            })
            return SendResponse(id=contract_id, status=contract.status.value, links=[link])

    async def resend(self, contract_id: str) -> SendResponse:
        """Reissue the magic link (revoking the previous one) and email a reminder."""
        async with self.engine.locks.hold(contract_id):
            contract = self.get(contract_id)
            if contract.status not in (ContractStatus.SENT, ContractStatus.VIEWED):
                raise IllegalStateTransition(
                    contract.status.value, message="Only sent contracts can be resent"
                )
            link = await self._issue_and_email(contract, reminder=True)
            self.engine.audit.append(contract_id, KIND, AuditAction.RESENT, {
                "email": contract.recipient_email,
                "email_delivered": link.email_delivered,
            })
            return SendResponse(id=contract_id, status=contract.status.value, links=[link])

    async def void(self, contract_id: str, reason: Optional[str] = None) -> ContractRecord:
        async with self.engine.locks.hold(contract_id):
            contract = self.get(contract_id)
            contract = transition(
                self.store, KIND, contract_id, ContractStatus.VOIDED,
                expected=[ContractStatus.DRAFT, ContractStatus.SENT, ContractStatus.VIEWED],
                fields={"void_reason": reason},
            )
            self.engine.tokens.revoke_for(contract_id)
            self.engine.sessions.end_for_document(contract_id)
            self.engine.audit.append(contract_id, KIND, AuditAction.VOIDED, {"reason": reason})
            return contract

    def verify_integrity(self, contract_id: str) -> IntegrityResponse:
        contract = load_document(self.store, KIND, contract_id)
        return self.engine.check_integrity(contract)

    def audit_trail(self, contract_id: str, limit: int = 100, offset: int = 0) -> List[AuditEntry]:
        load_document(self.store, KIND, contract_id)
        return self.engine.audit.list(contract_id, limit=limit, offset=offset)

    def download_url(self, contract_id: str) -> Optional[str]:
        contract = load_document(self.store, KIND, contract_id)
        if not contract.pdf_path:
            return None
        try:
            return self.engine.storage.download_url(contract.pdf_path, filename=f"{contract.number}.pdf")
        except FileNotFoundError:
            logger.warning(f"Artifact missing for {contract.number}: {contract.pdf_path}")
            return None

    async def _issue_and_email(self, contract: ContractRecord, reminder: bool) -> IssuedLink:
        issued = self.engine.tokens.issue(contract.id, KIND)
        url = self.engine.settings.magic_link_url(issued.value)
        result = await self.engine.email.send_signing_invitation(
            to_email=contract.recipient_email,
            recipient_name=contract.recipient_name,
            document_title=contract.title,
            sign_url=url,
            expires_at=issued.expires_at,
            reminder=reminder,
            audit_callback=self.engine.audit.email_callback(KIND),
            document_id=contract.id,
        )
        if not result.is_delivered:
            logger.warning(f"Signing link for {contract.number} not delivered ({result.delivery_status.value})")
        return IssuedLink(
            email=contract.recipient_email,
            url=url,
            expires_at=issued.expires_at,
            email_delivered=result.is_delivered,
        )
