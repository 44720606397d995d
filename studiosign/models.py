from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class BaseResponse(BaseModel):
    """Base class for API responses - serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Record(BaseModel):
    """Persisted row. Unknown columns coming back from the database are ignored."""
    model_config = ConfigDict(extra="ignore", validate_assignment=True)


# Enums
class DocumentKind(str, Enum):
    CONTRACT = "contract"
    ENVELOPE = "envelope"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    EXPIRED = "EXPIRED"


class EnvelopeStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SignerStatus(str, Enum):
    PENDING = "PENDING"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class SigningWorkflow(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class ChallengeState(str, Enum):
    ACTIVE = "ACTIVE"
    CONSUMED = "CONSUMED"
    BURNED = "BURNED"          # attempt budget exhausted or delivery failed
    SUPERSEDED = "SUPERSEDED"  # replaced by a newer request


class MissingVariablePolicy(str, Enum):
    MARK = "mark"
    STRICT = "strict"


class TokenInvalidReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"
    REVOKED = "REVOKED"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    SENT = "SENT"
    RESENT = "RESENT"
    OTP_REQUESTED = "OTP_REQUESTED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    EXPIRED = "EXPIRED"
    PDF_GENERATED = "PDF_GENERATED"
    SESSION_EXTENDED = "SESSION_EXTENDED"
    INTEGRITY_CHECKED = "INTEGRITY_CHECKED"
    DOCUMENT_ADDED = "DOCUMENT_ADDED"
    DOCUMENT_REMOVED = "DOCUMENT_REMOVED"
    SIGNER_ADDED = "SIGNER_ADDED"
    SIGNER_UPDATED = "SIGNER_UPDATED"
    SIGNER_REMOVED = "SIGNER_REMOVED"
    SIGNER_VIEWED = "SIGNER_VIEWED"
    SIGNER_SIGNED = "SIGNER_SIGNED"
    SIGNER_DECLINED = "SIGNER_DECLINED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"


# Persisted records
class DocumentRecord(Record):
    """Fields shared by contracts and envelopes."""
    kind: ClassVar[DocumentKind]

    id: str
    number: str
    title: str
    template: str = ""
    template_name: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    missing_variable_policy: Optional[MissingVariablePolicy] = None
    watermark: Optional[str] = None
    rendered_html: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf_hash: Optional[str] = None
    page_count: Optional[int] = None
    verification_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ContractRecord(DocumentRecord):
    kind: ClassVar[DocumentKind] = DocumentKind.CONTRACT

    status: ContractStatus = ContractStatus.DRAFT
    recipient_name: str = ""
    recipient_email: Optional[str] = None
    viewed_at: Optional[datetime] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_ip: Optional[str] = None
    signer_user_agent: Optional[str] = None
    decline_reason: Optional[str] = None
    void_reason: Optional[str] = None


class EnvelopeRecord(DocumentRecord):
    kind: ClassVar[DocumentKind] = DocumentKind.ENVELOPE

    status: EnvelopeStatus = EnvelopeStatus.DRAFT
    workflow: SigningWorkflow = SigningWorkflow.SEQUENTIAL
    description: Optional[str] = None
    cancel_reason: Optional[str] = None


class SignerRecord(Record):
    id: str
    envelope_id: str
    name: str
    email: str
    role: Optional[str] = None
    position: int = 1
    status: SignerStatus = SignerStatus.PENDING
    created_at: datetime
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    signature_data_url: Optional[str] = None
    signature_hash: Optional[str] = None
    verification_id: Optional[str] = None


class EnvelopeDocumentRecord(Record):
    id: str
    envelope_id: str
    name: str
    storage_path: str
    file_hash: str
    page_count: int = 0
    order: int = 0
    created_at: datetime


class MagicLinkTokenRecord(Record):
    id: str
    token_hash: str
    document_id: str
    kind: DocumentKind
    signer_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class OTPChallengeRecord(Record):
    id: str
    token_hash: str
    document_id: str
    kind: DocumentKind
    signer_id: Optional[str] = None
    email: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 5
    state: ChallengeState = ChallengeState.ACTIVE
    created_at: datetime

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


class SigningSessionRecord(Record):
    id: str
    document_id: str
    kind: DocumentKind
    signer_id: Optional[str] = None
    email: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None


class AuditEntry(Record):
    id: str
    document_id: str
    kind: DocumentKind
    action: AuditAction
    created_at: datetime
    sequence: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Public signing API
class RequestOTPRequest(BaseRequest):
    token: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, max_length=254)


class RequestOTPResponse(BaseResponse):
    success: bool = True
    expires_at: datetime


class VerifyOTPRequest(BaseRequest):
    token: str = Field(..., min_length=1)
    otp: str = Field(..., min_length=4, max_length=10)

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("OTP code must contain only digits")
        return v


class VerifyOTPResponse(BaseResponse):
    success: bool = True
    session_id: str
    expires_at: datetime


class SignDocumentRequest(BaseRequest):
    """
    Signature submission. Content rules are checked by the signing service,
    which reports every problem in one errors[] list.
    """
    session_id: str = Field(..., min_length=1)
    signature_data_url: str = ""
    signer_name: str = ""
    signer_email: str = ""
    agreed_to_terms: bool = False


class SignDocumentResponse(BaseResponse):
    success: bool = True
    signed_at: datetime
    signed_pdf_path: Optional[str] = None
    status: str


class DeclineRequest(BaseRequest):
    session_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=2000)


class DeclineResponse(BaseResponse):
    success: bool = True
    status: str


class ExtendSessionRequest(BaseRequest):
    document_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)


class ExtendSessionResponse(BaseResponse):
    expires_at: datetime


class SignerView(BaseResponse):
    id: str
    name: str
    role: Optional[str] = None
    position: int
    status: SignerStatus
    signed_at: Optional[datetime] = None


class DocumentViewResponse(BaseResponse):
    id: str
    kind: DocumentKind
    number: str
    title: str
    status: str
    html: Optional[str] = None
    pdf_hash: Optional[str] = None
    page_count: Optional[int] = None
    expires_at: Optional[datetime] = None
    session_expires_at: datetime
    signer_name: Optional[str] = None
    signers: Optional[List[SignerView]] = None
    can_sign: bool = False


class IntegrityResponse(BaseResponse):
    valid: bool
    recomputed_hash: Optional[str] = None
    sealed_hash: Optional[str] = None
    # Envelopes only: signers whose stored signature image no longer matches its hash
    tampered_signatures: Optional[List[str]] = None


class PublicVerificationResponse(BaseResponse):
    document_id: str
    number: str
    status: str
    sealed_hash: Optional[str] = None
    completed_at: Optional[datetime] = None
    valid: bool


# Admin API
class CreateContractRequest(BaseRequest):
    title: str = Field(..., min_length=1, max_length=255)
    template: str = ""
    template_name: Optional[str] = Field(None, max_length=255)
    variables: Dict[str, str] = Field(default_factory=dict)
    recipient_name: str = Field(..., min_length=1, max_length=200)
    recipient_email: Optional[str] = Field(None, max_length=254)
    expires_at: Optional[datetime] = None
    missing_variable_policy: Optional[MissingVariablePolicy] = None
    watermark: Optional[str] = Field(None, max_length=80)


class UpdateContractRequest(BaseRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    template: Optional[str] = None
    template_name: Optional[str] = Field(None, max_length=255)
    variables: Optional[Dict[str, str]] = None
    recipient_name: Optional[str] = Field(None, min_length=1, max_length=200)
    recipient_email: Optional[str] = Field(None, max_length=254)
    expires_at: Optional[datetime] = None
    missing_variable_policy: Optional[MissingVariablePolicy] = None
    watermark: Optional[str] = Field(None, max_length=80)


class SignerInput(BaseRequest):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=254)
    role: Optional[str] = Field(None, max_length=100)
    position: Optional[int] = Field(None, ge=1)


class UpdateSignerRequest(BaseRequest):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = Field(None, min_length=3, max_length=254)
    role: Optional[str] = Field(None, max_length=100)
    position: Optional[int] = Field(None, ge=1)


class CreateEnvelopeRequest(BaseRequest):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    workflow: SigningWorkflow = SigningWorkflow.SEQUENTIAL
    template: str = ""
    template_name: Optional[str] = Field(None, max_length=255)
    variables: Dict[str, str] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    missing_variable_policy: Optional[MissingVariablePolicy] = None
    watermark: Optional[str] = Field(None, max_length=80)
    signers: List[SignerInput] = Field(default_factory=list)


class UpdateEnvelopeRequest(BaseRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    workflow: Optional[SigningWorkflow] = None
    template: Optional[str] = None
    template_name: Optional[str] = Field(None, max_length=255)
    variables: Optional[Dict[str, str]] = None
    expires_at: Optional[datetime] = None
    missing_variable_policy: Optional[MissingVariablePolicy] = None
    watermark: Optional[str] = Field(None, max_length=80)


class AddEnvelopeDocumentRequest(BaseRequest):
    name: str = Field(..., min_length=1, max_length=255)
    content_base64: str = Field(..., min_length=4)


class ReasonRequest(BaseRequest):
    reason: Optional[str] = Field(None, max_length=2000)


class IssuedLink(BaseResponse):
    signer_id: Optional[str] = None
    email: str
    url: str
    expires_at: datetime
    email_delivered: Optional[bool] = None


class SendResponse(BaseResponse):
    id: str
    status: str
    links: List[IssuedLink] = Field(default_factory=list)


class DocumentStats(BaseResponse):
    total: int
    by_status: Dict[str, int] = Field(default_factory=dict)
    signers: Optional[int] = None
    signatures: Optional[int] = None


class PdfResponse(BaseResponse):
    path: str
    hash: str
    page_count: int
