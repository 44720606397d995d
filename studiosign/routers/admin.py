"""
Admin API for the studio: create, send and manage contracts and envelopes.
Every route requires the X-Admin-Secret header.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response

from studiosign.auth import verify_admin_secret
from studiosign.models import (
    AddEnvelopeDocumentRequest,
    AuditEntry,
    ContractRecord,
    ContractStatus,
    CreateContractRequest,
    CreateEnvelopeRequest,
    DocumentStats,
    EnvelopeDocumentRecord,
    EnvelopeRecord,
    EnvelopeStatus,
    IntegrityResponse,
    PdfResponse,
    ReasonRequest,
    SendResponse,
    SignerInput,
    SignerRecord,
    UpdateContractRequest,
    UpdateEnvelopeRequest,
    UpdateSignerRequest,
)
from studiosign.services.engine import SigningEngine, get_engine
from studiosign.utils.logging import set_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_secret)],
)


def _pdf_response(document) -> PdfResponse:
    return PdfResponse(path=document.pdf_path, hash=document.pdf_hash, page_count=document.page_count)


# ============================================================================
# Contracts
# ============================================================================

@router.post("/contracts", response_model=ContractRecord, status_code=201)
async def create_contract(
    body: CreateContractRequest,
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.create(body)


@router.get("/contracts", response_model=List[ContractRecord])
async def list_contracts(
    status: Optional[ContractStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.list(status, limit=limit, offset=offset)


@router.get("/contracts/stats", response_model=DocumentStats)
async def contract_stats(engine: SigningEngine = Depends(get_engine)):
    return engine.contracts.stats()


@router.get("/contracts/by-number/{number}", response_model=ContractRecord)
async def get_contract_by_number(
    number: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.by_number(number)


@router.get("/contracts/{contract_id}")
async def get_contract(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
) -> Dict[str, Any]:
    set_context(document_id=contract_id)
    contract = engine.contracts.get(contract_id)
    return {
        **contract.model_dump(mode="json"),
        "download_url": engine.contracts.download_url(contract_id),
    }


@router.patch("/contracts/{contract_id}", response_model=ContractRecord)
async def update_contract(
    body: UpdateContractRequest,
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.update(contract_id, body)


@router.delete("/contracts/{contract_id}", status_code=204)
async def delete_contract(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    engine.contracts.delete(contract_id)
    return Response(status_code=204)


@router.post("/contracts/{contract_id}/send", response_model=SendResponse)
async def send_contract(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.contracts.send(contract_id)


@router.post("/contracts/{contract_id}/resend", response_model=SendResponse)
async def resend_contract(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.contracts.resend(contract_id)


@router.post("/contracts/{contract_id}/void", response_model=ContractRecord)
async def void_contract(
    body: ReasonRequest,
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.contracts.void(contract_id, body.reason)


@router.post("/contracts/{contract_id}/pdf", response_model=PdfResponse)
async def generate_contract_pdf(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return _pdf_response(await engine.contracts.generate_pdf(contract_id))


@router.get("/contracts/{contract_id}/integrity", response_model=IntegrityResponse)
async def contract_integrity(
    contract_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.verify_integrity(contract_id)


@router.get("/contracts/{contract_id}/audit", response_model=List[AuditEntry])
async def contract_audit(
    contract_id: str = Path(...),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.contracts.audit_trail(contract_id, limit=limit, offset=offset)


# ============================================================================
# Envelopes
# ============================================================================

@router.post("/envelopes", response_model=EnvelopeRecord, status_code=201)
async def create_envelope(
    body: CreateEnvelopeRequest,
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.create(body)


@router.get("/envelopes", response_model=List[EnvelopeRecord])
async def list_envelopes(
    status: Optional[EnvelopeStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.list(status, limit=limit, offset=offset)


@router.get("/envelopes/stats", response_model=DocumentStats)
async def envelope_stats(engine: SigningEngine = Depends(get_engine)):
    return engine.envelopes.stats()


@router.get("/envelopes/by-number/{number}", response_model=EnvelopeRecord)
async def get_envelope_by_number(
    number: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.by_number(number)


@router.get("/envelopes/{envelope_id}")
async def get_envelope(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
) -> Dict[str, Any]:
    set_context(document_id=envelope_id)
    return engine.envelopes.detail(envelope_id)


@router.patch("/envelopes/{envelope_id}", response_model=EnvelopeRecord)
async def update_envelope(
    body: UpdateEnvelopeRequest,
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.update(envelope_id, body)


@router.delete("/envelopes/{envelope_id}", status_code=204)
async def delete_envelope(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    engine.envelopes.delete(envelope_id)
    return Response(status_code=204)


@router.post("/envelopes/{envelope_id}/signers", response_model=SignerRecord, status_code=201)
async def add_signer(
    body: SignerInput,
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.add_signer(envelope_id, body)


@router.patch("/envelopes/{envelope_id}/signers/{signer_id}", response_model=SignerRecord)
async def update_signer(
    body: UpdateSignerRequest,
    envelope_id: str = Path(...),
    signer_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.update_signer(envelope_id, signer_id, body)


@router.delete("/envelopes/{envelope_id}/signers/{signer_id}", status_code=204)
async def remove_signer(
    envelope_id: str = Path(...),
    signer_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    engine.envelopes.remove_signer(envelope_id, signer_id)
    return Response(status_code=204)


@router.post("/envelopes/{envelope_id}/documents", response_model=EnvelopeDocumentRecord, status_code=201)
async def add_envelope_document(
    body: AddEnvelopeDocumentRequest,
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.envelopes.add_document(envelope_id, body)


@router.delete("/envelopes/{envelope_id}/documents/{upload_id}", status_code=204)
async def remove_envelope_document(
    envelope_id: str = Path(...),
    upload_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    engine.envelopes.remove_document(envelope_id, upload_id)
    return Response(status_code=204)


@router.post("/envelopes/{envelope_id}/send", response_model=SendResponse)
async def send_envelope(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.envelopes.send(envelope_id)


@router.post("/envelopes/{envelope_id}/signers/{signer_id}/resend", response_model=SendResponse)
async def resend_envelope_signer(
    envelope_id: str = Path(...),
    signer_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.envelopes.resend_signer(envelope_id, signer_id)


@router.post("/envelopes/{envelope_id}/cancel", response_model=EnvelopeRecord)
async def cancel_envelope(
    body: ReasonRequest,
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return await engine.envelopes.cancel(envelope_id, body.reason)


@router.post("/envelopes/{envelope_id}/pdf", response_model=PdfResponse)
async def generate_envelope_pdf(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return _pdf_response(await engine.envelopes.generate_pdf(envelope_id))


@router.post("/envelopes/{envelope_id}/complete", response_model=EnvelopeRecord)
async def complete_envelope(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    """Finish an envelope that every signer has signed but that was never sealed."""
    return await engine.envelopes.complete_if_ready(envelope_id)


@router.get("/envelopes/{envelope_id}/integrity", response_model=IntegrityResponse)
async def envelope_integrity(
    envelope_id: str = Path(...),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.verify_integrity(envelope_id)


@router.get("/envelopes/{envelope_id}/audit", response_model=List[AuditEntry])
async def envelope_audit(
    envelope_id: str = Path(...),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.envelopes.audit_trail(envelope_id, limit=limit, offset=offset)


# ============================================================================
# Maintenance
# ============================================================================

@router.post("/maintenance/expire")
async def run_expiry_sweep(engine: SigningEngine = Depends(get_engine)) -> Dict[str, int]:
    """Seal fully signed envelopes, then apply derived expiry to every open document once."""
    completed = await engine.envelopes.complete_stranded()
    return {"completed": completed, "expired": engine.signing.sweep_expired()}
