"""
Public signing endpoints, reached from the magic link in the invitation email.

Contract recipients and envelope signers share these routes: the token or
session tells the engine which kind of document it is dealing with.
"""
import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import HTMLResponse

from studiosign.auth import get_client_ip, get_user_agent
from studiosign.exceptions import (
    ExpiredToken,
    IllegalStateTransition,
    InvalidToken,
    SessionExpired,
    TokenAlreadyConsumed,
)
from studiosign.models import (
    DeclineRequest,
    DeclineResponse,
    DocumentViewResponse,
    ExtendSessionRequest,
    ExtendSessionResponse,
    PublicVerificationResponse,
    RequestOTPRequest,
    RequestOTPResponse,
    SignDocumentRequest,
    SignDocumentResponse,
    VerifyOTPRequest,
    VerifyOTPResponse,
)
from studiosign.services.engine import SigningEngine, get_engine
from studiosign.utils.datetime_utils import format_display
from studiosign.utils.logging import mask_email, set_context

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signing"])


# Pages

def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">"
        f"<title>{html.escape(title)}</title>"
        "<style>body{font-family:Arial,sans-serif;max-width:760px;margin:40px auto;"
        "padding:0 16px;color:#333}.muted{color:#777}"
        ".missing-variable{color:#b00020;font-weight:bold}</style>"
        f"</head><body>{body}</body></html>"
    )


def link_unavailable_page(heading: str, message: str) -> str:
    return _page(heading, (
        f"<h1>{html.escape(heading)}</h1>"
        f"<p>{html.escape(message)}</p>"
        "<p class=\"muted\">Ask the studio to send you a new signing link.</p>"
    ))


def otp_prompt_page(title: str, number: str, masked_email: Optional[str], token: str) -> str:
    return _page(title, (
        f"<h1>{html.escape(title)}</h1>"
        f"<p class=\"muted\">{html.escape(number)}</p>"
        "<p>To open this document we will email a verification code to "
        f"<strong>{html.escape(masked_email or 'your address')}</strong>.</p>"
        f"<form data-token=\"{html.escape(token)}\" data-action=\"/contract/request-otp\">"
        "<label>Your email <input type=\"email\" name=\"email\" required></label>"
        "<button type=\"submit\">Send code</button></form>"
    ))


def document_page(view: DocumentViewResponse) -> str:
    signers = ""
    if view.signers:
        rows = "".join(
            f"<li>{html.escape(s.name)}: {s.status.value.lower()}</li>" for s in view.signers
        )
        signers = f"<h2>Signers</h2><ul>{rows}</ul>"
    return _page(view.title, (
        f"<h1>{html.escape(view.title)}</h1>"
        f"<p class=\"muted\">{html.escape(view.number)} | {view.status} | "
        f"session ends {format_display(view.session_expires_at)}</p>"
        f"<article>{view.html or ''}</article>"
        f"{signers}"
    ))


# Routes

@router.get("/sign/{token}", response_class=HTMLResponse)
@router.get("/contract/sign/{token}", response_class=HTMLResponse)
async def open_signing_link(
    token: str = Path(..., min_length=1),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    engine: SigningEngine = Depends(get_engine),
):
    """Landing page for a magic link: OTP prompt, or the document once verified."""
    if session_id:
        # The token is consumed by verification, so look it up without requiring it to be live
        validation = engine.tokens.validate(token)
        if validation.record is not None:
            try:
                view = engine.signing.view(validation.document_id, session_id)
                return HTMLResponse(document_page(view))
            except SessionExpired:
                logger.info("Stale session on signing link, showing the OTP prompt")

    try:
        context = await engine.signing.open_link(token)
    except (ExpiredToken, TokenAlreadyConsumed):
        return HTMLResponse(
            link_unavailable_page("Link expired", "This signing link has expired or was already used."),
            status_code=410,
        )
    except InvalidToken:
        return HTMLResponse(
            link_unavailable_page("Link not valid", "This signing link is invalid or has been replaced."),
            status_code=404,
        )
    except IllegalStateTransition as e:
        return HTMLResponse(
            link_unavailable_page(
                "Document closed",
                f"This document can no longer be signed (status: {e.current.lower()}).",
            ),
            status_code=410,
        )

    return HTMLResponse(otp_prompt_page(
        context.document.title,
        context.document.number,
        mask_email(context.recipient.email),
        token,
    ))


@router.post("/contract/request-otp", response_model=RequestOTPResponse)
async def request_otp(
    request: Request,
    body: RequestOTPRequest,
    engine: SigningEngine = Depends(get_engine),
):
    """Email a one-time code for the recipient bound to the token."""
    issued = await engine.otp.request_challenge(body.token, body.email, ip_address=get_client_ip(request))
    return RequestOTPResponse(expires_at=issued.expires_at)


@router.post("/contract/verify-otp", response_model=VerifyOTPResponse)
async def verify_otp(
    request: Request,
    body: VerifyOTPRequest,
    engine: SigningEngine = Depends(get_engine),
):
    """Exchange a correct code for a signing session."""
    grant = await engine.otp.verify(
        body.token,
        body.otp,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return VerifyOTPResponse(session_id=grant.session_id, expires_at=grant.expires_at)


@router.get("/contract/view/{document_id}", response_model=DocumentViewResponse)
async def view_document(
    document_id: str = Path(..., min_length=1),
    session_id: str = Query(..., alias="sessionId", min_length=1),
    engine: SigningEngine = Depends(get_engine),
):
    return engine.signing.view(document_id, session_id)


@router.post("/contract/sign/{document_id}", response_model=SignDocumentResponse)
async def sign_document(
    request: Request,
    body: SignDocumentRequest,
    document_id: str = Path(..., min_length=1),
    engine: SigningEngine = Depends(get_engine),
):
    """Submit a drawn signature. Validation problems come back together in errors[]."""
    set_context(document_id=document_id)
    return await engine.signing.submit_signature(
        document_id,
        body,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


@router.post("/contract/decline/{document_id}", response_model=DeclineResponse)
async def decline_document(
    request: Request,
    body: DeclineRequest,
    document_id: str = Path(..., min_length=1),
    engine: SigningEngine = Depends(get_engine),
):
    set_context(document_id=document_id)
    return await engine.signing.decline(
        document_id,
        body,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


@router.post("/contract/extend-session", response_model=ExtendSessionResponse)
async def extend_session(
    body: ExtendSessionRequest,
    engine: SigningEngine = Depends(get_engine),
):
    return engine.signing.extend_session(body)


@router.get("/verify/{document_id}", response_model=PublicVerificationResponse)
async def verify_document(
    document_id: str = Path(..., min_length=1),
    engine: SigningEngine = Depends(get_engine),
):
    """Public check behind the QR code on signed pages."""
    return engine.signing.public_verify(document_id)
