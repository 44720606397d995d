"""
Email module using Resend for sending emails.
Templates are small HTML bodies rendered locally with escaped values.

Includes reliable delivery with retry logic and audit logging.
"""
import asyncio
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable, List

import httpx

from studiosign.config import get_settings, Settings
from studiosign.utils.datetime_utils import format_display
from studiosign.utils.logging import mask_email

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # wait before each attempt


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured or disabled


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


# (event_type, document_id, metadata)
AuditCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        """Check if email was successfully delivered."""
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        """Check if all delivery attempts failed."""
        return self.delivery_status == EmailDeliveryStatus.FAILED


@dataclass
class RenderedEmail:
    """Rendered email ready to send."""
    subject: str
    html: str
    text: Optional[str] = None


def _layout(studio_name: str, body: str) -> str:
    return (
        "<div style=\"font-family: Helvetica, Arial, sans-serif; max-width: 560px; margin: 0 auto;\">"
        f"<h2 style=\"color: #333;\">{html.escape(studio_name)}</h2>"
        f"{body}"
        "<p style=\"color: #999; font-size: 12px;\">If you did not expect this email, you can ignore it.</p>"
        "</div>"
    )


def _button(url: str, label: str) -> str:
    return (
        f"<p><a href=\"{html.escape(url, quote=True)}\" "
        "style=\"background: #1a73e8; color: #fff; padding: 10px 18px; "
        f"border-radius: 4px; text-decoration: none;\">{html.escape(label)}</a></p>"
    )


def render_otp_email(studio_name: str, document_title: str, code: str, ttl_minutes: int) -> RenderedEmail:
    body = (
        f"<p>Your verification code for <strong>{html.escape(document_title)}</strong> is:</p>"
        f"<p style=\"font-size: 28px; letter-spacing: 6px; font-weight: bold;\">{html.escape(code)}</p>"
        f"<p>The code is valid for {ttl_minutes} minutes.</p>"
    )
    return RenderedEmail(
        subject=f"Your verification code: {code}",
        html=_layout(studio_name, body),
        text=f"Your verification code for {document_title} is {code}. It is valid for {ttl_minutes} minutes.",
    )


def render_invitation_email(
    studio_name: str,
    recipient_name: str,
    document_title: str,
    sign_url: str,
    expires_at: Optional[datetime],
    reminder: bool = False,
) -> RenderedEmail:
    intro = "This is a reminder that" if reminder else f"{studio_name} has sent you"
    body = (
        f"<p>Hello {html.escape(recipient_name)},</p>"
        f"<p>{html.escape(intro)} a document to review and sign: "
        f"<strong>{html.escape(document_title)}</strong>.</p>"
        f"{_button(sign_url, 'Review and sign')}"
        f"<p>This link expires {format_display(expires_at)}.</p>"
    )
    subject = f"Reminder: please sign {document_title}" if reminder else f"Please sign: {document_title}"
    return RenderedEmail(
        subject=subject,
        html=_layout(studio_name, body),
        text=f"Hello {recipient_name}, please review and sign {document_title}: {sign_url}",
    )


def render_your_turn_email(studio_name: str, recipient_name: str, document_title: str, sign_url: str) -> RenderedEmail:
    body = (
        f"<p>Hello {html.escape(recipient_name)},</p>"
        f"<p>The previous signers have completed their part. It is now your turn to sign "
        f"<strong>{html.escape(document_title)}</strong>.</p>"
        f"{_button(sign_url, 'Sign now')}"
    )
    return RenderedEmail(
        subject=f"Your turn to sign: {document_title}",
        html=_layout(studio_name, body),
        text=f"Hello {recipient_name}, it is your turn to sign {document_title}: {sign_url}",
    )


def render_completed_email(
    studio_name: str,
    recipient_name: str,
    document_title: str,
    document_number: str,
    completed_at: Optional[datetime],
    verify_url: str,
) -> RenderedEmail:
    body = (
        f"<p>Hello {html.escape(recipient_name)},</p>"
        f"<p><strong>{html.escape(document_title)}</strong> ({html.escape(document_number)}) "
        f"has been fully signed on {format_display(completed_at)}.</p>"
        f"{_button(verify_url, 'Verify document')}"
    )
    return RenderedEmail(
        subject=f"Signed: {document_title}",
        html=_layout(studio_name, body),
        text=f"{document_title} ({document_number}) has been signed. Verify: {verify_url}",
    )


class EmailService:
    """Email service using the Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.settings.resend_api_key)

    def _payload(self, to_email: str, subject: str, html: str, text: Optional[str]) -> Dict[str, Any]:
        payload = {
            "from": f"{self.settings.studio_name} <{self.settings.resend_from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text
        return payload

    async def _post(self, payload: Dict[str, Any]) -> EmailAttempt:
        """One call to Resend. Failures come back as an unsuccessful attempt."""
        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.RESEND_API_URL, json=payload, headers=headers, timeout=30.0)
        except httpx.TimeoutException as e:
            return EmailAttempt(attempt_number=0, success=False, error=f"Timeout: {e}")
        except httpx.HTTPError as e:
            return EmailAttempt(attempt_number=0, success=False, error=f"Transport error: {e}")

        if response.status_code in (200, 201):
            return EmailAttempt(attempt_number=0, success=True, message_id=response.json().get("id"))
        return EmailAttempt(
            attempt_number=0,
            success=False,
            error=f"API error {response.status_code}: {response.text[:200]}",
        )

    @staticmethod
    async def _notify(
        audit_callback: Optional[AuditCallback],
        event_type: str,
        context_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        if not (audit_callback and context_id):
            return
        try:
            await audit_callback(event_type, context_id, metadata)
        except Exception as e:
            logger.warning(f"Audit callback for {event_type} failed: {e}")

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        audit_callback: Optional[AuditCallback] = None,
        context_id: Optional[str] = None,  # Document ID for audit
    ) -> EmailResult:
        """
        Send email via Resend HTTP API with retry logic.

        Up to MAX_RETRY_ATTEMPTS calls, waiting RETRY_DELAYS_SECONDS before
        each one. The outcome is reported through audit_callback as
        EMAIL_SENT or EMAIL_FAILED against context_id.

        Returns:
            EmailResult with delivery_status and attempt history
        """
        recipient = mask_email(to_email)

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {recipient}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload = self._payload(to_email, subject, html, text)
        attempts: List[EmailAttempt] = []

        for attempt_num, delay in enumerate(RETRY_DELAYS_SECONDS[:MAX_RETRY_ATTEMPTS], start=1):
            if delay:
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {recipient} in {delay}s")
                await asyncio.sleep(delay)

            attempt = await self._post(payload)
            attempt.attempt_number = attempt_num
            attempts.append(attempt)

            if attempt.success:
                logger.info(f"Email sent to {recipient} on attempt {attempt_num}, message_id: {attempt.message_id}")
                await self._notify(audit_callback, "EMAIL_SENT", context_id, {
                    "to": recipient,
                    "message_id": attempt.message_id,
                    "attempt": attempt_num,
                })
                return EmailResult(
                    success=True,
                    message_id=attempt.message_id,
                    delivery_status=EmailDeliveryStatus.SENT,
                    attempts=attempts,
                    total_attempts=attempt_num,
                )

            logger.warning(f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {recipient} failed: {attempt.error}")

        last_error = attempts[-1].error if attempts else None
        logger.error(f"Email to {recipient} failed after {len(attempts)} attempts. Last error: {last_error}")
        await self._notify(audit_callback, "EMAIL_FAILED", context_id, {
            "to": recipient,
            "total_attempts": len(attempts),
            "last_error": (last_error or "Unknown")[:200],
        })

        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=len(attempts),
        )

    async def _send_rendered(
        self,
        to_email: str,
        rendered: RenderedEmail,
        audit_callback: Optional[AuditCallback] = None,
        document_id: Optional[str] = None,
    ) -> EmailResult:
        return await self.send_email(
            to_email=to_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            audit_callback=audit_callback,
            context_id=document_id,
        )

    async def send_otp_code(
        self,
        to_email: str,
        code: str,
        document_title: str,
        audit_callback: Optional[AuditCallback] = None,
        document_id: Optional[str] = None,
    ) -> EmailResult:
        """Send the one-time verification code. The code itself is never logged."""
        rendered = render_otp_email(
            self.settings.studio_name, document_title, code, self.settings.otp_ttl_minutes
        )
        return await self._send_rendered(to_email, rendered, audit_callback, document_id)

    async def send_signing_invitation(
        self,
        to_email: str,
        recipient_name: str,
        document_title: str,
        sign_url: str,
        expires_at: Optional[datetime],
        reminder: bool = False,
        audit_callback: Optional[AuditCallback] = None,
        document_id: Optional[str] = None,
    ) -> EmailResult:
        """
        Initial signing request (or a reminder when resending).

        Args:
            to_email: Recipient email
            recipient_name: Name used in the greeting
            document_title: Title shown in subject and body
            sign_url: Magic link
            expires_at: Link expiry, shown in the body
            reminder: Use reminder wording
            audit_callback: Optional callback for audit logging
            document_id: Document ID for audit context
        """
        rendered = render_invitation_email(
            self.settings.studio_name, recipient_name, document_title, sign_url, expires_at, reminder
        )
        return await self._send_rendered(to_email, rendered, audit_callback, document_id)

    async def send_your_turn(
        self,
        to_email: str,
        recipient_name: str,
        document_title: str,
        sign_url: str,
        audit_callback: Optional[AuditCallback] = None,
        document_id: Optional[str] = None,
    ) -> EmailResult:
        """Sequential envelopes: tell the next signer the previous ones are done."""
        rendered = render_your_turn_email(self.settings.studio_name, recipient_name, document_title, sign_url)
        return await self._send_rendered(to_email, rendered, audit_callback, document_id)

    async def send_completed_notification(
        self,
        to_email: str,
        recipient_name: str,
        document_title: str,
        document_number: str,
        completed_at: Optional[datetime],
        verify_url: str,
        audit_callback: Optional[AuditCallback] = None,
        document_id: Optional[str] = None,
    ) -> EmailResult:
        """All signatures complete."""
        rendered = render_completed_email(
            self.settings.studio_name,
            recipient_name,
            document_title,
            document_number,
            completed_at,
            verify_url,
        )
        return await self._send_rendered(to_email, rendered, audit_callback, document_id)


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "RenderedEmail",
    "AuditCallback",
    "get_email_service",
    "render_otp_email",
    "render_invitation_email",
    "render_your_turn_email",
    "render_completed_email",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
