"""
Tests for Resend delivery, retries and the signing email templates.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from studiosign.email import (
    EmailDeliveryStatus,
    EmailResult,
    EmailService,
    MAX_RETRY_ATTEMPTS,
    RETRY_DELAYS_SECONDS,
    render_completed_email,
    render_invitation_email,
    render_otp_email,
    render_your_turn_email,
)


def resend_response(status_code=200, message_id="msg_1", text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = {"id": message_id}
    return response


@pytest.fixture
def resend():
    """Patch httpx.AsyncClient; the yielded mock stands for the client inside `async with`."""
    with patch("studiosign.email.httpx.AsyncClient") as client_class:
        client = AsyncMock()
        client.__aenter__.return_value = client
        client.__aexit__.return_value = None
        client_class.return_value = client
        with patch("studiosign.email.asyncio.sleep", new_callable=AsyncMock) as sleep:
            client.sleep = sleep
            yield client


@pytest.fixture
def mailer():
    settings = MagicMock()
    settings.resend_api_key = "re_test_key"
    settings.resend_from_email = "contracts@studio.example.com"
    settings.studio_name = "Light & Lens Studio"
    settings.otp_ttl_minutes = 10
    return EmailService(settings=settings)


async def send(mailer, **kwargs):
    return await mailer.send_email(
        to_email="jana@example.com",
        subject="Please sign: Wedding Photography Agreement",
        html="<p>Agreement</p>",
        **kwargs,
    )


class TestDelivery:
    """Tests for send_email retries."""

    @pytest.mark.asyncio
    async def test_first_attempt(self, mailer, resend):
        resend.post.return_value = resend_response(201, "msg_first")

        result = await send(mailer)

        assert result.is_delivered
        assert result.message_id == "msg_first"
        assert result.total_attempts == 1
        resend.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_after_server_errors(self, mailer, resend):
        """Two 5xx answers, then success; the backoff schedule is followed."""
        resend.post.side_effect = [
            resend_response(500, text="Internal Server Error"),
            resend_response(502, text="Bad Gateway"),
            resend_response(200, "msg_third"),
        ]

        result = await send(mailer)

        assert result.success is True
        assert [a.success for a in result.attempts] == [False, False, True]
        assert [a.attempt_number for a in result.attempts] == [1, 2, 3]
        assert [c.args[0] for c in resend.sleep.await_args_list] == RETRY_DELAYS_SECONDS[1:]

    @pytest.mark.asyncio
    async def test_gives_up(self, mailer, resend):
        resend.post.return_value = resend_response(503, text="Service Unavailable")

        result = await send(mailer)

        assert result.is_failed
        assert result.total_attempts == MAX_RETRY_ATTEMPTS
        assert "503" in result.error

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, mailer, resend):
        resend.post.side_effect = [
            httpx.TimeoutException("read timed out"),
            httpx.ConnectError("connection refused"),
            resend_response(200, "msg_after_errors"),
        ]

        result = await send(mailer)

        assert result.success is True
        assert result.attempts[0].error.startswith("Timeout")
        assert result.attempts[1].error.startswith("Transport error")

    @pytest.mark.asyncio
    async def test_unconfigured_is_skipped(self, resend):
        settings = MagicMock()
        settings.resend_api_key = ""

        result = await send(EmailService(settings=settings))

        assert result.delivery_status == EmailDeliveryStatus.SKIPPED
        assert not result.is_delivered and not result.is_failed
        resend.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_payload(self, mailer, resend):
        resend.post.return_value = resend_response()

        await send(mailer, text="Agreement")

        kwargs = resend.post.call_args.kwargs
        assert kwargs["json"]["from"] == "Light & Lens Studio <contracts@studio.example.com>"
        assert kwargs["json"]["to"] == ["jana@example.com"]
        assert kwargs["json"]["text"] == "Agreement"
        assert kwargs["headers"]["Authorization"] == "Bearer re_test_key"


class TestAuditCallback:

    @pytest.mark.asyncio
    async def test_sent_event(self, mailer, resend):
        resend.post.return_value = resend_response(200, "msg_audit")
        callback = AsyncMock()

        await send(mailer, audit_callback=callback, context_id="ct-1")

        event, document_id, metadata = callback.await_args.args
        assert (event, document_id) == ("EMAIL_SENT", "ct-1")
        assert metadata["message_id"] == "msg_audit"
        assert metadata["to"] == "j***@example.com"

    @pytest.mark.asyncio
    async def test_failed_event(self, mailer, resend):
        resend.post.return_value = resend_response(500, text="boom")
        callback = AsyncMock()

        await send(mailer, audit_callback=callback, context_id="env-1")

        event, document_id, metadata = callback.await_args.args
        assert (event, document_id) == ("EMAIL_FAILED", "env-1")
        assert metadata["total_attempts"] == MAX_RETRY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_callback_error_does_not_fail_delivery(self, mailer, resend):
        """A broken audit sink never turns a delivered email into a failure."""
        resend.post.return_value = resend_response()
        callback = AsyncMock(side_effect=RuntimeError("audit store down"))

        result = await send(mailer, audit_callback=callback, context_id="ct-1")
        assert result.is_delivered

    @pytest.mark.asyncio
    async def test_no_context_no_callback(self, mailer, resend):
        resend.post.return_value = resend_response()
        callback = AsyncMock()

        await send(mailer, audit_callback=callback)
        callback.assert_not_awaited()


class TestOtpEmail:

    @pytest.mark.asyncio
    async def test_code_in_subject_and_body(self, mailer):
        with patch.object(mailer, "send_email", new_callable=AsyncMock) as send_email:
            send_email.return_value = EmailResult(success=True, delivery_status=EmailDeliveryStatus.SENT)
            await mailer.send_otp_code("jana@example.com", "123456", "Wedding Photography Agreement")

        kwargs = send_email.call_args.kwargs
        assert kwargs["to_email"] == "jana@example.com"
        assert kwargs["subject"] == "Your verification code: 123456"
        assert "123456" in kwargs["html"]


class TestTemplates:
    """Tests for rendered email bodies."""

    def test_otp(self):
        rendered = render_otp_email("Studio", "Agreement", "042917", 10)
        assert rendered.subject == "Your verification code: 042917"
        assert "042917" in rendered.html
        assert "10 minutes" in rendered.text

    def test_invitation_escapes_values(self):
        rendered = render_invitation_email(
            "Studio", "<b>Jana</b>", "Agreement & Terms", "https://x/sign/abc", None
        )
        assert "&lt;b&gt;Jana&lt;/b&gt;" in rendered.html
        assert "Agreement &amp; Terms" in rendered.html
        assert "https://x/sign/abc" in rendered.text
        assert rendered.subject == "Please sign: Agreement & Terms"

    def test_reminder(self):
        rendered = render_invitation_email("Studio", "Jana", "Agreement", "https://x/sign/abc", None, reminder=True)
        assert rendered.subject == "Reminder: please sign Agreement"

    def test_your_turn(self):
        rendered = render_your_turn_email("Studio", "Petr", "Model Release", "https://x/sign/def")
        assert rendered.subject == "Your turn to sign: Model Release"
        assert "https://x/sign/def" in rendered.html

    def test_completed(self):
        rendered = render_completed_email(
            "Studio", "Anna", "Model Release", "ENV-2026-0001", None, "https://x/verify/env-1"
        )
        assert rendered.subject == "Signed: Model Release"
        assert "ENV-2026-0001" in rendered.html
        assert "https://x/verify/env-1" in rendered.text
