"""
Pytest configuration and fixtures.
"""
import base64
import io
import os
import re
import sys
from datetime import timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from studiosign.config import Settings, get_settings  # noqa: E402
from studiosign.email import EmailDeliveryStatus, EmailResult, EmailService  # noqa: E402
from studiosign.models import (  # noqa: E402
    CreateContractRequest,
    CreateEnvelopeRequest,
    SignDocumentRequest,
    SignerInput,
)
from studiosign.services.engine import SigningEngine, get_engine  # noqa: E402
from studiosign.storage import LocalArtifactStorage  # noqa: E402
from studiosign.store.memory import InMemoryStore  # noqa: E402
from studiosign.utils.datetime_utils import utc_now  # noqa: E402

ADMIN_SECRET = "test-admin-secret"
TOKEN_PATTERN = re.compile(r"/sign/([0-9a-f]{64})")

TEMPLATE = (
    "<p>Agreement between the studio and {{ recipient_name }}.</p>"
    "<p>Shoot date: {{ shoot_date }}. Fee: {{ fee }}.</p>"
)


class RecordingEmailService(EmailService):
    """EmailService that records messages instead of calling Resend."""

    def __init__(self, settings: Settings):
        super().__init__(settings=settings)
        self.messages: List[Dict[str, Optional[str]]] = []
        self.codes: List[str] = []
        self.fail = False

    async def send_email(self, to_email, subject, html, text=None, audit_callback=None, context_id=None):
        self.messages.append({"to": to_email, "subject": subject, "html": html, "text": text})
        event = "EMAIL_FAILED" if self.fail else "EMAIL_SENT"
        if audit_callback and context_id:
            await audit_callback(event, context_id, {"attempt": 1})
        if self.fail:
            return EmailResult(
                success=False,
                error="API error 500",
                delivery_status=EmailDeliveryStatus.FAILED,
                total_attempts=3,
            )
        return EmailResult(
            success=True,
            message_id=f"msg_{len(self.messages)}",
            delivery_status=EmailDeliveryStatus.SENT,
            total_attempts=1,
        )

    async def send_otp_code(self, to_email, code, document_title, audit_callback=None, document_id=None):
        self.codes.append(code)
        return await super().send_otp_code(to_email, code, document_title, audit_callback, document_id)

    def sent_to(self, email: str) -> List[Dict[str, Optional[str]]]:
        return [m for m in self.messages if m["to"] == email]

    def last_token_for(self, email: str) -> Optional[str]:
        """Magic-link token from the newest email to this address that carries one."""
        for message in reversed(self.sent_to(email)):
            match = TOKEN_PATTERN.search(message["text"] or "")
            if match:
                return match.group(1)
        return None


def make_png_bytes(size=(120, 40)) -> bytes:
    image = Image.new("RGBA", size, (255, 255, 255, 0))
    for x in range(10, size[0] - 10):
        image.putpixel((x, size[1] // 2), (0, 0, 0, 255))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def settings(tmp_path):
    """Settings for an isolated engine: in-memory store, local storage, no Resend."""
    return Settings(
        gcp_project_id="",
        environment="test",
        store_backend="memory",
        storage_backend="local",
        artifact_dir=str(tmp_path / "artifacts"),
        resend_api_key="",
        public_url="https://sign.example.com",
        signing_token_salt="test-salt",
        otp_secret="test-otp-secret",
        admin_api_secret=ADMIN_SECRET,
        studio_name="Test Studio",
        missing_variable_policy="mark",
        expiry_sweep_interval_seconds=0,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def storage(tmp_path):
    return LocalArtifactStorage(str(tmp_path / "artifacts"))


@pytest.fixture
def email_service(settings):
    return RecordingEmailService(settings)


@pytest.fixture
def engine(store, storage, settings, email_service):
    return SigningEngine(store=store, storage=storage, settings=settings, email=email_service)


@pytest.fixture
def client(engine, settings):
    """TestClient wired to the test engine."""
    from studiosign.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}


@pytest.fixture
def sample_png_bytes():
    return make_png_bytes()


@pytest.fixture
def signature_data_url(sample_png_bytes):
    return "data:image/png;base64," + base64.b64encode(sample_png_bytes).decode()


@pytest.fixture
def contract_request():
    return CreateContractRequest(
        title="Wedding Photography Agreement",
        template=TEMPLATE,
        variables={"shoot_date": "2026-06-14", "fee": "2 400 EUR"},
        recipient_name="Jana Novak",
        recipient_email="jana@example.com",
        expires_at=utc_now() + timedelta(days=14),
    )


@pytest.fixture
def envelope_request():
    return CreateEnvelopeRequest(
        title="Model Release",
        template="<p>{{ document_title }} for the spring campaign.</p>",
        expires_at=utc_now() + timedelta(days=14),
        signers=[
            SignerInput(name="Anna Model", email="anna@example.com", role="Model"),
            SignerInput(name="Petr Guardian", email="petr@example.com", role="Guardian"),
        ],
    )


@pytest.fixture
def mock_supabase():
    """Create mock Supabase client."""
    client = MagicMock()

    # Mock table operations
    table_mock = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "neq", "in_", "is_", "lt", "order", "range", "limit"):
        getattr(table_mock, method).return_value = table_mock
    table_mock.execute.return_value = MagicMock(data=[], count=0)

    client.table.return_value = table_mock
    return client


class SigningFlow:
    """Drives a recipient through the magic link, OTP and signature steps."""

    def __init__(self, engine: SigningEngine, email_service: RecordingEmailService, signature_data_url: str):
        self.engine = engine
        self.email_service = email_service
        self.signature_data_url = signature_data_url

    async def verify(self, token: str, email: str):
        """Request a code, read it from the outbox and exchange it for a session."""
        await self.engine.otp.request_challenge(token, email, ip_address="203.0.113.7")
        code = self.email_service.codes[-1]
        return await self.engine.otp.verify(token, code, ip_address="203.0.113.7", user_agent="pytest")

    def sign_request(self, session_id: str, name: str, email: str) -> SignDocumentRequest:
        return SignDocumentRequest(
            session_id=session_id,
            signature_data_url=self.signature_data_url,
            signer_name=name,
            signer_email=email,
            agreed_to_terms=True,
        )

    async def sign(self, document_id: str, token: str, name: str, email: str):
        grant = await self.verify(token, email)
        return await self.engine.signing.submit_signature(
            document_id,
            self.sign_request(grant.session_id, name, email),
            ip_address="203.0.113.7",
            user_agent="pytest",
        )


@pytest.fixture
def flow(engine, email_service, signature_data_url):
    return SigningFlow(engine, email_service, signature_data_url)
