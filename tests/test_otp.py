"""
Tests for email OTP challenges and session grants.
"""
import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from studiosign.exceptions import (
    ChallengeAttemptsExhausted,
    ChallengeExpired,
    ChallengeMismatch,
    ChallengeNotFound,
    DeliveryFailure,
    ExpiredToken,
    InvalidToken,
    RateLimitException,
    TokenAlreadyConsumed,
    ValidationFailure,
)
from studiosign.models import AuditAction, ChallengeState, ContractStatus, SignerStatus
from studiosign.services.otp import SessionGrant
from studiosign.utils.datetime_utils import utc_now
from studiosign.utils.logging import fingerprint


async def send_contract(engine, contract_request):
    contract = engine.contracts.create(contract_request)
    sent = await engine.contracts.send(contract.id)
    return contract, sent.links[0].url.rsplit("/", 1)[1]


def actions(engine, document_id):
    return [e.action for e in engine.audit.chronological(document_id)]


class TestRequestChallenge:
    """Tests for requesting a code."""

    @pytest.mark.asyncio
    async def test_code_emailed_and_hashed(self, engine, store, email_service, contract_request):
        """The code goes to the recipient; only its HMAC is stored."""
        contract, token = await send_contract(engine, contract_request)

        issued = await engine.otp.request_challenge(token, "jana@example.com")

        code = email_service.codes[-1]
        assert len(code) == 6 and code.isdigit()
        assert email_service.messages[-1]["to"] == "jana@example.com"
        challenge = store._challenges[issued.challenge_id]
        assert challenge.code_hash != code
        assert challenge.state == ChallengeState.ACTIVE
        assert AuditAction.OTP_REQUESTED in actions(engine, contract.id)

    @pytest.mark.asyncio
    async def test_ten_minute_lifetime(self, engine, contract_request):
        _, token = await send_contract(engine, contract_request)
        issued = await engine.otp.request_challenge(token, "jana@example.com")

        ttl = issued.expires_at - utc_now()
        assert timedelta(minutes=9, seconds=55) < ttl <= timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_email_must_match_recipient(self, engine, email_service, contract_request):
        """A different address gets no code."""
        _, token = await send_contract(engine, contract_request)
        sent_before = len(email_service.messages)

        with pytest.raises(ValidationFailure):
            await engine.otp.request_challenge(token, "someone@example.com")
        assert len(email_service.messages) == sent_before

    @pytest.mark.asyncio
    async def test_email_match_ignores_case(self, engine, contract_request):
        _, token = await send_contract(engine, contract_request)
        issued = await engine.otp.request_challenge(token, " JANA@Example.com ")
        assert issued.challenge_id

    @pytest.mark.asyncio
    async def test_unknown_token(self, engine):
        with pytest.raises(InvalidToken):
            await engine.otp.request_challenge("f" * 64, "jana@example.com")

    @pytest.mark.asyncio
    async def test_rate_limited_per_token(self, engine, contract_request):
        """Five requests per window, the sixth is refused."""
        _, token = await send_contract(engine, contract_request)
        for _ in range(5):
            await engine.otp.request_challenge(token, "jana@example.com")

        with pytest.raises(RateLimitException):
            await engine.otp.request_challenge(token, "jana@example.com")

    @pytest.mark.asyncio
    async def test_delivery_failure_burns_challenge(self, engine, store, email_service, contract_request):
        """If the code cannot be emailed the challenge is unusable and the caller is told."""
        _, token = await send_contract(engine, contract_request)
        email_service.fail = True

        with pytest.raises(DeliveryFailure):
            await engine.otp.request_challenge(token, "jana@example.com")

        assert all(c.state == ChallengeState.BURNED for c in store._challenges.values())

    @pytest.mark.asyncio
    async def test_expired_document(self, engine, store, contract_request):
        """A document past its deadline expires on access and the link reports it."""
        contract, token = await send_contract(engine, contract_request)
        store._documents[contract.kind][contract.id].expires_at = utc_now() - timedelta(minutes=1)

        with pytest.raises(ExpiredToken):
            await engine.otp.request_challenge(token, "jana@example.com")

        assert engine.contracts.get(contract.id).status == ContractStatus.EXPIRED


class TestVerify:
    """Tests for exchanging a code for a session."""

    @pytest.mark.asyncio
    async def test_correct_code_grants_session(self, engine, store, email_service, contract_request):
        contract, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")

        grant = await engine.otp.verify(token, email_service.codes[-1], ip_address="203.0.113.7")

        assert grant.document_id == contract.id
        assert store.get_session(grant.session_id) is not None
        assert engine.contracts.get(contract.id).status == ContractStatus.VIEWED
        trail = actions(engine, contract.id)
        assert trail.index(AuditAction.OTP_VERIFIED) < trail.index(AuditAction.VIEWED)

    @pytest.mark.asyncio
    async def test_session_lasts_24_hours(self, engine, email_service, contract_request):
        _, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")
        grant = await engine.otp.verify(token, email_service.codes[-1])

        ttl = grant.expires_at - utc_now()
        assert timedelta(hours=23, minutes=59) < ttl <= timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_session_capped_by_deadline(self, engine, email_service, contract_request):
        deadline = utc_now() + timedelta(hours=3)
        contract_request.expires_at = deadline
        _, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")

        grant = await engine.otp.verify(token, email_service.codes[-1])
        assert grant.expires_at == deadline

    @pytest.mark.asyncio
    async def test_token_consumed_after_verification(self, engine, email_service, contract_request):
        """The magic link is single use."""
        _, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")
        await engine.otp.verify(token, email_service.codes[-1])

        with pytest.raises(TokenAlreadyConsumed):
            await engine.otp.request_challenge(token, "jana@example.com")
        with pytest.raises(TokenAlreadyConsumed):
            await engine.otp.verify(token, email_service.codes[-1])

    @pytest.mark.asyncio
    async def test_no_challenge(self, engine, contract_request):
        _, token = await send_contract(engine, contract_request)
        with pytest.raises(ChallengeNotFound):
            await engine.otp.verify(token, "123456")

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempts(self, engine, contract_request):
        contract, token = await send_contract(engine, contract_request)
        with patch("studiosign.services.otp.generate_numeric_code", return_value="111111"):
            await engine.otp.request_challenge(token, "jana@example.com")

        with pytest.raises(ChallengeMismatch) as exc_info:
            await engine.otp.verify(token, "222222")

        assert exc_info.value.attempts_remaining == 4
        assert exc_info.value.details == {"attemptsRemaining": 4}
        assert AuditAction.OTP_FAILED in actions(engine, contract.id)

    @pytest.mark.asyncio
    async def test_exhausted_after_five_failures(self, engine, store, contract_request):
        """After five wrong codes even the right one is refused and the challenge is burned."""
        _, token = await send_contract(engine, contract_request)
        with patch("studiosign.services.otp.generate_numeric_code", return_value="111111"):
            issued = await engine.otp.request_challenge(token, "jana@example.com")

        remaining = []
        for _ in range(5):
            with pytest.raises(ChallengeMismatch) as exc_info:
                await engine.otp.verify(token, "999999")
            remaining.append(exc_info.value.attempts_remaining)
        assert remaining == [4, 3, 2, 1, 0]

        with pytest.raises(ChallengeAttemptsExhausted):
            await engine.otp.verify(token, "111111")
        assert store._challenges[issued.challenge_id].state == ChallengeState.BURNED

        with pytest.raises(ChallengeNotFound):
            await engine.otp.verify(token, "111111")

    @pytest.mark.asyncio
    async def test_expired_code_refused_even_if_correct(self, engine, store, contract_request):
        _, token = await send_contract(engine, contract_request)
        with patch("studiosign.services.otp.generate_numeric_code", return_value="111111"):
            issued = await engine.otp.request_challenge(token, "jana@example.com")
        store._challenges[issued.challenge_id].expires_at = utc_now() - timedelta(seconds=1)

        with pytest.raises(ChallengeExpired):
            await engine.otp.verify(token, "111111")

    @pytest.mark.asyncio
    async def test_latest_challenge_wins(self, engine, store, contract_request):
        """Requesting again supersedes the earlier code."""
        _, token = await send_contract(engine, contract_request)
        with patch("studiosign.services.otp.generate_numeric_code", side_effect=["111111", "222222"]):
            first = await engine.otp.request_challenge(token, "jana@example.com")
            await engine.otp.request_challenge(token, "jana@example.com")

        assert store._challenges[first.challenge_id].state == ChallengeState.SUPERSEDED
        with pytest.raises(ChallengeMismatch):
            await engine.otp.verify(token, "111111")

        grant = await engine.otp.verify(token, "222222")
        assert grant.session_id

    @pytest.mark.asyncio
    async def test_rate_limit_reset_after_success(self, engine, email_service, contract_request):
        """A successful verification refills the request bucket for the token."""
        _, token = await send_contract(engine, contract_request)
        for _ in range(4):
            await engine.otp.request_challenge(token, "jana@example.com")
        key = fingerprint(engine.tokens.hash(token))
        assert engine.otp.rate_limiter.get_remaining(key) == 1

        await engine.otp.verify(token, email_service.codes[-1])
        assert engine.otp.rate_limiter.get_remaining(key) == 5


class TestEnvelopeSignerVerification:
    """OTP for envelope signers binds the session to the signer."""

    @pytest.mark.asyncio
    async def test_signer_marked_viewed(self, engine, email_service, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(envelope.id)
        token = email_service.last_token_for("anna@example.com")

        await engine.otp.request_challenge(token, "anna@example.com")
        grant = await engine.otp.verify(token, email_service.codes[-1])

        anna = next(s for s in engine.envelopes.signers(envelope.id) if s.email == "anna@example.com")
        assert grant.signer_id == anna.id
        assert anna.status == SignerStatus.VIEWED
        assert anna.viewed_at is not None

    @pytest.mark.asyncio
    async def test_other_signers_email_refused(self, engine, email_service, envelope_request):
        envelope = engine.envelopes.create(envelope_request)
        await engine.envelopes.send(envelope.id)
        token = email_service.last_token_for("anna@example.com")

        with pytest.raises(ValidationFailure):
            await engine.otp.request_challenge(token, "petr@example.com")


class TestConcurrentVerify:
    """Two submissions of the same code race for one session."""

    @pytest.mark.asyncio
    async def test_one_grant_per_link(self, engine, email_service, contract_request):
        contract, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")
        code = email_service.codes[-1]

        results = await asyncio.gather(
            engine.otp.verify(token, code),
            engine.otp.verify(token, code),
            return_exceptions=True,
        )

        assert sum(isinstance(r, SessionGrant) for r in results) == 1
        assert sum(isinstance(r, TokenAlreadyConsumed) for r in results) == 1
        assert actions(engine, contract.id).count(AuditAction.OTP_VERIFIED) == 1

    @pytest.mark.asyncio
    async def test_stale_challenge_read_loses(self, engine, store, email_service, contract_request):
        """A caller that read the challenge before it was consumed cannot consume it again."""
        contract, token = await send_contract(engine, contract_request)
        await engine.otp.request_challenge(token, "jana@example.com")
        code = email_service.codes[-1]
        validation = engine.tokens.require_valid(token)
        stale = store.get_active_challenge(validation.token_hash)

        await engine.otp.verify(token, code)

        with patch.object(engine.tokens, "require_valid", return_value=validation), \
                patch.object(store, "get_active_challenge", return_value=stale):
            with pytest.raises(TokenAlreadyConsumed):
                await engine.otp.verify(token, code)

        assert actions(engine, contract.id).count(AuditAction.OTP_VERIFIED) == 1
