"""Tests for slip verification with retry and circuit breaking."""

import asyncio
from datetime import datetime

import pytest

from slip_payments.config import VerificationPolicy
from slip_payments.database import SlipRepository, SlipStatus
from slip_payments.providers import TransientFailure
from slip_payments.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState, RetryPolicy
from slip_payments.verification import VerificationClient, account_last4

from conftest import slip_image

SETTLED = datetime(2024, 4, 30, 9, 15)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test-provider", CircuitBreakerConfig(failure_threshold=5), clock)


@pytest.fixture
def client(db_session, provider, breaker, clock):
    return VerificationClient(
        db_session,
        provider=provider,
        breaker=breaker,
        retry_policy=RetryPolicy(max_attempts=5, base_delay=0.5, multiplier=2.0, jitter=0.0),
        clock=clock,
    )


async def _slip(db_session, upload, tag):
    slip_id = await upload(tag)
    return await SlipRepository(db_session).get_by_id(slip_id)


class TestVerify:
    """Tests for the verification outcomes."""

    async def test_success_records_provider_data(self, client, provider, upload, db_session, clock):
        """Test a verified slip carries the provider's transaction data."""
        provider.succeed(slip_image("ok"), "TX-1", 50000, SETTLED)
        slip = await _slip(db_session, upload, "ok")

        report = await client.verify(slip)

        assert report.verified
        assert report.attempts == 1
        assert slip.status == SlipStatus.VERIFIED.value
        assert slip.provider_transaction_ref == "TX-1"
        assert slip.verified_amount == 50000
        assert slip.currency == "THB"
        assert slip.settled_at == SETTLED
        assert slip.verified_at == clock.now()
        assert slip.sender_account_hint == "xxx-x-x1234-x"
        assert slip.retry_count == 0

    async def test_three_transient_failures_then_success(self, client, provider, upload, db_session, clock):
        """Test three transient failures below the cap of five end verified on attempt four."""
        provider.succeed(slip_image("flaky"), "TX-2", 50000, SETTLED, after_transient=3)
        slip = await _slip(db_session, upload, "flaky")

        report = await client.verify(slip)

        assert slip.status == SlipStatus.VERIFIED.value
        assert report.attempts == 4
        assert slip.retry_count == 3
        assert clock.sleeps == [0.5, 1.0, 2.0]

    async def test_retry_cap_rejects_provider_unavailable(self, db_session, provider, clock, upload):
        """Test exhausting the retry cap rejects the slip as provider_unavailable."""
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=10), clock)
        client = VerificationClient(
            db_session,
            provider=provider,
            breaker=breaker,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5, jitter=0.0),
            clock=clock,
        )
        provider.fail_transiently(slip_image("down"), times=1, reason="http_503")
        slip = await _slip(db_session, upload, "down")

        report = await client.verify(slip)

        assert slip.status == SlipStatus.REJECTED.value
        assert slip.failure_reason == "provider_unavailable"
        assert report.attempts == 3
        assert len(provider.calls) == 3

    async def test_permanent_failure_not_retried(self, client, provider, upload, db_session, clock):
        """Test a provider refusal rejects immediately with the provider's reason."""
        provider.reject(slip_image("fake"), reason="slip_not_found")
        slip = await _slip(db_session, upload, "fake")

        report = await client.verify(slip)

        assert slip.status == SlipStatus.REJECTED.value
        assert slip.failure_reason == "slip_not_found"
        assert report.attempts == 1
        assert clock.sleeps == []

    async def test_slip_already_claimed_is_skipped(self, client, provider, upload, db_session):
        """Test a slip already in verifying is not verified twice."""
        provider.succeed(slip_image("busy"), "TX-3", 50000, SETTLED)
        slip = await _slip(db_session, upload, "busy")
        slip.status = SlipStatus.VERIFYING.value
        await db_session.flush()

        report = await client.verify(slip)

        assert report.skipped
        assert not report.verified
        assert provider.calls == []

    async def test_provider_timeout_is_transient(self, db_session, breaker, clock, upload):
        """Test a call exceeding the timeout counts as a transient failure."""

        class HangingProvider:
            calls = 0

            async def verify(self, image_ref):
                HangingProvider.calls += 1
                await asyncio.sleep(1)

        client = VerificationClient(
            db_session,
            provider=HangingProvider(),
            breaker=breaker,
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0.1, jitter=0.0),
            policy=VerificationPolicy(call_timeout=0.01),
            clock=clock,
        )
        slip = await _slip(db_session, upload, "hang")

        report = await client.verify(slip)

        assert HangingProvider.calls == 2
        assert report.reason == "provider_unavailable"

    async def test_raising_provider_counts_against_breaker(self, db_session, clock, upload):
        """Test a provider that raises is treated as transient and trips the breaker."""

        class BrokenProvider:
            async def verify(self, image_ref):
                raise AttributeError("'list' object has no attribute 'get'")

        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2), clock)
        client = VerificationClient(
            db_session,
            provider=BrokenProvider(),
            breaker=breaker,
            retry_policy=RetryPolicy(max_attempts=5, base_delay=0.5, jitter=0.0),
            clock=clock,
        )
        slip = await _slip(db_session, upload, "broken")

        report = await client.verify(slip)

        assert report.attempts == 2
        assert report.reason == "circuit_open"
        assert breaker.state == CircuitState.OPEN
        assert slip.status == SlipStatus.REJECTED.value


class TestCircuitBreaking:
    """Tests for the breaker around provider calls."""

    async def test_open_circuit_rejects_without_calling(self, client, breaker, provider, upload, db_session):
        """Test an open circuit short-circuits to circuit_open."""
        for _ in range(5):
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        provider.succeed(slip_image("any"), "TX-4", 50000, SETTLED)
        slip = await _slip(db_session, upload, "any")
        report = await client.verify(slip)

        assert slip.status == SlipStatus.REJECTED.value
        assert slip.failure_reason == "circuit_open"
        assert report.attempts == 0
        assert provider.calls == []

    async def test_breaker_opens_mid_retry(self, db_session, provider, clock, upload):
        """Test the breaker opening during retries stops further calls."""
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2), clock)
        client = VerificationClient(
            db_session,
            provider=provider,
            breaker=breaker,
            retry_policy=RetryPolicy(max_attempts=5, base_delay=0.5, jitter=0.0),
            clock=clock,
        )
        provider.fail_transiently(slip_image("storm"), times=1)
        slip = await _slip(db_session, upload, "storm")

        report = await client.verify(slip)

        assert len(provider.calls) == 2
        assert slip.failure_reason == "circuit_open"
        assert report.attempts == 2

    async def test_success_after_cooldown_closes_circuit(self, client, breaker, provider, upload, db_session, clock):
        """Test the first success after the cooldown closes the circuit."""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(31)

        provider.succeed(slip_image("back"), "TX-5", 50000, SETTLED)
        slip = await _slip(db_session, upload, "back")
        await client.verify(slip)

        assert slip.status == SlipStatus.VERIFIED.value
        assert breaker.state == CircuitState.CLOSED


class TestChecks:
    """Tests for the receiver-account and slip-age checks."""

    async def test_receiver_account_mismatch(self, db_session, provider, breaker, clock, upload):
        client = VerificationClient(
            db_session,
            provider=provider,
            breaker=breaker,
            policy=VerificationPolicy(receiver_account="123-4-56789"),
            clock=clock,
        )
        provider.succeed(
            slip_image("elsewhere"), "TX-6", 50000, SETTLED, receiver_account="xxx-x-x1111-x"
        )
        slip = await _slip(db_session, upload, "elsewhere")

        report = await client.verify(slip)

        assert slip.status == SlipStatus.REJECTED.value
        assert slip.failure_reason == "receiver_account_mismatch"
        assert slip.provider_transaction_ref == "TX-6"
        assert report.result is not None

    async def test_receiver_account_last_digits_match(self, db_session, provider, breaker, clock, upload):
        client = VerificationClient(
            db_session,
            provider=provider,
            breaker=breaker,
            policy=VerificationPolicy(receiver_account="123-4-56789"),
            clock=clock,
        )
        provider.succeed(
            slip_image("ours"), "TX-7", 50000, SETTLED, receiver_account="xxx-x-x6789-x"
        )
        slip = await _slip(db_session, upload, "ours")

        await client.verify(slip)

        assert slip.status == SlipStatus.VERIFIED.value

    async def test_slip_too_old(self, db_session, provider, breaker, clock, upload):
        client = VerificationClient(
            db_session,
            provider=provider,
            breaker=breaker,
            policy=VerificationPolicy(max_slip_age_days=7),
            clock=clock,
        )
        provider.succeed(slip_image("old"), "TX-8", 50000, datetime(2024, 4, 1))
        slip = await _slip(db_session, upload, "old")

        await client.verify(slip)

        assert slip.failure_reason == "slip_too_old"

    def test_account_last4(self):
        assert account_last4("xxx-x-x1234-x") == "1234"
        assert account_last4(None) == ""


class TestOutcomeModels:
    def test_transient_failure_kind(self):
        assert TransientFailure(reason="timeout").kind == "transient"
