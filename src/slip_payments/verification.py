"""Verification of slips against the external provider."""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock
from .config import VerificationPolicy
from .database import Slip, SlipRepository, SlipStatus
from .exceptions import CircuitOpen, ProviderUnavailable
from .providers.base import (
    PermanentFailure,
    ProviderOutcome,
    SlipVerificationProvider,
    TransientFailure,
    VerificationResult,
)
from .resilience import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)

RECEIVER_ACCOUNT_MISMATCH = "receiver_account_mismatch"
SLIP_TOO_OLD = "slip_too_old"

_NON_DIGITS = re.compile(r"\D")


def account_last4(account: Optional[str]) -> str:
    return _NON_DIGITS.sub("", account or "")[-4:]


@dataclass
class VerificationReport:
    """What one ``verify`` call did to a slip."""
    slip_id: str
    status: str
    attempts: int = 0
    result: Optional[VerificationResult] = None
    reason: Optional[str] = None
    skipped: bool = False

    @property
    def verified(self) -> bool:
        return self.status == SlipStatus.VERIFIED.value and not self.skipped


class VerificationClient:
    """Calls the provider for one slip with retry, backoff and circuit breaking.

    Transient failures are retried up to the policy cap; when the cap is hit
    the slip is rejected with ``provider_unavailable``. Permanent failures
    reject the slip at once with the provider's reason. While the breaker is
    open calls are not made and the slip is rejected with ``circuit_open``.
    Both transient rejections are picked up again by the daily sweep.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: SlipVerificationProvider,
        breaker: CircuitBreaker,
        retry_policy: Optional[RetryPolicy] = None,
        policy: Optional[VerificationPolicy] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.provider = provider
        self.breaker = breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self.policy = policy or VerificationPolicy()
        self.clock = clock or Clock()
        self.rng = rng
        self.slips = SlipRepository(session)

    async def _call_provider(self, slip: Slip) -> ProviderOutcome:
        try:
            return await asyncio.wait_for(
                self.provider.verify(slip.image_ref),
                timeout=self.policy.call_timeout,
            )
        except asyncio.TimeoutError:
            return TransientFailure(reason="timeout")
        except Exception as e:
            # Providers report failures as outcomes; anything raised is a connector bug
            logger.exception(f"{type(self.provider).__name__} raised while verifying slip {slip.id}")
            return TransientFailure(reason=f"provider_error: {type(e).__name__}")

    async def verify(
        self,
        slip: Slip,
        claim_from: Sequence[str] = (SlipStatus.PENDING.value,),
        stale_before: Optional[datetime] = None,
    ) -> VerificationReport:
        """Verify a slip and record the verdict on it.

        Args:
            slip: Slip to verify.
            claim_from: Statuses the slip may be claimed from. The claim to
                ``verifying`` is conditional, so a slip already picked up by
                another worker is skipped.
            stale_before: Only claim a slip untouched since this time.

        Returns:
            VerificationReport describing the outcome.
        """
        claimed = await self.slips.claim_status(
            slip.id, claim_from, SlipStatus.VERIFYING.value, self.clock.now(), stale_before
        )
        await self.session.refresh(slip)
        if not claimed:
            logger.info(f"Slip {slip.id} is {slip.status}; verification skipped")
            return VerificationReport(slip_id=slip.id, status=slip.status, skipped=True)

        attempts = 0
        outcome: Optional[ProviderOutcome] = None
        while True:
            if not self.breaker.allow_request():
                outcome = None
                break
            attempts += 1
            outcome = await self._call_provider(slip)
            if not isinstance(outcome, TransientFailure):
                self.breaker.record_success()
                break

            self.breaker.record_failure()
            if not self.retry_policy.has_attempts_left(attempts):
                break
            delay = self.retry_policy.delay_for(attempts, self.rng)
            logger.warning(
                f"Transient provider failure for slip {slip.id} ({outcome.reason}), "
                f"attempt {attempts}/{self.retry_policy.max_attempts}, retrying in {delay:.2f}s"
            )
            await self.clock.sleep(delay)

        slip.retry_count = max(attempts - 1, 0)

        if outcome is None:
            logger.warning(f"Circuit open; slip {slip.id} rejected without calling the provider")
            return await self._reject(slip, CircuitOpen.code, attempts)
        if isinstance(outcome, TransientFailure):
            logger.error(f"Provider unavailable for slip {slip.id} after {attempts} attempts: {outcome.reason}")
            return await self._reject(slip, ProviderUnavailable.code, attempts)
        if isinstance(outcome, PermanentFailure):
            return await self._reject(slip, outcome.reason, attempts)

        result = outcome.result
        check_failure = self._check(result)
        self._record_result(slip, result)
        if check_failure is not None:
            return await self._reject(slip, check_failure, attempts, result)

        now = self.clock.now()
        slip.status = SlipStatus.VERIFIED.value
        slip.verified_at = now
        slip.failure_reason = None
        slip.updated_at = now
        await self.session.flush()

        logger.info(
            f"Slip {slip.id} verified: transaction {result.transaction_ref}, "
            f"{result.amount} {result.currency} settled {result.settled_at.isoformat()}"
        )
        return VerificationReport(
            slip_id=slip.id,
            status=slip.status,
            attempts=attempts,
            result=result,
        )

    def _check(self, result: VerificationResult) -> Optional[str]:
        """Apply the optional receiver-account and slip-age checks."""
        expected = self.policy.receiver_account
        if expected and account_last4(result.receiver_account) != account_last4(expected):
            return RECEIVER_ACCOUNT_MISMATCH

        max_age = self.policy.max_slip_age_days
        if max_age is not None:
            age = self.clock.now() - result.settled_at
            if age.total_seconds() > max_age * 86400:
                return SLIP_TOO_OLD
        return None

    @staticmethod
    def _record_result(slip: Slip, result: VerificationResult) -> None:
        slip.provider_transaction_ref = result.transaction_ref
        slip.verified_amount = result.amount
        slip.currency = result.currency
        slip.settled_at = result.settled_at
        slip.sender_account_hint = result.sender_account_hint
        slip.sender_name = result.sender_name
        slip.provider_response = result.raw

    async def _reject(
        self,
        slip: Slip,
        reason: str,
        attempts: int,
        result: Optional[VerificationResult] = None,
    ) -> VerificationReport:
        slip.status = SlipStatus.REJECTED.value
        slip.failure_reason = reason
        slip.updated_at = self.clock.now()
        await self.session.flush()
        logger.info(f"Slip {slip.id} rejected: {reason}")
        return VerificationReport(
            slip_id=slip.id,
            status=slip.status,
            attempts=attempts,
            result=result,
            reason=reason,
        )
