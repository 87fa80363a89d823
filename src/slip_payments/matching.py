"""Matching of verified slips to the outstanding payment they settle."""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock
from .config import MatchingPolicy
from .database import (
    Payment,
    PaymentRepository,
    PaymentStatus,
    Slip,
    SlipStatus,
    TransactionClaimRepository,
)
from .exceptions import AmbiguousMatch, DuplicateTransaction, InvalidStateTransition, NoMatchingPayment
from .providers.base import VerificationResult
from .state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)

INCONSISTENT_MATCH_RECORD = "inconsistent_match_record"

# Version-conflict retries before giving up as ambiguous
MAX_SEARCHES = 2


class MatchOutcomeKind(str, enum.Enum):
    MATCHED = "matched"
    DUPLICATE = DuplicateTransaction.code
    NO_MATCHING_PAYMENT = NoMatchingPayment.code
    AMBIGUOUS_MATCH = AmbiguousMatch.code


@dataclass
class MatchOutcome:
    kind: MatchOutcomeKind
    slip_id: str
    payment_id: Optional[str] = None
    duplicate_of_slip_id: Optional[str] = None
    candidate_ids: List[str] = field(default_factory=list)
    notification_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.kind == MatchOutcomeKind.MATCHED


class PaymentMatcher:
    """Finds the unique open payment a verified slip settles.

    The provider transaction reference is claimed first; a slip whose
    reference is owned by another slip is a duplicate and touches no payment.
    Otherwise exactly one candidate is matched, zero candidates reject the
    slip with ``no_matching_payment`` and several reject it with
    ``ambiguous_match``. The matcher never picks among several candidates.
    """

    def __init__(
        self,
        session: AsyncSession,
        state_machine: PaymentStateMachine,
        policy: Optional[MatchingPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.state_machine = state_machine
        self.policy = policy or MatchingPolicy()
        self.clock = clock or Clock()
        self.payments = PaymentRepository(session)
        self.claims = TransactionClaimRepository(session)

    def due_window(self, settled_at: datetime):
        """Due dates a slip settled at ``settled_at`` may pay for, inclusive."""
        return (
            settled_at - timedelta(days=self.policy.lookback_days),
            settled_at + timedelta(days=self.policy.lookahead_days),
        )

    async def find_candidates(
        self,
        slip: Slip,
        amount: int,
        currency: str,
        settled_at: datetime,
    ) -> List[Payment]:
        due_from, due_to = self.due_window(settled_at)
        found = await self.payments.find_candidates(
            member_id=slip.claimed_payer_id,
            currency=currency,
            amount=amount,
            amount_tolerance=self.policy.amount_tolerance,
            due_from=due_from,
            due_to=due_to,
        )

        candidates = []
        for payment in found:
            if payment.matched_slip_id is not None:
                # Open payment already pointing at a slip: never match it again
                logger.error(
                    f"Payment {payment.id} is {payment.status} but holds slip "
                    f"{payment.matched_slip_id}; moving it to failed"
                )
                await self.state_machine.transition(
                    payment, PaymentStatus.FAILED.value, reason=INCONSISTENT_MATCH_RECORD
                )
                continue
            candidates.append(payment)
        return candidates

    async def match(self, slip: Slip, result: Optional[VerificationResult] = None) -> MatchOutcome:
        """Settle the payment a verified slip pays for.

        Args:
            slip: Slip in ``verified``.
            result: Provider data; defaults to what verification recorded on the slip.

        Returns:
            MatchOutcome describing the decision.

        Raises:
            InvalidStateTransition: If the slip is not verified.
        """
        if slip.status != SlipStatus.VERIFIED.value:
            raise InvalidStateTransition(slip.id, slip.status, SlipStatus.MATCHED.value)

        transaction_ref = result.transaction_ref if result else slip.provider_transaction_ref
        amount = result.amount if result else slip.verified_amount
        currency = result.currency if result else slip.currency
        settled_at = result.settled_at if result else slip.settled_at

        owner = await self.claims.claim(transaction_ref, slip.id)
        if owner != slip.id:
            return await self._mark_duplicate(slip, owner)

        candidate_ids: List[str] = []
        for search in range(1, MAX_SEARCHES + 1):
            candidates = await self.find_candidates(slip, amount, currency, settled_at)
            candidate_ids = [p.id for p in candidates]

            if not candidates:
                return await self._reject(slip, MatchOutcomeKind.NO_MATCHING_PAYMENT, transaction_ref)
            if len(candidates) > 1:
                return await self._reject(
                    slip, MatchOutcomeKind.AMBIGUOUS_MATCH, transaction_ref, candidate_ids
                )

            payment = candidates[0]
            transition = await self.state_machine.transition(
                payment,
                PaymentStatus.MATCHED.value,
                expected_version=payment.version,
                slip_id=slip.id,
            )
            if transition.applied:
                now = self.clock.now()
                slip.status = SlipStatus.MATCHED.value
                slip.matched_payment_id = payment.id
                slip.updated_at = now
                await self.session.flush()
                logger.info(f"Slip {slip.id} matched payment {payment.id}")
                return MatchOutcome(
                    kind=MatchOutcomeKind.MATCHED,
                    slip_id=slip.id,
                    payment_id=payment.id,
                    candidate_ids=candidate_ids,
                    notification_id=transition.notification.id if transition.notification else None,
                )

            logger.warning(
                f"Version conflict matching slip {slip.id} to payment {payment.id} "
                f"(search {search}/{MAX_SEARCHES})"
            )

        return await self._reject(slip, MatchOutcomeKind.AMBIGUOUS_MATCH, transaction_ref, candidate_ids)

    async def _mark_duplicate(self, slip: Slip, owner_slip_id: str) -> MatchOutcome:
        slip.status = SlipStatus.DUPLICATE.value
        slip.failure_reason = DuplicateTransaction.code
        slip.duplicate_of_slip_id = owner_slip_id
        slip.updated_at = self.clock.now()
        await self.session.flush()
        logger.warning(
            f"Slip {slip.id} duplicates transaction {slip.provider_transaction_ref} "
            f"already held by slip {owner_slip_id}"
        )
        return MatchOutcome(
            kind=MatchOutcomeKind.DUPLICATE,
            slip_id=slip.id,
            duplicate_of_slip_id=owner_slip_id,
        )

    async def _reject(
        self,
        slip: Slip,
        kind: MatchOutcomeKind,
        transaction_ref: str,
        candidate_ids: Optional[List[str]] = None,
    ) -> MatchOutcome:
        # Unmatched slips give the transfer back so a corrected re-upload can settle it
        await self.claims.release(transaction_ref, slip.id)
        slip.status = SlipStatus.REJECTED.value
        slip.failure_reason = kind.value
        slip.updated_at = self.clock.now()
        await self.session.flush()
        logger.warning(
            f"Slip {slip.id} rejected: {kind.value}"
            + (f" (candidates {', '.join(candidate_ids)})" if candidate_ids else "")
        )
        return MatchOutcome(kind=kind, slip_id=slip.id, candidate_ids=candidate_ids or [])
