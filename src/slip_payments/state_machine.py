"""Payment status transitions.

    pending -> awaiting_verification -> matched | mismatched | expired | failed

``pending`` may also go straight to a terminal state. Terminal states are
never left. Every write is conditional on the version the caller read, so
two concurrent writers cannot both move the same payment; the loser gets
``applied=False`` and nothing is written on its behalf. Each terminal
transition queues exactly one notification.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock
from .database import (
    NotificationTask,
    NotificationTaskRepository,
    Payment,
    PaymentHistoryRepository,
    PaymentRepository,
    PaymentStatus,
    PayloadKind,
    Slip,
    SlipRepository,
)
from .exceptions import InvalidStateTransition
from .notifications.messages import render_payload

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PaymentStatus.PENDING.value: frozenset({
        PaymentStatus.AWAITING_VERIFICATION.value,
        PaymentStatus.MATCHED.value,
        PaymentStatus.EXPIRED.value,
        PaymentStatus.FAILED.value,
    }),
    PaymentStatus.AWAITING_VERIFICATION.value: frozenset({
        PaymentStatus.MATCHED.value,
        PaymentStatus.MISMATCHED.value,
        PaymentStatus.EXPIRED.value,
        PaymentStatus.FAILED.value,
    }),
}

PAYLOAD_KIND_FOR_STATUS: Dict[str, str] = {
    PaymentStatus.MATCHED.value: PayloadKind.SUCCESS.value,
    PaymentStatus.MISMATCHED.value: PayloadKind.MISMATCH.value,
    PaymentStatus.EXPIRED.value: PayloadKind.EXPIRED.value,
    PaymentStatus.FAILED.value: PayloadKind.FAILURE.value,
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class TransitionResult:
    applied: bool
    payment: Payment
    notification: Optional[NotificationTask] = None


class PaymentStateMachine:
    """Owns every status change of a Payment."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Optional[Clock] = None,
        channel: str = "line",
    ):
        self.session = session
        self.clock = clock or Clock()
        self.channel = channel
        self.payments = PaymentRepository(session)
        self.slips = SlipRepository(session)
        self.history = PaymentHistoryRepository(session)
        self.notifications = NotificationTaskRepository(session)

    async def transition(
        self,
        payment: Payment,
        target: str,
        expected_version: Optional[int] = None,
        slip_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Move a payment to ``target`` if its version is still the one read.

        Args:
            payment: Payment as read by the caller.
            target: Status to move to.
            expected_version: Version the decision was based on; defaults to
                ``payment.version``.
            slip_id: Slip behind the transition. Required for ``matched``.
            reason: Failure reason recorded for mismatched/failed, and on the
                history entry.

        Returns:
            TransitionResult; ``applied`` is False when another writer moved
            the payment first.

        Raises:
            InvalidStateTransition: If the edge is not allowed from the
                status the caller read.
        """
        current = payment.status
        version = payment.version if expected_version is None else expected_version

        if not can_transition(current, target):
            raise InvalidStateTransition(payment.id, current, target)
        if target == PaymentStatus.MATCHED.value and not slip_id:
            raise ValueError("A matched transition needs the settling slip id")

        now = self.clock.now()
        values = {"status": target, "updated_at": now}
        if target == PaymentStatus.MATCHED.value:
            values["matched_slip_id"] = slip_id
        if target in (PaymentStatus.MISMATCHED.value, PaymentStatus.FAILED.value) and reason:
            values["failure_reason"] = reason

        written = await self.payments.conditional_update(payment.id, version, values)
        await self.session.refresh(payment)

        if not written:
            logger.warning(
                f"Payment {payment.id} moved past version {version} "
                f"(now {payment.status} v{payment.version}); {current} -> {target} not applied"
            )
            return TransitionResult(applied=False, payment=payment)

        await self.history.record(
            payment_id=payment.id,
            previous_status=current,
            new_status=target,
            version=payment.version,
            slip_id=slip_id,
            reason=reason,
            created_at=now,
        )
        logger.info(f"Payment {payment.id} {current} -> {target} (v{payment.version})")

        notification = None
        kind = PAYLOAD_KIND_FOR_STATUS.get(target)
        if kind is not None:
            slip: Optional[Slip] = await self.slips.get_by_id(slip_id) if slip_id else None
            notification = await self.notifications.create(
                payment_id=payment.id,
                payload_kind=kind,
                payload=render_payload(kind, payment, slip, reason),
                recipient=payment.contact_ref,
                channel=self.channel,
                created_at=now,
            )

        return TransitionResult(applied=True, payment=payment, notification=notification)
