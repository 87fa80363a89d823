"""Tests for payment status transitions."""

import pytest

from slip_payments.database import (
    NotificationTaskRepository,
    PaymentHistoryRepository,
    PaymentRepository,
    PaymentStatus,
)
from slip_payments.exceptions import InvalidStateTransition
from slip_payments.state_machine import PaymentStateMachine, can_transition


@pytest.fixture
def machine(db_session, clock):
    return PaymentStateMachine(db_session, clock=clock, channel="log")


class TestAllowedEdges:
    def test_forward_edges(self):
        assert can_transition("pending", "awaiting_verification")
        assert can_transition("pending", "expired")
        assert can_transition("awaiting_verification", "matched")
        assert can_transition("awaiting_verification", "mismatched")

    def test_terminal_states_never_left(self):
        for terminal in ("matched", "mismatched", "expired", "failed"):
            for target in ("pending", "awaiting_verification", "matched", "expired"):
                assert not can_transition(terminal, target)

    def test_no_backwards_edge(self):
        assert not can_transition("awaiting_verification", "pending")
        assert not can_transition("pending", "mismatched")


class TestTransition:
    """Tests for applying transitions."""

    async def test_applied_transition_bumps_version_and_records_history(
        self, machine, make_payment, db_session, clock
    ):
        """Test a transition writes the status, bumps the version and logs history."""
        payment = await make_payment()
        assert payment.version == 1

        result = await machine.transition(payment, PaymentStatus.AWAITING_VERIFICATION.value)

        assert result.applied
        assert result.notification is None
        assert payment.status == PaymentStatus.AWAITING_VERIFICATION.value
        assert payment.version == 2
        assert payment.updated_at == clock.now()

        history = await PaymentHistoryRepository(db_session).list_for_payment(payment.id)
        assert [(h.previous_status, h.new_status, h.version) for h in history] == [
            ("pending", "awaiting_verification", 2)
        ]

    async def test_terminal_transition_queues_one_notification(self, machine, make_payment, db_session):
        """Test an expiry queues exactly one expired message."""
        payment = await make_payment()

        result = await machine.transition(payment, PaymentStatus.EXPIRED.value)

        assert result.notification is not None
        tasks = await NotificationTaskRepository(db_session).list_for_payment(payment.id)
        assert len(tasks) == 1
        assert tasks[0].payload_kind == "expired"
        assert tasks[0].channel == "log"
        assert tasks[0].status == "queued"
        assert "has expired" in tasks[0].payload["text"]
        assert "500.00 THB" in tasks[0].payload["text"]

    async def test_mismatch_records_reason(self, machine, make_payment):
        payment = await make_payment()
        await machine.transition(payment, PaymentStatus.AWAITING_VERIFICATION.value)

        result = await machine.transition(
            payment, PaymentStatus.MISMATCHED.value, reason="unresolved_slip_evidence"
        )

        assert result.applied
        assert payment.failure_reason == "unresolved_slip_evidence"
        assert result.notification.payload_kind == "mismatch"

    async def test_stale_version_not_applied(self, machine, make_payment, db_session):
        """Test a writer holding an old version loses and writes nothing."""
        payment = await make_payment()
        await PaymentRepository(db_session).conditional_update(
            payment.id, 1, {"status": PaymentStatus.AWAITING_VERIFICATION.value}
        )

        result = await machine.transition(payment, PaymentStatus.EXPIRED.value, expected_version=1)

        assert not result.applied
        assert payment.status == PaymentStatus.AWAITING_VERIFICATION.value
        assert payment.version == 2
        assert await PaymentHistoryRepository(db_session).list_for_payment(payment.id) == []
        assert await NotificationTaskRepository(db_session).list_for_payment(payment.id) == []

    async def test_invalid_edge_raises(self, machine, make_payment):
        payment = await make_payment()
        await machine.transition(payment, PaymentStatus.EXPIRED.value)

        with pytest.raises(InvalidStateTransition) as exc_info:
            await machine.transition(payment, PaymentStatus.MATCHED.value, slip_id="slip-1")
        assert exc_info.value.status_code == 409

    async def test_matched_requires_slip(self, machine, make_payment):
        payment = await make_payment()
        with pytest.raises(ValueError):
            await machine.transition(payment, PaymentStatus.MATCHED.value)
