"""Tests for the repository layer."""

from datetime import datetime, timedelta

import pytest

from slip_payments.database import (
    PaymentRepository,
    ReconciliationRunRepository,
    RunKind,
    SlipRepository,
    SlipStatus,
    TransactionClaimRepository,
)
from slip_payments.exceptions import RunAlreadyActive

NOW = datetime(2024, 4, 30, 10, 0)


class TestPaymentRepository:
    """Tests for PaymentRepository."""

    async def test_create_and_get(self, db_session):
        repo = PaymentRepository(db_session)
        payment = await repo.create(
            member_id="member-1",
            cohort_id="cohort-a",
            expected_amount=50000,
            currency="THB",
            due_date=datetime(2024, 5, 1),
            metadata={"period": "2024-05"},
            created_at=NOW,
        )

        fetched = await repo.get_by_id(payment.id)

        assert fetched.version == 1
        assert fetched.created_at == NOW
        assert fetched.metadata_dict == {"period": "2024-05"}
        assert await repo.get_by_id("missing") is None

    async def test_conditional_update(self, db_session, make_payment):
        payment = await make_payment()
        repo = PaymentRepository(db_session)

        assert await repo.conditional_update(payment.id, 1, {"status": "expired"})
        assert not await repo.conditional_update(payment.id, 1, {"status": "failed"})

        await db_session.refresh(payment)
        assert payment.status == "expired"
        assert payment.version == 2

    async def test_list_overdue_pages(self, db_session, make_payment):
        for n in range(3):
            await make_payment(member_id=f"member-{n}", due_date=datetime(2024, 4, 1 + n))
        await make_payment(member_id="member-late", due_date=datetime(2024, 5, 1))
        repo = PaymentRepository(db_session)

        first = await repo.list_overdue(datetime(2024, 4, 23), limit=2)
        rest = await repo.list_overdue(datetime(2024, 4, 23), limit=2, offset=2)

        assert [p.member_id for p in first + rest] == ["member-0", "member-1", "member-2"]

    async def test_aggregate_for_cohort(self, db_session, make_payment):
        await make_payment(member_id="a", amount=50000, due_date=datetime(2024, 4, 5))
        await make_payment(member_id="b", amount=30000, due_date=datetime(2024, 4, 6))
        await make_payment(member_id="c", amount=50000, due_date=datetime(2024, 5, 6))
        await make_payment(member_id="d", amount=70000, due_date=datetime(2024, 4, 6), cohort_id="cohort-b")
        repo = PaymentRepository(db_session)

        rows = await repo.aggregate_for_cohort("cohort-a", datetime(2024, 4, 1), datetime(2024, 5, 1))

        assert rows == [("pending", "THB", 2, 80000)]
        assert await repo.list_cohorts_due(datetime(2024, 4, 1), datetime(2024, 5, 1)) == [
            "cohort-a",
            "cohort-b",
        ]


class TestSlipRepository:
    """Tests for SlipRepository."""

    async def test_claim_status_is_exclusive(self, db_session):
        repo = SlipRepository(db_session)
        slip = await repo.create("member-1", "member-1/a.png", "image/png", 10, uploaded_at=NOW)

        first = await repo.claim_status(slip.id, ["pending"], "verifying", NOW)
        second = await repo.claim_status(slip.id, ["pending"], "verifying", NOW)

        assert first
        assert not second

    async def test_claim_only_when_stale(self, db_session):
        repo = SlipRepository(db_session)
        slip = await repo.create("member-1", "member-1/a.png", "image/png", 10, uploaded_at=NOW)

        assert not await repo.claim_status(
            slip.id, ["pending"], "verifying", NOW, updated_before=NOW - timedelta(minutes=30)
        )
        assert await repo.claim_status(
            slip.id, ["pending"], "verifying", NOW, updated_before=NOW + timedelta(minutes=1)
        )

    async def test_count_for_payer(self, db_session):
        repo = SlipRepository(db_session)
        await repo.create("member-1", "member-1/a.png", "image/png", 10, uploaded_at=NOW - timedelta(days=2))
        await repo.create("member-1", "member-1/b.png", "image/png", 10, uploaded_at=NOW)

        assert await repo.count_for_payer("member-1", [SlipStatus.PENDING.value]) == 2
        assert await repo.count_for_payer(
            "member-1", [SlipStatus.PENDING.value], uploaded_since=NOW - timedelta(days=1)
        ) == 1
        assert await repo.count_for_payer("member-2", [SlipStatus.PENDING.value]) == 0


class TestTransactionClaims:
    """Tests for the transaction reference dedup table."""

    async def test_first_claim_wins(self, db_session):
        repo = TransactionClaimRepository(db_session)

        assert await repo.claim("TX-1", "slip-a") == "slip-a"
        assert await repo.claim("TX-1", "slip-b") == "slip-a"
        assert await repo.get_owner("TX-1") == "slip-a"

    async def test_release_only_by_owner(self, db_session):
        repo = TransactionClaimRepository(db_session)
        await repo.claim("TX-2", "slip-a")

        assert not await repo.release("TX-2", "slip-b")
        assert await repo.release("TX-2", "slip-a")
        assert await repo.claim("TX-2", "slip-b") == "slip-b"


class TestReconciliationRuns:
    """Tests for run bookkeeping."""

    async def test_one_active_run_per_kind(self, db_session):
        repo = ReconciliationRunRepository(db_session)
        run = await repo.start(RunKind.DAILY.value, NOW)

        with pytest.raises(RunAlreadyActive) as exc_info:
            await repo.start(RunKind.DAILY.value, NOW)
        assert exc_info.value.details["run_id"] == run.id

        await repo.start(RunKind.MONTHLY.value, NOW)

    async def test_finish_releases_kind(self, db_session):
        repo = ReconciliationRunRepository(db_session)
        run = await repo.start(RunKind.DAILY.value, NOW)

        await repo.finish(run, "completed", NOW, items_processed=3, items_failed=0, summary={"ok": 1})

        assert run.active_kind is None
        assert run.summary == {"ok": 1}
        await repo.start(RunKind.DAILY.value, NOW + timedelta(hours=1))

    async def test_abandon_stale(self, db_session):
        repo = ReconciliationRunRepository(db_session)
        run = await repo.start(RunKind.DAILY.value, NOW - timedelta(hours=7))

        count = await repo.abandon_stale(RunKind.DAILY.value, NOW - timedelta(hours=6), NOW)

        assert count == 1
        await db_session.refresh(run)
        assert run.status == "abandoned"
        assert run.active_kind is None

    async def test_finish_keeps_abandoned_status(self, db_session):
        """Test a run abandoned while still working is not reopened as completed by its own finish."""
        repo = ReconciliationRunRepository(db_session)
        run = await repo.start(RunKind.DAILY.value, NOW - timedelta(hours=7))
        await repo.abandon_stale(RunKind.DAILY.value, NOW - timedelta(hours=6), NOW)
        successor = await repo.start(RunKind.DAILY.value, NOW)

        await repo.finish(run, "completed", NOW + timedelta(minutes=5), items_processed=4, items_failed=1)

        assert run.status == "abandoned"
        assert run.completed_at == NOW
        assert run.items_processed == 4
        assert run.items_failed == 1
        active = await repo.get_active(RunKind.DAILY.value)
        assert active.id == successor.id

    async def test_list_recent(self, db_session):
        repo = ReconciliationRunRepository(db_session)
        older = await repo.start(RunKind.DAILY.value, NOW - timedelta(days=1))
        await repo.finish(older, "completed", NOW - timedelta(days=1), 0, 0)
        newer = await repo.start(RunKind.DAILY.value, NOW)
        await repo.start(RunKind.MONTHLY.value, NOW)

        runs = await repo.list_recent(kind=RunKind.DAILY.value)

        assert [r.id for r in runs] == [newer.id, older.id]
        assert len(await repo.list_recent()) == 3
