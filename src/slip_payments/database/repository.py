"""Repository layer for payment, slip and sweep persistence operations.

Repositories only flush. The owner of the session (the FastAPI dependency,
``session_scope`` or a sweep worker) commits or rolls back.
"""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence, Tuple

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..clock import utcnow
from ..exceptions import RunAlreadyActive
from .models import (
    Payment,
    Slip,
    TransactionClaim,
    PaymentHistory,
    NotificationTask,
    ReconciliationRun,
    PaymentStatus,
    SlipStatus,
    NotificationStatus,
    RunStatus,
    OPEN_PAYMENT_STATUSES,
)

logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for Payment operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        member_id: str,
        cohort_id: str,
        expected_amount: int,
        currency: str,
        due_date: datetime,
        contact_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Payment:
        """Create a new expected payment in ``pending``.

        Args:
            member_id: Member who owes the due.
            cohort_id: Cohort the member belongs to.
            expected_amount: Amount in minor units.
            currency: Three-letter currency code.
            due_date: When the due is expected.
            contact_ref: Optional messaging channel user id of the member.
            metadata: Optional metadata dictionary.
            created_at: Creation time, defaults to now.

        Returns:
            Created Payment instance.
        """
        now = created_at or utcnow()
        payment = Payment(
            member_id=member_id,
            cohort_id=cohort_id,
            expected_amount=expected_amount,
            currency=currency.upper(),
            due_date=due_date,
            contact_ref=contact_ref,
            status=PaymentStatus.PENDING.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        if metadata:
            payment.metadata_dict = metadata

        self.session.add(payment)
        await self.session.flush()

        logger.info(f"Created payment {payment.id} for member {member_id} due {due_date.date()}")
        return payment

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """Get a payment by its ID.

        Args:
            payment_id: Payment ID.

        Returns:
            Payment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def list_open_for_member(self, member_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.member_id == member_id,
                    Payment.status.in_(OPEN_PAYMENT_STATUSES),
                )
            )
            .order_by(Payment.due_date)
        )
        return list(result.scalars().all())

    async def find_candidates(
        self,
        member_id: str,
        currency: str,
        amount: int,
        amount_tolerance: int,
        due_from: datetime,
        due_to: datetime,
    ) -> List[Payment]:
        """Find open payments a verified slip could settle.

        Args:
            member_id: Claimed payer of the slip.
            currency: Currency of the verified amount.
            amount: Verified amount in minor units.
            amount_tolerance: Allowed absolute difference in minor units.
            due_from: Earliest due date accepted (inclusive).
            due_to: Latest due date accepted (inclusive).

        Returns:
            Matching payments ordered by due date.
        """
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.member_id == member_id,
                    Payment.status.in_(OPEN_PAYMENT_STATUSES),
                    Payment.currency == currency.upper(),
                    Payment.expected_amount >= amount - amount_tolerance,
                    Payment.expected_amount <= amount + amount_tolerance,
                    Payment.due_date >= due_from,
                    Payment.due_date <= due_to,
                )
            )
            .order_by(Payment.due_date, Payment.id)
        )
        return list(result.scalars().all())

    async def conditional_update(
        self,
        payment_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """Apply ``values`` and bump the version only if the version is unchanged.

        Args:
            payment_id: Payment ID.
            expected_version: Version the caller read.
            values: Column values to write.

        Returns:
            True if the row was written, False if the version had moved.
        """
        result = await self.session.execute(
            update(Payment)
            .where(
                and_(
                    Payment.id == payment_id,
                    Payment.version == expected_version,
                )
            )
            .values(version=Payment.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def list_overdue(
        self,
        due_before: datetime,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Payment]:
        """List open payments whose due date is before the cutoff."""
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.status.in_(OPEN_PAYMENT_STATUSES),
                    Payment.due_date < due_before,
                )
            )
            .order_by(Payment.due_date, Payment.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_cohorts_due(self, due_from: datetime, due_to: datetime) -> List[str]:
        """List cohorts with at least one payment due in ``[due_from, due_to)``."""
        result = await self.session.execute(
            select(Payment.cohort_id)
            .where(
                and_(
                    Payment.due_date >= due_from,
                    Payment.due_date < due_to,
                )
            )
            .distinct()
            .order_by(Payment.cohort_id)
        )
        return list(result.scalars().all())

    async def aggregate_for_cohort(
        self,
        cohort_id: str,
        due_from: datetime,
        due_to: datetime,
    ) -> List[Tuple[str, str, int, int]]:
        """Count and sum a cohort's payments due in ``[due_from, due_to)``.

        Returns:
            Rows of (status, currency, count, total_amount).
        """
        result = await self.session.execute(
            select(
                Payment.status,
                Payment.currency,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.expected_amount), 0),
            )
            .where(
                and_(
                    Payment.cohort_id == cohort_id,
                    Payment.due_date >= due_from,
                    Payment.due_date < due_to,
                )
            )
            .group_by(Payment.status, Payment.currency)
            .order_by(Payment.currency, Payment.status)
        )
        return [(row[0], row[1], int(row[2]), int(row[3])) for row in result.all()]


class SlipRepository:
    """Repository for Slip operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        claimed_payer_id: str,
        image_ref: str,
        content_type: str,
        size_bytes: int,
        uploaded_at: Optional[datetime] = None,
    ) -> Slip:
        """Create a new slip in ``pending``.

        Args:
            claimed_payer_id: Member the uploader claims to pay for.
            image_ref: Blob store reference of the image.
            content_type: MIME type of the image.
            size_bytes: Image size.
            uploaded_at: Upload time, defaults to now.

        Returns:
            Created Slip instance.
        """
        now = uploaded_at or utcnow()
        slip = Slip(
            claimed_payer_id=claimed_payer_id,
            image_ref=image_ref,
            content_type=content_type,
            size_bytes=size_bytes,
            status=SlipStatus.PENDING.value,
            uploaded_at=now,
            updated_at=now,
        )
        self.session.add(slip)
        await self.session.flush()

        logger.info(f"Created slip {slip.id} for payer {claimed_payer_id}")
        return slip

    async def get_by_id(self, slip_id: str) -> Optional[Slip]:
        result = await self.session.execute(
            select(Slip).where(Slip.id == slip_id)
        )
        return result.scalar_one_or_none()

    async def claim_status(
        self,
        slip_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        now: datetime,
        updated_before: Optional[datetime] = None,
    ) -> bool:
        """Move a slip to ``to_status`` only if it is in one of ``from_statuses``.

        Args:
            slip_id: Slip ID.
            from_statuses: Statuses the slip may currently be in.
            to_status: Status to move to.
            now: Update timestamp.
            updated_before: If set, only claim a slip untouched since this time.

        Returns:
            True if this caller won the claim.
        """
        conditions = [
            Slip.id == slip_id,
            Slip.status.in_(list(from_statuses)),
        ]
        if updated_before is not None:
            conditions.append(Slip.updated_at < updated_before)
        result = await self.session.execute(
            update(Slip)
            .where(and_(*conditions))
            .values(status=to_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def list_stale(
        self,
        statuses: Sequence[str],
        updated_before: datetime,
        limit: int = 200,
    ) -> List[Slip]:
        """List slips stuck in the given statuses since before the cutoff."""
        result = await self.session.execute(
            select(Slip)
            .where(
                and_(
                    Slip.status.in_(list(statuses)),
                    Slip.updated_at < updated_before,
                )
            )
            .order_by(Slip.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_retryable_rejections(
        self,
        reasons: Sequence[str],
        max_reverify_attempts: int,
        limit: int = 200,
    ) -> List[Slip]:
        """List slips rejected for transient reasons that still have sweep attempts left."""
        result = await self.session.execute(
            select(Slip)
            .where(
                and_(
                    Slip.status == SlipStatus.REJECTED.value,
                    Slip.failure_reason.in_(list(reasons)),
                    Slip.reverify_attempts < max_reverify_attempts,
                )
            )
            .order_by(Slip.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_payer(
        self,
        claimed_payer_id: str,
        statuses: Sequence[str],
        failure_reasons: Optional[Sequence[str]] = None,
        uploaded_since: Optional[datetime] = None,
    ) -> int:
        """Count the payer's slips in the given statuses (and failure reasons)."""
        conditions = [
            Slip.claimed_payer_id == claimed_payer_id,
            Slip.status.in_(list(statuses)),
        ]
        if failure_reasons is not None:
            conditions.append(Slip.failure_reason.in_(list(failure_reasons)))
        if uploaded_since is not None:
            conditions.append(Slip.uploaded_at >= uploaded_since)
        result = await self.session.execute(
            select(func.count(Slip.id)).where(and_(*conditions))
        )
        return int(result.scalar_one())

    async def summarize_uploads(self, since: datetime, until: datetime) -> List[Tuple[str, int, int]]:
        """Count slips uploaded in ``(since, until]`` by their current status.

        Returns:
            Rows of (status, count, total verified amount).
        """
        result = await self.session.execute(
            select(
                Slip.status,
                func.count(Slip.id),
                func.coalesce(func.sum(Slip.verified_amount), 0),
            )
            .where(and_(Slip.uploaded_at > since, Slip.uploaded_at <= until))
            .group_by(Slip.status)
            .order_by(Slip.status)
        )
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]

    async def list_by_payer(self, claimed_payer_id: str, limit: int = 50) -> List[Slip]:
        result = await self.session.execute(
            select(Slip)
            .where(Slip.claimed_payer_id == claimed_payer_id)
            .order_by(Slip.uploaded_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class TransactionClaimRepository:
    """Repository for the provider transaction reference dedup table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(TransactionClaim)
        if dialect == "sqlite":
            return sqlite.insert(TransactionClaim)
        raise RuntimeError(f"Unsupported database dialect for transaction claims: {dialect}")

    async def claim(self, provider_transaction_ref: str, slip_id: str) -> str:
        """Claim a transaction reference for a slip.

        The insert is a no-op when the reference is already claimed, so
        concurrent claimants all read back the same single owner.

        Args:
            provider_transaction_ref: Provider's transaction identifier.
            slip_id: Slip attempting the claim.

        Returns:
            ID of the slip that owns the reference.
        """
        stmt = self._insert().values(
            provider_transaction_ref=provider_transaction_ref,
            slip_id=slip_id,
            claimed_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["provider_transaction_ref"])
        await self.session.execute(stmt)

        result = await self.session.execute(
            select(TransactionClaim.slip_id).where(
                TransactionClaim.provider_transaction_ref == provider_transaction_ref
            )
        )
        return result.scalar_one()

    async def release(self, provider_transaction_ref: str, slip_id: str) -> bool:
        """Drop a claim held by ``slip_id`` so a later slip may settle the transfer."""
        result = await self.session.execute(
            delete(TransactionClaim).where(
                and_(
                    TransactionClaim.provider_transaction_ref == provider_transaction_ref,
                    TransactionClaim.slip_id == slip_id,
                )
            )
        )
        await self.session.flush()
        return result.rowcount == 1

    async def get_owner(self, provider_transaction_ref: str) -> Optional[str]:
        result = await self.session.execute(
            select(TransactionClaim.slip_id).where(
                TransactionClaim.provider_transaction_ref == provider_transaction_ref
            )
        )
        return result.scalar_one_or_none()


class PaymentHistoryRepository:
    """Repository for PaymentHistory operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        payment_id: str,
        previous_status: str,
        new_status: str,
        version: int,
        slip_id: Optional[str] = None,
        reason: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> PaymentHistory:
        """Record a status transition.

        Args:
            payment_id: Payment ID.
            previous_status: Status before the transition.
            new_status: Status after the transition.
            version: Payment version after the transition.
            slip_id: Slip that caused the transition, if any.
            reason: Failure reason or note.
            created_at: Transition time, defaults to now.

        Returns:
            Created PaymentHistory instance.
        """
        entry = PaymentHistory(
            payment_id=payment_id,
            previous_status=previous_status,
            new_status=new_status,
            version=version,
            slip_id=slip_id,
            reason=reason,
            created_at=created_at or utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_payment(self, payment_id: str) -> List[PaymentHistory]:
        result = await self.session.execute(
            select(PaymentHistory)
            .where(PaymentHistory.payment_id == payment_id)
            .order_by(PaymentHistory.version)
        )
        return list(result.scalars().all())

    async def count_transitions(self, payment_id: str, new_status: str) -> int:
        result = await self.session.execute(
            select(func.count(PaymentHistory.id)).where(
                and_(
                    PaymentHistory.payment_id == payment_id,
                    PaymentHistory.new_status == new_status,
                )
            )
        )
        return int(result.scalar_one())


class NotificationTaskRepository:
    """Repository for NotificationTask operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        payment_id: Optional[str],
        payload_kind: str,
        payload: Dict[str, Any],
        recipient: Optional[str] = None,
        channel: str = "line",
        created_at: Optional[datetime] = None,
        run_id: Optional[str] = None,
    ) -> NotificationTask:
        """Queue a message for a payment, or for a run when ``payment_id`` is None."""
        task = NotificationTask(
            payment_id=payment_id,
            run_id=run_id,
            payload_kind=payload_kind,
            recipient=recipient,
            channel=channel,
            status=NotificationStatus.QUEUED.value,
            attempts=0,
            created_at=created_at or utcnow(),
        )
        task.payload = payload
        self.session.add(task)
        await self.session.flush()

        owner = f"payment {payment_id}" if payment_id else f"run {run_id}"
        logger.info(f"Queued {payload_kind} notification {task.id} for {owner}")
        return task

    async def get_by_id(self, task_id: str) -> Optional[NotificationTask]:
        result = await self.session.execute(
            select(NotificationTask).where(NotificationTask.id == task_id)
        )
        return result.scalar_one_or_none()

    async def list_queued(self, limit: int = 100) -> List[NotificationTask]:
        result = await self.session.execute(
            select(NotificationTask)
            .where(NotificationTask.status == NotificationStatus.QUEUED.value)
            .order_by(NotificationTask.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_payment(self, payment_id: str) -> List[NotificationTask]:
        result = await self.session.execute(
            select(NotificationTask)
            .where(NotificationTask.payment_id == payment_id)
            .order_by(NotificationTask.created_at)
        )
        return list(result.scalars().all())

    async def list_for_run(self, run_id: str) -> List[NotificationTask]:
        result = await self.session.execute(
            select(NotificationTask)
            .where(NotificationTask.run_id == run_id)
            .order_by(NotificationTask.created_at)
        )
        return list(result.scalars().all())


class ReconciliationRunRepository:
    """Repository for ReconciliationRun operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active(self, kind: str) -> Optional[ReconciliationRun]:
        result = await self.session.execute(
            select(ReconciliationRun).where(ReconciliationRun.active_kind == kind)
        )
        return result.scalar_one_or_none()

    async def start(
        self,
        kind: str,
        started_at: datetime,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ReconciliationRun:
        """Open a run of the given kind.

        Raises:
            RunAlreadyActive: If a run of this kind is still in progress.
        """
        active = await self.get_active(kind)
        if active is not None:
            raise RunAlreadyActive(
                f"A {kind} run is already active",
                {"run_id": active.id, "started_at": active.started_at.isoformat()},
            )

        run = ReconciliationRun(
            kind=kind,
            status=RunStatus.RUNNING.value,
            active_kind=kind,
            started_at=started_at,
            period_start=period_start,
            period_end=period_end,
        )
        self.session.add(run)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Lost the race against a concurrent start of the same kind
            raise RunAlreadyActive(f"A {kind} run is already active") from e
        return run

    async def finish(
        self,
        run: ReconciliationRun,
        status: str,
        completed_at: datetime,
        items_processed: int,
        items_failed: int,
        summary: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ReconciliationRun:
        """Close a run and release its kind for the next run.

        A run already closed as abandoned keeps that status; only its
        counters and summary are recorded.
        """
        counters = {"items_processed": items_processed, "items_failed": items_failed}
        if summary is not None:
            counters["summary_json"] = json.dumps(summary, default=str)

        result = await self.session.execute(
            update(ReconciliationRun)
            .where(
                and_(
                    ReconciliationRun.id == run.id,
                    ReconciliationRun.active_kind == run.kind,
                )
            )
            .values(
                status=status,
                active_kind=None,
                completed_at=completed_at,
                error_message=error_message,
                **counters,
            )
            .execution_options(synchronize_session=False)
        )
        closed = result.rowcount > 0
        if not closed:
            await self.session.execute(
                update(ReconciliationRun)
                .where(ReconciliationRun.id == run.id)
                .values(**counters)
                .execution_options(synchronize_session=False)
            )
        await self.session.flush()
        await self.session.refresh(run)
        if not closed:
            logger.warning(
                f"{run.kind.capitalize()} run {run.id} was closed as {run.status} before it "
                f"finished; keeping that status"
            )
        return run

    async def abandon_stale(self, kind: str, started_before: datetime, now: datetime) -> int:
        """Close active runs of ``kind`` started before the cutoff as abandoned.

        Returns:
            Number of runs abandoned.
        """
        result = await self.session.execute(
            update(ReconciliationRun)
            .where(
                and_(
                    ReconciliationRun.active_kind == kind,
                    ReconciliationRun.started_at < started_before,
                )
            )
            .values(
                status=RunStatus.ABANDONED.value,
                active_kind=None,
                completed_at=now,
                error_message="abandoned: run exceeded the stale threshold",
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        if result.rowcount:
            logger.warning(f"Abandoned {result.rowcount} stale {kind} run(s)")
        return result.rowcount

    async def get_by_id(self, run_id: str) -> Optional[ReconciliationRun]:
        result = await self.session.execute(
            select(ReconciliationRun).where(ReconciliationRun.id == run_id)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, kind: Optional[str] = None, limit: int = 20) -> List[ReconciliationRun]:
        stmt = select(ReconciliationRun)
        if kind:
            stmt = stmt.where(ReconciliationRun.kind == kind)
        result = await self.session.execute(
            stmt.order_by(ReconciliationRun.started_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
