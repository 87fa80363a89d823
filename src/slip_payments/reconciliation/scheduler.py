"""Daily and monthly reconciliation sweeps."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import (
    NotificationStatus,
    NotificationTaskRepository,
    PayloadKind,
    PaymentRepository,
    PaymentStatus,
    ReconciliationRunRepository,
    RunKind,
    RunStatus,
    SlipRepository,
    SlipStatus,
    session_scope,
)
from ..exceptions import AmbiguousMatch, CircuitOpen, NoMatchingPayment, ProviderUnavailable, RunAlreadyActive
from ..notifications import render_daily_summary, render_monthly_summary
from ..services import PaymentService, PipelineDependencies
from .models import CohortSummary, MonthlySummary, SweepStats, bucket_for_status

logger = logging.getLogger(__name__)

RETRYABLE_REJECTIONS = (ProviderUnavailable.code, CircuitOpen.code)
MATCH_EVIDENCE_REASONS = (NoMatchingPayment.code, AmbiguousMatch.code)
IN_FLIGHT_SLIP_STATUSES = (
    SlipStatus.PENDING.value,
    SlipStatus.VERIFYING.value,
    SlipStatus.VERIFIED.value,
)
UNRESOLVED_SLIP_EVIDENCE = "unresolved_slip_evidence"
SUMMARY_WINDOW = timedelta(days=1)
VERIFIED_SLIP_STATUSES = (SlipStatus.VERIFIED.value, SlipStatus.MATCHED.value)
REJECTED_SLIP_STATUSES = (SlipStatus.REJECTED.value, SlipStatus.DUPLICATE.value)

ItemWorker = Callable[[AsyncSession, Any, SweepStats], Awaitable[None]]


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """First instant of the month and of the month after."""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def previous_month(now: datetime) -> Tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


class ReconciliationScheduler:
    """Runs the reconciliation sweeps.

    At most one run of each kind is active at a time; a second start raises
    ``RunAlreadyActive``. Every item of a sweep runs in its own session
    through a bounded worker pool, so one failing item is logged and counted
    without stopping the others. Setting ``stop_event`` makes the sweep stop
    picking up items and close the run as ``cancelled``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        deps: PipelineDependencies,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.session_factory = session_factory
        self.deps = deps
        self.clock = deps.clock
        self.policy = deps.settings.sweep
        self.stop_event = stop_event or asyncio.Event()

        self.concurrency = max(1, self.policy.concurrency)
        bind = session_factory.kw.get("bind")
        if bind is not None and bind.dialect.name == "sqlite":
            # SQLite engines share a single connection
            self.concurrency = 1

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    async def _open_run(
        self,
        kind: RunKind,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> SweepStats:
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            await ReconciliationRunRepository(session).abandon_stale(
                kind.value, now - self.policy.run_stale_after, now
            )

        try:
            async with session_scope(self.session_factory) as session:
                run = await ReconciliationRunRepository(session).start(
                    kind.value, now, period_start, period_end
                )
                run_id = run.id
        except RunAlreadyActive:
            logger.warning(f"Refusing to start {kind.value} run: another one is active")
            raise

        logger.info(f"Started {kind.value} run {run_id}")
        return SweepStats(run_id=run_id, kind=kind, started_at=now)

    async def _close_run(
        self,
        stats: SweepStats,
        status: RunStatus,
        summary: Optional[dict] = None,
    ) -> None:
        stats.status = status
        stats.completed_at = self.clock.now()
        async with session_scope(self.session_factory) as session:
            repo = ReconciliationRunRepository(session)
            run = await repo.get_by_id(stats.run_id)
            run = await repo.finish(
                run,
                status=status.value,
                completed_at=stats.completed_at,
                items_processed=stats.items_processed,
                items_failed=stats.items_failed,
                summary=summary if summary is not None else stats.to_summary_dict(),
                error_message=stats.error_message,
            )
            stats.status = RunStatus(run.status)
        logger.info(
            f"{stats.kind.value.capitalize()} run {stats.run_id} {stats.status.value}: "
            f"{stats.items_processed} processed, {stats.items_failed} failed"
        )

    async def _run_items(
        self,
        items: Sequence[Any],
        worker: ItemWorker,
        stats: SweepStats,
        label: str,
    ) -> List[Any]:
        """Run ``worker`` for every item, each in its own session.

        Returns:
            The items whose worker raised.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        failed: List[Any] = []

        async def run_one(item: Any) -> None:
            async with semaphore:
                if self.stopped:
                    stats.items_skipped += 1
                    return
                try:
                    async with session_scope(self.session_factory) as session:
                        await worker(session, item, stats)
                except Exception:
                    stats.items_failed += 1
                    failed.append(item)
                    logger.exception(f"{stats.kind.value} run {stats.run_id}: {label} {item} failed")
                else:
                    stats.items_processed += 1

        await asyncio.gather(*(run_one(item) for item in items))
        return failed

    async def _execute(
        self,
        stats: SweepStats,
        body: Callable[[SweepStats], Awaitable[Optional[dict]]],
    ) -> None:
        try:
            summary = await body(stats)
        except Exception as e:
            stats.error_message = str(e)
            logger.exception(f"{stats.kind.value} run {stats.run_id} failed")
            await self._close_run(stats, RunStatus.FAILED)
            raise
        status = RunStatus.CANCELLED if self.stopped else RunStatus.COMPLETED
        await self._close_run(stats, status, summary)

    # Daily sweep

    async def run_daily(self) -> SweepStats:
        """Re-verify stuck slips, close overdue payments and flush notifications.

        When administrators are configured, a digest of the last day's slips
        and closed payments is queued before the flush and sent with it.

        Returns:
            SweepStats of the run.

        Raises:
            RunAlreadyActive: If a daily run is already in progress.
        """
        stats = await self._open_run(RunKind.DAILY)
        await self._execute(stats, self._daily_body)
        return stats

    async def _daily_body(self, stats: SweepStats) -> None:
        await self._requeue_stale_slips(stats)
        if not self.stopped:
            await self._retry_transient_rejections(stats)
        if not self.stopped:
            await self._close_overdue_payments(stats)
        if not self.stopped:
            await self._queue_daily_summary(stats)
        if not self.stopped:
            await self._flush_notifications(stats)

    async def _requeue_stale_slips(self, stats: SweepStats) -> None:
        if not self.deps.breaker.allow_request():
            logger.warning("Provider circuit is open; stale slips left for the next sweep")
            return

        stale_before = self.clock.now() - self.policy.slip_stale_after
        async with session_scope(self.session_factory) as session:
            slips = await SlipRepository(session).list_stale(
                (SlipStatus.PENDING.value, SlipStatus.VERIFYING.value),
                stale_before,
                limit=self.policy.batch_size,
            )
            slip_ids = [s.id for s in slips]
        if slip_ids:
            logger.info(f"Re-verifying {len(slip_ids)} stale slip(s)")

        async def reverify(session: AsyncSession, slip_id: str, stats: SweepStats) -> None:
            result = await PaymentService(session, self.deps).process_slip(
                slip_id,
                claim_from=(SlipStatus.PENDING.value, SlipStatus.VERIFYING.value),
                stale_before=stale_before,
            )
            if result.verification.skipped:
                stats.items_skipped += 1
            else:
                stats.slips_requeued += 1

        await self._run_items(slip_ids, reverify, stats, "slip")

    async def _retry_transient_rejections(self, stats: SweepStats) -> None:
        if not self.deps.breaker.allow_request():
            logger.warning("Provider circuit is open; transient rejections left for the next sweep")
            return

        async with session_scope(self.session_factory) as session:
            slips = await SlipRepository(session).list_retryable_rejections(
                RETRYABLE_REJECTIONS,
                self.policy.max_reverify_attempts,
                limit=self.policy.batch_size,
            )
            slip_ids = [s.id for s in slips]
        if slip_ids:
            logger.info(f"Retrying {len(slip_ids)} slip(s) rejected for provider outages")

        async def retry(session: AsyncSession, slip_id: str, stats: SweepStats) -> None:
            result = await PaymentService(session, self.deps).process_slip(
                slip_id,
                claim_from=(SlipStatus.REJECTED.value,),
                count_reverify=True,
            )
            if result.verification.skipped:
                stats.items_skipped += 1
            else:
                stats.slips_requeued += 1

        await self._run_items(slip_ids, retry, stats, "slip")

    async def _overdue_payment_ids(self, cutoff: datetime) -> List[str]:
        ids: List[str] = []
        offset = 0
        async with session_scope(self.session_factory) as session:
            repo = PaymentRepository(session)
            while True:
                page = await repo.list_overdue(cutoff, limit=self.policy.batch_size, offset=offset)
                ids.extend(p.id for p in page)
                if len(page) < self.policy.batch_size:
                    break
                offset += len(page)
        return ids

    async def _close_overdue_payments(self, stats: SweepStats) -> None:
        cutoff = self.clock.now() - self.policy.expiry_grace
        payment_ids = await self._overdue_payment_ids(cutoff)
        if payment_ids:
            logger.info(f"Closing {len(payment_ids)} overdue payment(s) due before {cutoff.isoformat()}")
        await self._run_items(payment_ids, self._close_overdue_payment, stats, "payment")

    async def _close_overdue_payment(self, session: AsyncSession, payment_id: str, stats: SweepStats) -> None:
        """Expire or mismatch one overdue payment, or leave it for a later sweep."""
        service = PaymentService(session, self.deps)
        payment = await service.payment_repo.get_by_id(payment_id)
        if payment is None or not payment.is_open:
            stats.items_skipped += 1
            return

        slips = service.slip_repo
        in_flight = await slips.count_for_payer(
            payment.member_id, IN_FLIGHT_SLIP_STATUSES, uploaded_since=payment.created_at
        )
        if in_flight:
            stats.payments_deferred += 1
            logger.info(f"Payment {payment.id} deferred: {in_flight} slip(s) still in flight")
            return

        target = PaymentStatus.EXPIRED.value
        reason = None
        if payment.status == PaymentStatus.AWAITING_VERIFICATION.value:
            evidence = await slips.count_for_payer(
                payment.member_id,
                (SlipStatus.REJECTED.value,),
                failure_reasons=MATCH_EVIDENCE_REASONS,
                uploaded_since=payment.created_at,
            )
            if evidence:
                review_until = payment.due_date + self.policy.expiry_grace + self.policy.mismatch_review
                if self.clock.now() < review_until:
                    stats.payments_deferred += 1
                    logger.info(
                        f"Payment {payment.id} awaits manual review of unmatched slips "
                        f"until {review_until.isoformat()}"
                    )
                    return
                target = PaymentStatus.MISMATCHED.value
                reason = UNRESOLVED_SLIP_EVIDENCE

        result = await service.state_machine.transition(
            payment, target, expected_version=payment.version, reason=reason
        )
        if not result.applied:
            stats.items_skipped += 1
            return
        if target == PaymentStatus.EXPIRED.value:
            stats.payments_expired += 1
        else:
            stats.payments_mismatched += 1

    async def _queue_daily_summary(self, stats: SweepStats) -> None:
        settings = self.deps.settings
        if not settings.notification.admin_recipients:
            logger.info("No administrators configured; daily summary not queued")
            return

        now = self.clock.now()
        verified = verified_amount = waiting = rejected = 0
        async with session_scope(self.session_factory) as session:
            rows = await SlipRepository(session).summarize_uploads(now - SUMMARY_WINDOW, now)
            for status, count, amount in rows:
                if status in VERIFIED_SLIP_STATUSES:
                    verified += count
                    verified_amount += amount
                elif status in REJECTED_SLIP_STATUSES:
                    rejected += count
                else:
                    waiting += count

            payload = render_daily_summary(
                now,
                verified=verified,
                verified_amount=verified_amount,
                waiting=waiting,
                rejected=rejected,
                currency=settings.default_currency,
                expired=stats.payments_expired,
                mismatched=stats.payments_mismatched,
            )
            await NotificationTaskRepository(session).create(
                None,
                PayloadKind.DAILY_SUMMARY.value,
                payload,
                channel=settings.notification_channel,
                created_at=now,
                run_id=stats.run_id,
            )

    async def _flush_notifications(self, stats: SweepStats) -> None:
        batch = self.policy.batch_size
        while not self.stopped:
            async with session_scope(self.session_factory) as session:
                summary = await PaymentService(session, self.deps).dispatcher().dispatch_queued(limit=batch)
            stats.notifications_sent += summary.sent
            stats.notifications_failed += summary.failed
            stats.items_processed += summary.sent + summary.failed
            stats.items_failed += summary.deferred
            if summary.deferred or len(summary.task_ids) < batch:
                break

    # Monthly sweep

    async def run_monthly(self, year: Optional[int] = None, month: Optional[int] = None) -> MonthlySummary:
        """Summarize payments due in one calendar month, overall and per cohort.

        Administrators, when configured, are sent a reminder of the unpaid
        dues per cohort once the totals are in.

        Args:
            year: Year of the month to summarize; defaults with ``month`` to the previous month.
            month: Month number 1-12.

        Returns:
            MonthlySummary, also stored on the run.

        Raises:
            RunAlreadyActive: If a monthly run is already in progress.
        """
        if year is None or month is None:
            year, month = previous_month(self.clock.now())
        period_start, period_end = month_bounds(year, month)

        stats = await self._open_run(RunKind.MONTHLY, period_start, period_end)
        summary = MonthlySummary(
            run_id=stats.run_id,
            period_start=period_start,
            period_end=period_end,
            generated_at=stats.started_at,
            stats=stats,
        )

        async def body(stats: SweepStats) -> dict:
            async with session_scope(self.session_factory) as session:
                cohort_ids = await PaymentRepository(session).list_cohorts_due(period_start, period_end)
            logger.info(
                f"Summarizing {len(cohort_ids)} cohort(s) for {period_start:%Y-%m}"
            )

            async def summarize(session: AsyncSession, cohort_id: str, stats: SweepStats) -> None:
                rows = await PaymentRepository(session).aggregate_for_cohort(
                    cohort_id, period_start, period_end
                )
                per_currency = {}
                for status, currency, count, total in rows:
                    bucket = bucket_for_status(status)
                    if bucket is None:
                        continue
                    cohort = per_currency.setdefault(
                        currency, CohortSummary(cohort_id=cohort_id, currency=currency)
                    )
                    cohort.bucket(bucket).add(count, total)
                for cohort in per_currency.values():
                    summary.add_cohort(cohort)

            failed = await self._run_items(cohort_ids, summarize, stats, "cohort")
            summary.failed_cohorts = sorted(failed)
            summary.cohorts.sort(key=lambda c: (c.cohort_id, c.currency))
            if not self.stopped:
                await self._send_monthly_summary(stats, summary)
            return summary.to_dict()

        await self._execute(stats, body)
        return summary

    async def _send_monthly_summary(self, stats: SweepStats, summary: MonthlySummary) -> None:
        """Queue the unpaid-dues reminder for administrators and send it at once."""
        settings = self.deps.settings
        if not settings.notification.admin_recipients:
            logger.info("No administrators configured; monthly summary not sent")
            return

        outstanding = [
            (c.cohort_id, c.currency, c.outstanding.count, c.outstanding.amount)
            for c in summary.cohorts
        ]
        payload = render_monthly_summary(summary.period_start, outstanding)
        async with session_scope(self.session_factory) as session:
            task = await NotificationTaskRepository(session).create(
                None,
                PayloadKind.MONTHLY_SUMMARY.value,
                payload,
                channel=settings.notification_channel,
                created_at=self.clock.now(),
                run_id=stats.run_id,
            )
            status = await PaymentService(session, self.deps).dispatcher().dispatch(task)

        if status == NotificationStatus.SENT:
            stats.notifications_sent += 1
        elif status == NotificationStatus.FAILED:
            stats.notifications_failed += 1
