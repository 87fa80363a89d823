"""Models for reconciliation sweeps and monthly summaries."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..database import PaymentStatus, RunKind, RunStatus

SUMMARY_BUCKETS = ("matched", "mismatched", "expired", "outstanding")


class SweepStats(BaseModel):
    """Counters collected while a sweep runs."""
    run_id: str = Field(..., description="Reconciliation run ID")
    kind: RunKind = Field(..., description="Sweep kind")
    status: RunStatus = Field(default=RunStatus.RUNNING)
    started_at: datetime = Field(..., description="Time the run was opened")
    completed_at: Optional[datetime] = Field(None, description="Time the run was closed")

    items_processed: int = Field(default=0)
    items_failed: int = Field(default=0)
    items_skipped: int = Field(default=0)

    # Daily sweep detail
    slips_requeued: int = Field(default=0, description="Slips sent back through verification")
    payments_expired: int = Field(default=0)
    payments_mismatched: int = Field(default=0)
    payments_deferred: int = Field(default=0, description="Payments left for a later sweep")
    notifications_sent: int = Field(default=0)
    notifications_failed: int = Field(default=0)

    error_message: Optional[str] = Field(None, description="Error message if the run failed")

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return the counters without run bookkeeping, as stored on the run."""
        return {
            "items_skipped": self.items_skipped,
            "slips_requeued": self.slips_requeued,
            "payments_expired": self.payments_expired,
            "payments_mismatched": self.payments_mismatched,
            "payments_deferred": self.payments_deferred,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "run_id": self.run_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "error_message": self.error_message,
        }
        result.update(self.to_summary_dict())
        return result


class StatusTotals(BaseModel):
    """Count and amount (minor units) of payments in one bucket."""
    count: int = 0
    amount: int = 0

    def add(self, count: int, amount: int) -> None:
        self.count += count
        self.amount += amount


def bucket_for_status(status: str) -> Optional[str]:
    """Summary bucket a payment status falls in; ``failed`` is not reported."""
    if status in (PaymentStatus.PENDING.value, PaymentStatus.AWAITING_VERIFICATION.value):
        return "outstanding"
    if status in ("matched", "mismatched", "expired"):
        return status
    return None


class CohortSummary(BaseModel):
    """Monthly totals of one cohort in one currency."""
    cohort_id: str
    currency: str
    matched: StatusTotals = Field(default_factory=StatusTotals)
    mismatched: StatusTotals = Field(default_factory=StatusTotals)
    expired: StatusTotals = Field(default_factory=StatusTotals)
    outstanding: StatusTotals = Field(default_factory=StatusTotals)

    def bucket(self, name: str) -> StatusTotals:
        return getattr(self, name)

    @property
    def collection_rate(self) -> str:
        due = sum(self.bucket(name).amount for name in SUMMARY_BUCKETS)
        if due == 0:
            return "N/A"
        return f"{(self.matched.amount / due * 100):.2f}%"


class MonthlySummary(BaseModel):
    """Result of a monthly sweep over payments due in ``[period_start, period_end)``."""
    run_id: str
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    totals: Dict[str, Dict[str, StatusTotals]] = Field(
        default_factory=dict,
        description="currency -> bucket -> totals",
    )
    cohorts: List[CohortSummary] = Field(default_factory=list)
    failed_cohorts: List[str] = Field(default_factory=list)
    stats: Optional[SweepStats] = Field(None, description="Bookkeeping of the run that produced it")

    def add_cohort(self, cohort: CohortSummary) -> None:
        self.cohorts.append(cohort)
        per_currency = self.totals.setdefault(
            cohort.currency, {name: StatusTotals() for name in SUMMARY_BUCKETS}
        )
        for name in SUMMARY_BUCKETS:
            bucket = cohort.bucket(name)
            per_currency[name].add(bucket.count, bucket.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "generated_at": self.generated_at.isoformat(),
            "totals": {
                currency: {name: totals.model_dump() for name, totals in buckets.items()}
                for currency, buckets in self.totals.items()
            },
            "cohorts": [
                {
                    "cohort_id": c.cohort_id,
                    "currency": c.currency,
                    **{name: c.bucket(name).model_dump() for name in SUMMARY_BUCKETS},
                    "collection_rate": c.collection_rate,
                }
                for c in self.cohorts
            ],
            "failed_cohorts": list(self.failed_cohorts),
        }
