"""
Reconciliation sweeps for slip payments.

The daily sweep re-verifies slips stuck in or rejected from verification,
closes overdue payments and flushes queued notifications. The monthly sweep
summarizes what was collected per cohort.
"""

from .models import (
    SweepStats,
    StatusTotals,
    CohortSummary,
    MonthlySummary,
)
from .scheduler import ReconciliationScheduler, month_bounds, previous_month
from .report import ReportGenerator

__all__ = [
    "SweepStats",
    "StatusTotals",
    "CohortSummary",
    "MonthlySummary",
    "ReconciliationScheduler",
    "month_bounds",
    "previous_month",
    "ReportGenerator",
]
