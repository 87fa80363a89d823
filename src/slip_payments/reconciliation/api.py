"""Cron endpoints triggering the reconciliation sweeps."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..auth import verify_cron_token
from ..database import ReconciliationRunRepository, RunKind, get_db
from ..dependencies import get_pipeline, get_session_factory, get_stop_event
from ..services import PipelineDependencies
from .report import ReportGenerator
from .scheduler import ReconciliationScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["reconciliation"])


class RunResponse(BaseModel):
    """Bookkeeping of one reconciliation run."""
    id: str
    kind: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    items_processed: int = 0
    items_failed: int = 0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


def _scheduler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    pipeline: PipelineDependencies = Depends(get_pipeline),
    stop_event: asyncio.Event = Depends(get_stop_event),
) -> ReconciliationScheduler:
    return ReconciliationScheduler(session_factory, pipeline, stop_event=stop_event)


@router.post("/daily")
async def run_daily_sweep(
    scheduler: ReconciliationScheduler = Depends(_scheduler),
    token: str = Depends(verify_cron_token),
):
    """
    Run the daily sweep.

    Re-verifies stuck slips, closes overdue payments and sends queued
    notifications. Returns 409 while another daily run is active.
    """
    stats = await scheduler.run_daily()
    return stats.to_dict()


@router.post("/monthly")
async def run_monthly_sweep(
    year: Optional[int] = Query(default=None, ge=2000, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    scheduler: ReconciliationScheduler = Depends(_scheduler),
    token: str = Depends(verify_cron_token),
):
    """
    Summarize payments due in one month, overall and per cohort.

    Defaults to the previous calendar month. Returns 409 while another
    monthly run is active.
    """
    if (year is None) != (month is None):
        raise HTTPException(status_code=400, detail="year and month must be given together")
    if format not in ("json", "csv", "text", "detailed_text"):
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text, detailed_text"
        )

    summary = await scheduler.run_monthly(year, month)

    if format == "json":
        result = summary.to_dict()
        result["run"] = summary.stats.to_dict()
        return result
    output = ReportGenerator(summary).render(format)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.get("/runs", response_model=List[RunResponse])
async def list_runs(
    kind: Optional[RunKind] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    token: str = Depends(verify_cron_token),
):
    """List recent reconciliation runs, newest first."""
    runs = await ReconciliationRunRepository(db).list_recent(
        kind=kind.value if kind else None, limit=limit
    )
    return [RunResponse(**run.to_dict()) for run in runs]
