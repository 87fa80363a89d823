"""HTTP API: payment registration, slip upload, verification triggers and webhooks."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__
from .auth import limiter, verify_api_key, verify_line_signature
from .config import Settings
from .database import (
    NotificationTaskRepository,
    SlipStatus,
    close_db,
    get_db,
    get_db_context,
    init_db,
)
from .dependencies import get_pipeline, get_settings
from .exceptions import SlipPaymentsError, StorageUnavailable
from .reconciliation.api import router as cron_router
from .services import PaymentService, PipelineDependencies

logger = logging.getLogger(__name__)

UPLOAD_RATE_LIMIT = os.getenv("UPLOAD_RATE_LIMIT", "30/minute")

router = APIRouter()


class RegisterPaymentBody(BaseModel):
    member_id: str = Field(..., min_length=1)
    cohort_id: str = Field(..., min_length=1)
    expected_amount: int = Field(..., gt=0, description="Amount in minor units")
    due_date: datetime
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    contact_ref: Optional[str] = Field(default=None, description="Messaging user id of the member")
    metadata: Optional[Dict[str, Any]] = Field(default_factory=dict)


async def process_slip_in_background(pipeline: PipelineDependencies, slip_id: str) -> None:
    """Verify and match a freshly uploaded slip in its own session.

    A failure leaves the slip pending or verifying; the daily sweep picks it
    up once it is stale.
    """
    try:
        async with get_db_context() as session:
            await PaymentService(session, pipeline).process_slip(slip_id)
    except Exception:
        logger.exception(f"Background processing of slip {slip_id} failed")


@router.post("/payments", status_code=201)
async def register_payment(
    body: RegisterPaymentBody,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    """Register an expected due for a member."""
    service = PaymentService(db, pipeline)
    payment = await service.register_payment(
        member_id=body.member_id,
        cohort_id=body.cohort_id,
        expected_amount=body.expected_amount,
        due_date=body.due_date,
        currency=body.currency.upper() if body.currency else None,
        contact_ref=body.contact_ref,
        metadata=body.metadata,
    )
    return payment.to_dict()


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    """Get a payment with its transition history and notifications."""
    service = PaymentService(db, pipeline)
    payment = await service.get_payment(payment_id)
    history = await service.get_payment_history(payment_id)
    notifications = await NotificationTaskRepository(db).list_for_payment(payment_id)

    result = payment.to_dict()
    result["history"] = [entry.to_dict() for entry in history]
    result["notifications"] = [task.to_dict() for task in notifications]
    return result


@router.post("/slips", status_code=201)
@limiter.limit(UPLOAD_RATE_LIMIT)
async def upload_slip(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    claimed_payer_id: str = Form(default=""),
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
):
    """
    Upload a transfer slip.

    The image is stored and a pending slip is recorded; verification and
    matching run in the background. Poll ``GET /slips/{id}`` for the outcome.
    """
    # One byte over the limit is enough to reject an oversized upload
    data = await file.read(pipeline.settings.upload.max_bytes + 1)
    service = PaymentService(db, pipeline)
    slip_id = await service.submit_slip(
        claimed_payer_id,
        data,
        file.content_type or "",
        enqueue=lambda sid: background_tasks.add_task(process_slip_in_background, pipeline, sid),
    )
    await db.commit()
    return {"slip_id": slip_id, "status": SlipStatus.PENDING.value}


@router.get("/slips/{slip_id}")
async def get_slip(
    slip_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
):
    """Get a slip's status and failure reason."""
    slip = await PaymentService(db, pipeline).get_slip(slip_id)
    return slip.to_dict()


@router.post("/slips/{slip_id}/verify")
async def trigger_verification(
    slip_id: str,
    background_tasks: BackgroundTasks,
    mode: str = Query(default="sync", pattern="^(sync|async)$"),
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    """
    Run verification for a pending or rejected slip.

    ``sync`` waits for verify, match and notify and returns the outcome;
    ``async`` schedules the work and returns 202.
    """
    service = PaymentService(db, pipeline)
    slip = await service.get_slip(slip_id)

    if mode == "async":
        background_tasks.add_task(_reprocess_in_background, pipeline, slip.id)
        return JSONResponse(status_code=202, content={"slip_id": slip.id, "status": "scheduled"})

    result = await service.process_slip(
        slip.id,
        claim_from=(SlipStatus.PENDING.value, SlipStatus.REJECTED.value),
    )
    return result.to_dict()


async def _reprocess_in_background(pipeline: PipelineDependencies, slip_id: str) -> None:
    try:
        async with get_db_context() as session:
            await PaymentService(session, pipeline).process_slip(
                slip_id,
                claim_from=(SlipStatus.PENDING.value, SlipStatus.REJECTED.value),
            )
    except Exception:
        logger.exception(f"Triggered verification of slip {slip_id} failed")


@router.post("/webhooks/messaging")
async def messaging_webhook(
    request: Request,
    x_line_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineDependencies = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
):
    """
    Delivery callbacks from the messaging provider.

    Body: ``{"events": [{"type": "delivery", "retryKey": <task id>,
    "status": "delivered" | "failed", "reason": ...}]}``.
    """
    body = await request.body()
    secret = settings.line_channel_secret
    if secret and not verify_line_signature(secret, body, x_line_signature or ""):
        logger.warning("Rejected messaging webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON body: {e}")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be an object")

    dispatcher = PaymentService(db, pipeline).dispatcher()
    accepted = 0
    ignored = 0
    for event in payload.get("events", []):
        if event.get("type") != "delivery" or not event.get("retryKey"):
            ignored += 1
            continue
        try:
            task = await dispatcher.record_delivery_event(
                event["retryKey"], event.get("status", ""), event.get("reason")
            )
        except ValueError as e:
            logger.warning(f"Ignoring delivery event for {event['retryKey']}: {e}")
            ignored += 1
            continue
        if task is None:
            ignored += 1
        else:
            accepted += 1

    return {"accepted": accepted, "ignored": ignored}


@router.get("/health")
async def health(pipeline: PipelineDependencies = Depends(get_pipeline)):
    return {
        "status": "healthy",
        "version": __version__,
        "provider": pipeline.provider.health_check(),
        "circuit": pipeline.breaker.get_status(),
    }


async def slip_payments_error_handler(request: Request, exc: SlipPaymentsError) -> JSONResponse:
    headers = {}
    if isinstance(exc, StorageUnavailable):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[PipelineDependencies] = None,
    database_url: Optional[str] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings, read from the environment if omitted.
        pipeline: Pre-built collaborators; built from ``settings`` at startup if omitted.
        database_url: Database URL, defaults to DATABASE_URL.
    """
    settings = settings or (pipeline.settings if pipeline else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(database_url)
        app.state.stop_event = asyncio.Event()
        app.state.pipeline = pipeline or PipelineDependencies.from_settings(settings)
        try:
            yield
        finally:
            app.state.stop_event.set()
            if pipeline is None:
                await app.state.pipeline.aclose()
            await close_db()

    app = FastAPI(title="Slip Payments Engine", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(SlipPaymentsError, slip_payments_error_handler)
    app.include_router(router)
    app.include_router(cron_router)
    return app


app = create_app()
