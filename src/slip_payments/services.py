"""Service layer wiring the slip pipeline to database persistence."""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock, to_naive_utc
from .config import Settings
from .database import (
    NotificationStatus,
    NotificationTaskRepository,
    Payment,
    PaymentHistory,
    PaymentHistoryRepository,
    PaymentRepository,
    Slip,
    SlipRepository,
    SlipStatus,
)
from .exceptions import PaymentNotFound, SlipNotFound
from .ingestion import SlipIngestor
from .matching import MatchOutcome, PaymentMatcher
from .notifications import LineMessagingChannel, LoggingChannel, MessagingChannel, NotificationDispatcher
from .providers import EasySlipProvider, SimulatorConfig, SimulatorProvider, SlipVerificationProvider
from .resilience import CircuitBreaker, RateLimiter
from .state_machine import PaymentStateMachine
from .storage import BlobStore, LocalBlobStore
from .verification import VerificationClient, VerificationReport

logger = logging.getLogger(__name__)


@dataclass
class PipelineDependencies:
    """Long-lived collaborators shared by every request and sweep.

    The circuit breaker and the rate limiter must be shared so that their
    state covers all callers of the provider and of the messaging channel.
    """
    settings: Settings
    blob_store: BlobStore
    provider: SlipVerificationProvider
    channel: MessagingChannel
    clock: Clock = field(default_factory=Clock)
    breaker: Optional[CircuitBreaker] = None
    rate_limiter: Optional[RateLimiter] = None
    rng: Optional[random.Random] = None

    def __post_init__(self):
        if self.breaker is None:
            self.breaker = CircuitBreaker("slip-provider", self.settings.circuit, self.clock)
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter.per_second(
                self.settings.notification.rate_per_second, self.clock
            )

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "PipelineDependencies":
        """Build the configured blob store, provider and messaging channel."""
        clock = clock or Clock()
        blob_store = LocalBlobStore(settings.blob_dir)

        if settings.slip_provider == "simulator":
            provider: SlipVerificationProvider = SimulatorProvider(
                SimulatorConfig(currency=settings.default_currency)
            )
        elif settings.slip_provider == "easyslip":
            provider = EasySlipProvider(
                api_key=settings.easyslip_api_key,
                blob_store=blob_store,
                base_url=settings.easyslip_base_url,
                timeout=settings.verification.call_timeout,
                currency=settings.default_currency,
            )
        else:
            raise ValueError(f"Unknown slip provider: {settings.slip_provider}")

        if settings.notification_channel == "log":
            channel: MessagingChannel = LoggingChannel()
        elif settings.notification_channel == "line":
            channel = LineMessagingChannel(
                access_token=settings.line_channel_access_token,
                timeout=settings.notification.send_timeout,
            )
        else:
            raise ValueError(f"Unknown notification channel: {settings.notification_channel}")

        logger.info(
            f"Pipeline configured with provider {settings.slip_provider} "
            f"and channel {settings.notification_channel}"
        )
        return cls(
            settings=settings,
            blob_store=blob_store,
            provider=provider,
            channel=channel,
            clock=clock,
        )

    async def aclose(self) -> None:
        await self.provider.aclose()
        await self.channel.aclose()


@dataclass
class ProcessResult:
    """Everything one pass of verify, match and notify did to a slip."""
    slip_id: str
    slip_status: str
    verification: VerificationReport
    match: Optional[MatchOutcome] = None
    notification_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slip_id": self.slip_id,
            "status": self.slip_status,
            "skipped": self.verification.skipped,
            "attempts": self.verification.attempts,
            "failure_reason": self.verification.reason or (
                self.match.kind.value if self.match and not self.match.matched else None
            ),
            "payment_id": self.match.payment_id if self.match else None,
            "duplicate_of_slip_id": self.match.duplicate_of_slip_id if self.match else None,
            "notification_status": self.notification_status,
        }


class PaymentService:
    """Service class for slip and payment operations with persistence."""

    def __init__(self, session: AsyncSession, deps: PipelineDependencies):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
            deps: Shared pipeline collaborators.
        """
        self.session = session
        self.deps = deps
        self.settings = deps.settings
        self.payment_repo = PaymentRepository(session)
        self.slip_repo = SlipRepository(session)
        self.history_repo = PaymentHistoryRepository(session)
        self.notification_repo = NotificationTaskRepository(session)
        self.state_machine = PaymentStateMachine(
            session, clock=deps.clock, channel=deps.settings.notification_channel
        )

    def verification_client(self) -> VerificationClient:
        return VerificationClient(
            self.session,
            provider=self.deps.provider,
            breaker=self.deps.breaker,
            retry_policy=self.settings.provider_retry,
            policy=self.settings.verification,
            clock=self.deps.clock,
            rng=self.deps.rng,
        )

    def matcher(self) -> PaymentMatcher:
        return PaymentMatcher(
            self.session,
            state_machine=self.state_machine,
            policy=self.settings.matching,
            clock=self.deps.clock,
        )

    def dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(
            self.session,
            channel=self.deps.channel,
            policy=self.settings.notification,
            rate_limiter=self.deps.rate_limiter,
            clock=self.deps.clock,
            rng=self.deps.rng,
        )

    async def register_payment(
        self,
        member_id: str,
        cohort_id: str,
        expected_amount: int,
        due_date: datetime,
        currency: Optional[str] = None,
        contact_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """Record an expected due.

        Args:
            member_id: Member who owes the due.
            cohort_id: Cohort the member belongs to.
            expected_amount: Amount in minor units, must be positive.
            due_date: When the due is expected.
            currency: Currency code, defaults to the configured currency.
            contact_ref: Messaging user id notified about the outcome.
            metadata: Optional metadata dictionary.

        Returns:
            The created Payment in ``pending``.
        """
        if expected_amount <= 0:
            raise ValueError("expected_amount must be positive")
        return await self.payment_repo.create(
            member_id=member_id,
            cohort_id=cohort_id,
            expected_amount=expected_amount,
            currency=currency or self.settings.default_currency,
            due_date=to_naive_utc(due_date),
            contact_ref=contact_ref,
            metadata=metadata,
            created_at=self.deps.clock.now(),
        )

    async def submit_slip(
        self,
        claimed_payer_id: str,
        image_bytes: bytes,
        content_type: str,
        enqueue: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Validate, store and record an uploaded slip.

        Returns:
            The new Slip ID.

        Raises:
            InvalidUpload: If the upload is rejected.
            StorageUnavailable: If the image could not be stored.
        """
        ingestor = SlipIngestor(
            self.session,
            blob_store=self.deps.blob_store,
            state_machine=self.state_machine,
            policy=self.settings.upload,
            clock=self.deps.clock,
            enqueue=enqueue,
        )
        return await ingestor.submit(claimed_payer_id, image_bytes, content_type)

    async def process_slip(
        self,
        slip_id: str,
        claim_from: Sequence[str] = (SlipStatus.PENDING.value,),
        stale_before: Optional[datetime] = None,
        count_reverify: bool = False,
    ) -> ProcessResult:
        """Verify a slip, match it and send the resulting notification.

        When the match queues a notification, the session is committed before
        the send, so a failed or hanging send never undoes the match.

        Args:
            slip_id: Slip to process.
            claim_from: Statuses verification may claim the slip from.
            stale_before: Only claim a slip untouched since this time.
            count_reverify: Count this pass against the slip's sweep attempts.

        Returns:
            ProcessResult describing what happened.

        Raises:
            SlipNotFound: If the slip does not exist.
        """
        slip = await self.get_slip(slip_id)
        report = await self.verification_client().verify(
            slip, claim_from=claim_from, stale_before=stale_before
        )
        if count_reverify and not report.skipped:
            slip.reverify_attempts = (slip.reverify_attempts or 0) + 1
            await self.session.flush()

        result = ProcessResult(slip_id=slip.id, slip_status=slip.status, verification=report)
        if not report.verified:
            return result

        outcome = await self.matcher().match(slip, report.result)
        result.match = outcome
        result.slip_status = slip.status

        if outcome.notification_id:
            # The match must be durable before the member hears about it
            await self.session.commit()
            task = await self.notification_repo.get_by_id(outcome.notification_id)
            status = await self.dispatcher().dispatch(task)
            result.notification_status = status.value
            if status != NotificationStatus.SENT:
                logger.warning(
                    f"Notification {task.id} for payment {outcome.payment_id} not sent; "
                    f"status {status.value}"
                )
        return result

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.payment_repo.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return payment

    async def get_slip(self, slip_id: str) -> Slip:
        slip = await self.slip_repo.get_by_id(slip_id)
        if slip is None:
            raise SlipNotFound(f"Slip {slip_id} not found")
        return slip

    async def get_payment_history(self, payment_id: str) -> List[PaymentHistory]:
        """Get the transition history of a payment, oldest first.

        Raises:
            PaymentNotFound: If the payment does not exist.
        """
        await self.get_payment(payment_id)
        return await self.history_repo.list_for_payment(payment_id)
