"""Delivery of queued notification messages with retry and shared rate limiting."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..clock import Clock
from ..config import NotificationPolicy
from ..database import NotificationStatus, NotificationTask, NotificationTaskRepository
from ..exceptions import NotificationFailure
from ..resilience import RateLimiter
from .channel import MessagingChannel

logger = logging.getLogger(__name__)


@dataclass
class _Delivery:
    """Outcome of the network part of one dispatch, applied to the task afterwards."""
    status: NotificationStatus
    attempts: int
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None


@dataclass
class DispatchSummary:
    sent: int = 0
    failed: int = 0
    deferred: int = 0
    task_ids: List[str] = field(default_factory=list)


class NotificationDispatcher:
    """Sends notification tasks through a messaging channel.

    Each task gets its own bounded retry loop; one slow or failing task never
    holds up the others. All sends go through one rate limiter, which callers
    share across dispatchers to respect the channel's throttling.
    """

    def __init__(
        self,
        session: AsyncSession,
        channel: MessagingChannel,
        policy: Optional[NotificationPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.channel = channel
        self.policy = policy or NotificationPolicy()
        self.clock = clock or Clock()
        self.rate_limiter = rate_limiter or RateLimiter.per_second(self.policy.rate_per_second, self.clock)
        self.rng = rng
        self.tasks = NotificationTaskRepository(session)

    @staticmethod
    def _owner(task: NotificationTask) -> str:
        return f"payment {task.payment_id}" if task.payment_id else f"run {task.run_id}"

    def _recipients(self, task: NotificationTask) -> List[str]:
        recipients: List[str] = []
        for recipient in [task.recipient, *self.policy.admin_recipients]:
            if recipient and recipient not in recipients:
                recipients.append(recipient)
        return recipients

    async def _deliver(self, task: NotificationTask) -> _Delivery:
        """Run the retry loop for one task. Touches the network only, never the session."""
        retry = self.policy.retry
        recipients = self._recipients(task)
        text = task.payload.get("text", "")
        delivery = _Delivery(status=NotificationStatus.FAILED, attempts=task.attempts)

        if not recipients:
            delivery.last_error = "no recipients configured"
            logger.error(f"Notification {task.id} for {self._owner(task)} has no recipients")
            return delivery

        while delivery.attempts < retry.max_attempts:
            await self.rate_limiter.acquire()
            delivery.attempts += 1
            delivery.last_attempt_at = self.clock.now()
            try:
                receipt = await asyncio.wait_for(
                    self.channel.send(recipients, text, retry_key=task.id),
                    timeout=self.policy.send_timeout,
                )
            except asyncio.TimeoutError:
                error = NotificationFailure("send timed out", transient=True)
            except NotificationFailure as e:
                error = e
            else:
                delivery.status = NotificationStatus.SENT
                delivery.provider_message_id = receipt.message_id
                delivery.sent_at = self.clock.now()
                delivery.last_error = None
                return delivery

            delivery.last_error = error.message
            if not error.transient or delivery.attempts >= retry.max_attempts:
                break
            delay = retry.delay_for(delivery.attempts, self.rng)
            logger.warning(
                f"Notification {task.id} send failed ({error.message}), attempt "
                f"{delivery.attempts}/{retry.max_attempts}, retrying in {delay:.2f}s"
            )
            await self.clock.sleep(delay)

        logger.error(
            f"Notification {task.id} for {self._owner(task)} failed after "
            f"{delivery.attempts} attempt(s): {delivery.last_error}"
        )
        return delivery

    def _apply(self, task: NotificationTask, delivery: _Delivery) -> None:
        task.status = delivery.status.value
        task.attempts = delivery.attempts
        task.last_error = delivery.last_error
        if delivery.last_attempt_at is not None:
            task.last_attempt_at = delivery.last_attempt_at
        if delivery.status == NotificationStatus.SENT:
            task.provider_message_id = delivery.provider_message_id
            task.sent_at = delivery.sent_at

    async def dispatch(self, task: NotificationTask) -> NotificationStatus:
        """Send one task, retrying transient failures up to the cap.

        Returns:
            SENT or FAILED. Tasks that are not queued are left untouched, and
            a task whose send raised something other than NotificationFailure
            stays QUEUED for the daily sweep.
        """
        if task.status != NotificationStatus.QUEUED.value:
            return NotificationStatus(task.status)

        try:
            delivery = await self._deliver(task)
        except Exception:
            logger.exception(f"Notification {task.id} left queued after unexpected error")
            return NotificationStatus.QUEUED
        self._apply(task, delivery)
        await self.session.flush()

        if delivery.status == NotificationStatus.SENT:
            logger.info(f"Sent {task.payload_kind} notification {task.id} for {self._owner(task)}")
        return delivery.status

    async def dispatch_queued(self, limit: int = 100) -> DispatchSummary:
        """Send every queued task concurrently, each with its own retry loop."""
        tasks = await self.tasks.list_queued(limit=limit)
        summary = DispatchSummary()
        if not tasks:
            return summary

        results = await asyncio.gather(
            *(self._deliver(task) for task in tasks),
            return_exceptions=True,
        )
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Notification {task.id} left queued after unexpected error: {result!r}",
                    exc_info=result,
                )
                summary.deferred += 1
                continue
            self._apply(task, result)
            summary.task_ids.append(task.id)
            if result.status == NotificationStatus.SENT:
                summary.sent += 1
            else:
                summary.failed += 1

        await self.session.flush()
        logger.info(
            f"Dispatched {len(tasks)} queued notification(s): "
            f"{summary.sent} sent, {summary.failed} failed, {summary.deferred} deferred"
        )
        return summary

    async def record_delivery_event(
        self,
        task_id: str,
        event: str,
        detail: Optional[str] = None,
    ) -> Optional[NotificationTask]:
        """Apply a delivery callback from the messaging provider.

        ``delivered`` stamps the delivery time. ``failed`` puts the task back in
        the queue while it has attempts left and marks it failed otherwise.

        Returns:
            The updated task, or None if the task is unknown.
        """
        task = await self.tasks.get_by_id(task_id)
        if task is None:
            logger.warning(f"Delivery event {event} for unknown notification {task_id}")
            return None

        if event == "delivered":
            task.delivered_at = self.clock.now()
            if task.status != NotificationStatus.SENT.value:
                task.status = NotificationStatus.SENT.value
        elif event == "failed":
            task.last_error = detail or "delivery failed"
            if task.attempts < self.policy.retry.max_attempts:
                task.status = NotificationStatus.QUEUED.value
                logger.warning(f"Notification {task.id} delivery failed; re-queued")
            else:
                task.status = NotificationStatus.FAILED.value
                logger.error(f"Notification {task.id} delivery failed with no attempts left")
        else:
            raise ValueError(f"Unknown delivery event: {event}")

        await self.session.flush()
        return task

