"""Tests for notification dispatch and the LINE channel."""

import json

import httpx
import pytest

from slip_payments.config import NotificationPolicy
from slip_payments.database import NotificationStatus, PaymentStatus
from slip_payments.exceptions import NotificationFailure
from slip_payments.notifications import LineMessagingChannel, NotificationDispatcher
from slip_payments.resilience import RateLimiter, RetryPolicy


@pytest.fixture
def queue_task(service, make_payment):
    """Factory expiring a fresh payment and returning its queued notification."""
    async def _queue(member_id="member-1", contact_ref="U-member-1"):
        payment = await make_payment(member_id=member_id, contact_ref=contact_ref)
        result = await service.state_machine.transition(payment, PaymentStatus.EXPIRED.value)
        return result.notification
    return _queue


@pytest.fixture
def dispatcher(service):
    return service.dispatcher()


class TestDispatch:
    """Tests for sending one task."""

    async def test_sent_on_first_attempt(self, dispatcher, queue_task, channel, clock):
        task = await queue_task()

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.SENT
        assert task.status == "sent"
        assert task.attempts == 1
        assert task.provider_message_id == "msg-1"
        assert task.sent_at == clock.now()
        recipients, text, retry_key = channel.sent[0]
        assert recipients == ["U-member-1"]
        assert retry_key == task.id
        assert text == task.payload["text"]

    async def test_transient_failures_retried_with_backoff(self, dispatcher, queue_task, channel, clock):
        """Test two transient failures are retried with 1s and 2s waits, same retry key."""
        task = await queue_task()
        channel.fail_next(
            NotificationFailure("LINE returned 500", transient=True),
            NotificationFailure("LINE returned 429", transient=True),
        )

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.SENT
        assert task.attempts == 3
        assert channel.attempts == 3
        assert clock.sleeps == [1.0, 2.0]
        assert task.last_error is None

    async def test_retry_cap_marks_failed(self, dispatcher, queue_task, channel, clock):
        """Test four transient failures exhaust the cap and mark the task failed."""
        task = await queue_task()
        channel.fail_next(*[NotificationFailure("LINE returned 503", transient=True) for _ in range(4)])

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.FAILED
        assert task.status == "failed"
        assert task.attempts == 4
        assert task.last_error == "LINE returned 503"
        assert clock.sleeps == [1.0, 2.0, 4.0]

    async def test_permanent_failure_not_retried(self, dispatcher, queue_task, channel, clock):
        task = await queue_task()
        channel.fail_next(NotificationFailure("LINE rejected message: 400", transient=False))

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.FAILED
        assert task.attempts == 1
        assert clock.sleeps == []

    async def test_unexpected_error_leaves_task_queued(self, dispatcher, queue_task, channel):
        """Test a send raising something other than NotificationFailure keeps the task queued."""
        task = await queue_task()
        channel.fail_next(RuntimeError("connection pool closed"))

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.QUEUED
        assert task.status == "queued"
        assert task.attempts == 0

    async def test_no_recipients(self, dispatcher, queue_task, channel):
        task = await queue_task(contact_ref=None)

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.FAILED
        assert task.last_error == "no recipients configured"
        assert channel.attempts == 0

    async def test_admin_recipients_added(self, db_session, channel, clock, queue_task):
        dispatcher = NotificationDispatcher(
            db_session,
            channel=channel,
            policy=NotificationPolicy(admin_recipients=("U-admin", "U-member-1")),
            clock=clock,
        )
        task = await queue_task()

        await dispatcher.dispatch(task)

        assert channel.sent[0][0] == ["U-member-1", "U-admin"]

    async def test_task_not_queued_is_untouched(self, dispatcher, queue_task, channel):
        task = await queue_task()
        await dispatcher.dispatch(task)

        status = await dispatcher.dispatch(task)

        assert status == NotificationStatus.SENT
        assert channel.attempts == 1


class TestDispatchQueued:
    """Tests for draining the queue."""

    async def test_failing_task_does_not_block_others(self, dispatcher, queue_task, channel):
        """Test a permanently failing task leaves the other tasks to be sent."""
        first = await queue_task(member_id="member-1")
        second = await queue_task(member_id="member-2", contact_ref="U-member-2")
        channel.fail_next(NotificationFailure("blocked by user", transient=False))

        summary = await dispatcher.dispatch_queued()

        assert summary.sent == 1
        assert summary.failed == 1
        assert {first.status, second.status} == {"sent", "failed"}

    async def test_rate_limiter_spaces_sends(self, db_session, channel, clock, queue_task):
        """Test the shared limiter holds the third send of a 2/s channel for a second."""
        dispatcher = NotificationDispatcher(
            db_session,
            channel=channel,
            policy=NotificationPolicy(retry=RetryPolicy(max_attempts=1, jitter=0.0)),
            rate_limiter=RateLimiter(max_calls=2, period=1.0, clock=clock),
            clock=clock,
        )
        for n in range(3):
            await queue_task(member_id=f"member-{n}", contact_ref=f"U-{n}")

        summary = await dispatcher.dispatch_queued()

        assert summary.sent == 3
        assert clock.sleeps == [pytest.approx(1.0)]

    async def test_empty_queue(self, dispatcher):
        summary = await dispatcher.dispatch_queued()
        assert summary.sent == 0
        assert summary.task_ids == []


class TestDeliveryEvents:
    """Tests for delivery callbacks."""

    async def test_delivered_stamps_time(self, dispatcher, queue_task, clock):
        task = await queue_task()
        await dispatcher.dispatch(task)
        clock.advance(5)

        updated = await dispatcher.record_delivery_event(task.id, "delivered")

        assert updated.delivered_at == clock.now()
        assert updated.status == "sent"

    async def test_failed_delivery_requeued(self, dispatcher, queue_task, channel):
        """Test a delivery failure puts the task back in the queue while attempts remain."""
        task = await queue_task()
        await dispatcher.dispatch(task)

        updated = await dispatcher.record_delivery_event(task.id, "failed", "user blocked bot")

        assert updated.status == "queued"
        assert updated.last_error == "user blocked bot"

        summary = await dispatcher.dispatch_queued()
        assert summary.sent == 1
        assert task.attempts == 2

    async def test_failed_delivery_without_attempts_left(self, dispatcher, queue_task):
        task = await queue_task()
        task.attempts = 4
        task.status = "sent"

        updated = await dispatcher.record_delivery_event(task.id, "failed")

        assert updated.status == "failed"

    async def test_unknown_task(self, dispatcher):
        assert await dispatcher.record_delivery_event("missing", "delivered") is None

    async def test_unknown_event(self, dispatcher, queue_task):
        task = await queue_task()
        with pytest.raises(ValueError):
            await dispatcher.record_delivery_event(task.id, "read")


def _line_channel(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LineMessagingChannel(access_token="line-token", client=client)


class TestLineMessagingChannel:
    """Tests for the LINE push/multicast transport."""

    async def test_push_to_single_recipient(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={}, headers={"x-line-request-id": "req-1"})

        receipt = await _line_channel(handler).send(["U1"], "hello", retry_key="task-1")

        assert receipt.message_id == "req-1"
        assert not receipt.duplicate
        request = requests[0]
        assert request.url.path.endswith("/push")
        assert request.headers["Authorization"] == "Bearer line-token"
        assert request.headers["X-Line-Retry-Key"] == "task-1"
        body = json.loads(request.content)
        assert body == {"to": "U1", "messages": [{"type": "text", "text": "hello"}]}

    async def test_multicast_to_several_recipients(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={})

        await _line_channel(handler).send(["U1", "U2"], "hello", retry_key="task-2")

        assert requests[0].url.path.endswith("/multicast")
        assert json.loads(requests[0].content)["to"] == ["U1", "U2"]

    async def test_conflict_means_already_accepted(self):
        """Test a 409 for a reused retry key is reported as an accepted duplicate."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={}, headers={"x-line-accepted-request-id": "req-0"})

        receipt = await _line_channel(handler).send(["U1"], "hello", retry_key="task-3")

        assert receipt.duplicate
        assert receipt.message_id == "req-0"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_transient_statuses(self, status_code):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={})

        with pytest.raises(NotificationFailure) as exc_info:
            await _line_channel(handler).send(["U1"], "hello", retry_key="task-4")
        assert exc_info.value.transient

    async def test_bad_request_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "The property, 'to', is invalid"})

        with pytest.raises(NotificationFailure) as exc_info:
            await _line_channel(handler).send(["bad"], "hello", retry_key="task-5")
        assert not exc_info.value.transient

    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(NotificationFailure) as exc_info:
            await _line_channel(handler).send(["U1"], "hello", retry_key="task-6")
        assert exc_info.value.transient

    @pytest.mark.parametrize(
        "error",
        [httpx.TooManyRedirects, httpx.DecodingError, httpx.RemoteProtocolError],
    )
    async def test_request_errors_are_transient(self, error):
        """Test every httpx request error surfaces as a transient NotificationFailure."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise error("redirect loop", request=request)

        with pytest.raises(NotificationFailure) as exc_info:
            await _line_channel(handler).send(["U1"], "hello", retry_key="task-7")
        assert exc_info.value.transient

    def test_requires_token(self):
        with pytest.raises(ValueError):
            LineMessagingChannel(access_token="")
