"""Shared test fixtures and configuration."""

import os
import random
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("CRON_SECRET", "test_cron_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SLIP_PROVIDER", "simulator")
os.environ.setdefault("NOTIFY_CHANNEL", "log")

from slip_payments.config import NotificationPolicy, Settings, SweepPolicy
from slip_payments.database import create_async_engine, create_tables, get_async_session_factory
from slip_payments.exceptions import NotificationFailure
from slip_payments.notifications import MessagingChannel, SendReceipt
from slip_payments.providers import SimulatorProvider
from slip_payments.resilience import RetryPolicy
from slip_payments.services import PaymentService, PipelineDependencies
from slip_payments.storage import InMemoryBlobStore

START = datetime(2024, 4, 30, 10, 0, 0)


class FakeClock:
    """Clock whose time only moves when a test or a sleep advances it."""

    def __init__(self, start: datetime = START):
        self.current = start
        self._monotonic = 1000.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float = 0, **kwargs) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        self.current += delta
        self._monotonic += delta.total_seconds()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class RecordingChannel(MessagingChannel):
    """Messaging channel that records sends and raises scripted failures."""

    name = "recording"

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self._failures: List[NotificationFailure] = []

    def fail_next(self, *errors: NotificationFailure) -> None:
        self._failures.extend(errors)

    async def send(self, recipients: List[str], text: str, retry_key: str) -> SendReceipt:
        self.attempts += 1
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append((list(recipients), text, retry_key))
        return SendReceipt(message_id=f"msg-{len(self.sent)}")


def slip_image(tag: str) -> bytes:
    """PNG-looking bytes unique per tag; the simulator scripts outcomes by content."""
    return b"\x89PNG\r\n\x1a\n" + tag.encode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings(tmp_path):
    """Settings with jitter disabled so backoff delays are exact."""
    return Settings(
        slip_provider="simulator",
        notification_channel="log",
        blob_dir=str(tmp_path / "slips"),
        provider_retry=RetryPolicy(max_attempts=5, base_delay=0.5, multiplier=2.0, max_delay=30.0, jitter=0.0),
        notification=NotificationPolicy(
            retry=RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.0),
            rate_per_second=10.0,
        ),
        sweep=SweepPolicy(concurrency=1, batch_size=50),
    )


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def provider(blob_store):
    return SimulatorProvider(blob_store=blob_store)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def deps(settings, blob_store, provider, channel, clock):
    return PipelineDependencies(
        settings=settings,
        blob_store=blob_store,
        provider=provider,
        channel=channel,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def service(db_session, deps):
    return PaymentService(db_session, deps)


@pytest.fixture
def make_payment(service, clock):
    """Factory registering a payment, by default 500.00 THB due on 2024-05-01."""
    async def _make(
        member_id: str = "member-1",
        amount: int = 50000,
        due_date: Optional[datetime] = None,
        cohort_id: str = "cohort-a",
        contact_ref: Optional[str] = "U-member-1",
        currency: str = "THB",
    ):
        return await service.register_payment(
            member_id=member_id,
            cohort_id=cohort_id,
            expected_amount=amount,
            due_date=due_date or datetime(2024, 5, 1),
            currency=currency,
            contact_ref=contact_ref,
        )
    return _make


@pytest.fixture
def upload(service):
    """Factory submitting a PNG slip whose bytes are derived from ``tag``."""
    async def _upload(tag: str, member_id: str = "member-1") -> str:
        return await service.submit_slip(member_id, slip_image(tag), "image/png")
    return _upload
