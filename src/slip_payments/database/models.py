"""SQLAlchemy models for payment, slip and sweep persistence."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum

from ..clock import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle statuses."""
    PENDING = "pending"
    AWAITING_VERIFICATION = "awaiting_verification"
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    EXPIRED = "expired"
    FAILED = "failed"


OPEN_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.AWAITING_VERIFICATION.value,
)

TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.MATCHED.value,
    PaymentStatus.MISMATCHED.value,
    PaymentStatus.EXPIRED.value,
    PaymentStatus.FAILED.value,
)


class SlipStatus(str, enum.Enum):
    """Slip lifecycle statuses."""
    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    MATCHED = "matched"


class NotificationStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class PayloadKind(str, enum.Enum):
    """Kind of message: one per terminal payment status, plus the administrator summaries."""
    SUCCESS = "success"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    FAILURE = "failure"
    DAILY_SUMMARY = "daily_summary"
    MONTHLY_SUMMARY = "monthly_summary"


class RunKind(str, enum.Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class RunStatus(str, enum.Enum):
    """Status of a reconciliation run."""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"
    FAILED = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Payment(Base):
    """One expected due for one member in one cohort."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    member_id: Mapped[str] = mapped_column(String(255), nullable=False)
    cohort_id: Mapped[str] = mapped_column(String(255), nullable=False)
    expected_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentStatus.PENDING.value)

    # Incremented on every status change; matching writes are conditional on it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    matched_slip_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Messaging channel user id of the member, if known
    contact_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Relationships
    history: Mapped[List["PaymentHistory"]] = relationship(
        "PaymentHistory",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentHistory.created_at",
    )

    __table_args__ = (
        UniqueConstraint("matched_slip_id", name="uq_payments_matched_slip_id"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_member_status", "member_id", "status"),
        Index("ix_payments_due_date", "due_date"),
        Index("ix_payments_cohort_id", "cohort_id"),
    )

    @property
    def metadata_dict(self) -> Optional[Dict[str, Any]]:
        """Get metadata as dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return None

    @metadata_dict.setter
    def metadata_dict(self, value: Optional[Dict[str, Any]]) -> None:
        """Set metadata from dictionary."""
        if value is not None:
            self.metadata_json = json.dumps(value)
        else:
            self.metadata_json = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_PAYMENT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment to dictionary representation."""
        return {
            "id": self.id,
            "member_id": self.member_id,
            "cohort_id": self.cohort_id,
            "expected_amount": self.expected_amount,
            "currency": self.currency,
            "due_date": _iso(self.due_date),
            "status": self.status,
            "version": self.version,
            "matched_slip_id": self.matched_slip_id,
            "failure_reason": self.failure_reason,
            "metadata": self.metadata_dict,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Slip(Base):
    """One uploaded transfer slip plus the provider's verdict."""
    __tablename__ = "slips"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    claimed_payer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    image_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=SlipStatus.PENDING.value)

    # Provider verdict
    provider_transaction_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    verified_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sender_account_hint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_response_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider attempts in the last verification, and extra passes by the daily sweep
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reverify_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Back-references set by the matcher
    matched_payment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    duplicate_of_slip_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Timestamps
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_slips_status", "status"),
        Index("ix_slips_payer_status", "claimed_payer_id", "status"),
        Index("ix_slips_provider_transaction_ref", "provider_transaction_ref"),
        Index("ix_slips_updated_at", "updated_at"),
    )

    @property
    def provider_response(self) -> Optional[Dict[str, Any]]:
        """Get raw provider response as dictionary."""
        if self.provider_response_json:
            return json.loads(self.provider_response_json)
        return None

    @provider_response.setter
    def provider_response(self, value: Optional[Dict[str, Any]]) -> None:
        """Set raw provider response from dictionary."""
        if value is not None:
            self.provider_response_json = json.dumps(value, default=str)
        else:
            self.provider_response_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert slip to dictionary representation."""
        return {
            "id": self.id,
            "claimed_payer_id": self.claimed_payer_id,
            "image_ref": self.image_ref,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "status": self.status,
            "provider_transaction_ref": self.provider_transaction_ref,
            "verified_amount": self.verified_amount,
            "currency": self.currency,
            "settled_at": _iso(self.settled_at),
            "sender_account_hint": self.sender_account_hint,
            "verified_at": _iso(self.verified_at),
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "reverify_attempts": self.reverify_attempts,
            "matched_payment_id": self.matched_payment_id,
            "duplicate_of_slip_id": self.duplicate_of_slip_id,
            "uploaded_at": _iso(self.uploaded_at),
            "updated_at": _iso(self.updated_at),
        }


class TransactionClaim(Base):
    """Claim of a provider transaction reference by the first slip that carried it."""
    __tablename__ = "transaction_claims"

    provider_transaction_ref: Mapped[str] = mapped_column(String(255), primary_key=True)
    slip_id: Mapped[str] = mapped_column(String(36), ForeignKey("slips.id"), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PaymentHistory(Base):
    """Model for tracking payment status transitions."""
    __tablename__ = "payment_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), nullable=False, index=True)

    # Status before and after the transition
    previous_status: Mapped[str] = mapped_column(String(50), nullable=False)
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)

    # Payment version after the transition
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    slip_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Relationship
    payment: Mapped["Payment"] = relationship("Payment", back_populates="history")

    __table_args__ = (
        Index("ix_payment_history_new_status", "new_status"),
        Index("ix_payment_history_created_at", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert history entry to dictionary representation."""
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "version": self.version,
            "slip_id": self.slip_id,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
        }


class NotificationTask(Base):
    """One outbound message and its delivery attempts.

    Outcome messages belong to a payment; administrator summaries belong to
    the reconciliation run that produced them.
    """
    __tablename__ = "notification_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payments.id"), nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("reconciliation_runs.id"), nullable=True
    )
    channel: Mapped[str] = mapped_column(String(50), nullable=False, default="line")
    payload_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Rendered message snapshot taken at the transition
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=NotificationStatus.QUEUED.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("payment_id", "payload_kind", name="uq_notification_tasks_payment_kind"),
        Index("ix_notification_tasks_status", "status"),
        Index("ix_notification_tasks_run_id", "run_id"),
    )

    @property
    def payload(self) -> Dict[str, Any]:
        """Get payload as dictionary."""
        if self.payload_json:
            return json.loads(self.payload_json)
        return {}

    @payload.setter
    def payload(self, value: Optional[Dict[str, Any]]) -> None:
        """Set payload from dictionary."""
        if value is not None:
            self.payload_json = json.dumps(value, default=str)
        else:
            self.payload_json = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "run_id": self.run_id,
            "channel": self.channel,
            "payload_kind": self.payload_kind,
            "recipient": self.recipient,
            "status": self.status,
            "attempts": self.attempts,
            "last_attempt_at": _iso(self.last_attempt_at),
            "last_error": self.last_error,
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
        }


class ReconciliationRun(Base):
    """One execution of a daily or monthly sweep."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RunStatus.RUNNING.value)

    # Holds the kind while the run is in progress; the unique index
    # admits one active run per kind.
    active_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Monthly runs only
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    summary_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_reconciliation_runs_kind_started", "kind", "started_at"),
    )

    @property
    def summary(self) -> Optional[Dict[str, Any]]:
        """Get summary as dictionary."""
        if self.summary_json:
            return json.loads(self.summary_json)
        return None

    @summary.setter
    def summary(self, value: Optional[Dict[str, Any]]) -> None:
        """Set summary from dictionary."""
        if value is not None:
            self.summary_json = json.dumps(value, default=str)
        else:
            self.summary_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary representation."""
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "summary": self.summary,
            "error_message": self.error_message,
        }
