"""Database module for slip payments persistence."""

from .models import (
    Base,
    Payment,
    Slip,
    TransactionClaim,
    PaymentHistory,
    NotificationTask,
    ReconciliationRun,
    PaymentStatus,
    SlipStatus,
    NotificationStatus,
    PayloadKind,
    RunKind,
    RunStatus,
    OPEN_PAYMENT_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    get_db_context,
    session_scope,
)
from .repository import (
    PaymentRepository,
    SlipRepository,
    TransactionClaimRepository,
    PaymentHistoryRepository,
    NotificationTaskRepository,
    ReconciliationRunRepository,
)

__all__ = [
    # Models
    "Base",
    "Payment",
    "Slip",
    "TransactionClaim",
    "PaymentHistory",
    "NotificationTask",
    "ReconciliationRun",
    "PaymentStatus",
    "SlipStatus",
    "NotificationStatus",
    "PayloadKind",
    "RunKind",
    "RunStatus",
    "OPEN_PAYMENT_STATUSES",
    "TERMINAL_PAYMENT_STATUSES",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_tables",
    "get_async_session_factory",
    "get_db_context",
    "session_scope",
    # Repositories
    "PaymentRepository",
    "SlipRepository",
    "TransactionClaimRepository",
    "PaymentHistoryRepository",
    "NotificationTaskRepository",
    "ReconciliationRunRepository",
]
