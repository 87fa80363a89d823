# slip_payments package
__version__ = "0.1.0"

from .config import Settings
from .database import (
    Payment,
    Slip,
    PaymentHistory,
    NotificationTask,
    ReconciliationRun,
    PaymentStatus,
    SlipStatus,
    NotificationStatus,
    init_db,
    close_db,
    get_db,
)
from .exceptions import SlipPaymentsError
from .services import PaymentService, PipelineDependencies

# Reconciliation exports
from .reconciliation import (
    ReconciliationScheduler,
    MonthlySummary,
    SweepStats,
    ReportGenerator,
)
