"""Exception hierarchy for the slip payments engine.

Every error carries a machine-readable ``code``. When an error is recorded on
an entity instead of being raised, the code is what lands in
``Slip.failure_reason`` or ``Payment.failure_reason`` so administrators see
the same identifier in the database, the API and the logs.
"""

from typing import Any, Dict, Optional


class SlipPaymentsError(Exception):
    """Base exception for the engine."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to an API response body."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidUpload(SlipPaymentsError):
    """The uploaded slip failed type, size or input validation."""

    code = "invalid_upload"
    status_code = 400


class StorageUnavailable(SlipPaymentsError):
    """The blob store could not accept or return an image. Retry later."""

    code = "storage_unavailable"
    status_code = 424
    retry_after_seconds = 30


class BlobNotFound(SlipPaymentsError):
    code = "image_missing"
    status_code = 404


class ProviderUnavailable(SlipPaymentsError):
    """The verification provider kept failing transiently until the retry cap."""

    code = "provider_unavailable"
    status_code = 503


class CircuitOpen(ProviderUnavailable):
    """Calls were short-circuited because the provider circuit is open."""

    code = "circuit_open"


class DuplicateTransaction(SlipPaymentsError):
    """The bank transfer was already claimed by another slip."""

    code = "duplicate_transaction"
    status_code = 409


class NoMatchingPayment(SlipPaymentsError):
    code = "no_matching_payment"
    status_code = 422


class AmbiguousMatch(SlipPaymentsError):
    """More than one outstanding payment fits the slip; needs manual resolution."""

    code = "ambiguous_match"
    status_code = 409


class NotificationFailure(SlipPaymentsError):
    """A message could not be delivered through the messaging channel."""

    code = "notification_failure"
    status_code = 502

    def __init__(
        self,
        message: str = "",
        transient: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.transient = transient


class RunAlreadyActive(SlipPaymentsError):
    """A reconciliation run of the same kind is already in progress."""

    code = "run_already_active"
    status_code = 409


class InvalidStateTransition(SlipPaymentsError):
    code = "invalid_state_transition"
    status_code = 409

    def __init__(self, entity_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity_id} from {current} to {target}",
            {"id": entity_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class NotFoundError(SlipPaymentsError):
    code = "not_found"
    status_code = 404


class PaymentNotFound(NotFoundError):
    code = "payment_not_found"


class SlipNotFound(NotFoundError):
    code = "slip_not_found"
