from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, Literal, Union, Annotated

from pydantic import BaseModel, Field


# Canonical models
class VerificationResult(BaseModel):
    transaction_ref: str
    amount: int  # minor units
    currency: str
    settled_at: datetime  # naive UTC
    sender_account_hint: Optional[str] = None
    sender_name: Optional[str] = None
    receiver_account: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


class VerificationSuccess(BaseModel):
    kind: Literal["success"] = "success"
    result: VerificationResult


class TransientFailure(BaseModel):
    """Timeout, 5xx or rate limiting; worth retrying."""
    kind: Literal["transient"] = "transient"
    reason: str


class PermanentFailure(BaseModel):
    """The provider answered and refused the slip; retrying will not help."""
    kind: Literal["permanent"] = "permanent"
    reason: str


ProviderOutcome = Annotated[
    Union[VerificationSuccess, TransientFailure, PermanentFailure],
    Field(discriminator="kind"),
]


class SlipVerificationProvider(ABC):
    """
    Minimal provider interface. ``verify`` never raises for provider-side
    problems: every result is one of the three outcome models, so callers
    handle success, transient and permanent failure explicitly.
    """

    name = "base"

    @abstractmethod
    async def verify(self, image_ref: str) -> ProviderOutcome:
        """
        Extract transaction data from the slip image stored under ``image_ref``.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
