from .base import (
    SlipVerificationProvider,
    VerificationResult,
    VerificationSuccess,
    TransientFailure,
    PermanentFailure,
    ProviderOutcome,
)
from .easyslip import EasySlipProvider
from .simulator import SimulatorProvider, SimulatorConfig

__all__ = [
    "SlipVerificationProvider",
    "VerificationResult",
    "VerificationSuccess",
    "TransientFailure",
    "PermanentFailure",
    "ProviderOutcome",
    "EasySlipProvider",
    "SimulatorProvider",
    "SimulatorConfig",
]
