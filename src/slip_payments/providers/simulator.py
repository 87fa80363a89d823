"""Simulator provider for exercising the pipeline without real provider calls."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional, Union

from ..exceptions import BlobNotFound, StorageUnavailable
from ..storage import BlobStore
from .base import (
    PermanentFailure,
    ProviderOutcome,
    SlipVerificationProvider,
    TransientFailure,
    VerificationResult,
    VerificationSuccess,
)

logger = logging.getLogger(__name__)

ScriptKey = Union[str, bytes]


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    currency: str = "THB"
    delay_ms: int = 0  # Simulated response delay in ms
    unknown_reason: str = "not_a_valid_slip"


class SimulatorProvider(SlipVerificationProvider):
    """
    Provider returning scripted outcomes.

    Outcomes are queued per key and consumed one per call; the last outcome
    of a script repeats once the queue runs dry. With a blob store the key
    is the image content, so a test can script the bytes it uploads; without
    one the key is the image reference itself. Unscripted slips are refused
    permanently.
    """

    name = "simulator"

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        blob_store: Optional[BlobStore] = None,
    ):
        self.config = config or SimulatorConfig()
        self.blob_store = blob_store
        self._scripts: Dict[ScriptKey, Deque[ProviderOutcome]] = {}
        self.calls: List[str] = []
        logger.info("SimulatorProvider initialized")

    def script(self, key: ScriptKey, *outcomes: ProviderOutcome) -> None:
        self._scripts.setdefault(key, deque()).extend(outcomes)

    def succeed(
        self,
        key: ScriptKey,
        transaction_ref: str,
        amount: int,
        settled_at: datetime,
        sender_account_hint: Optional[str] = "xxx-x-x1234-x",
        receiver_account: Optional[str] = None,
        after_transient: int = 0,
    ) -> None:
        """Script ``after_transient`` transient failures followed by a success."""
        outcomes: List[ProviderOutcome] = [
            TransientFailure(reason="http_503") for _ in range(after_transient)
        ]
        outcomes.append(
            VerificationSuccess(
                result=VerificationResult(
                    transaction_ref=transaction_ref,
                    amount=amount,
                    currency=self.config.currency,
                    settled_at=settled_at,
                    sender_account_hint=sender_account_hint,
                    receiver_account=receiver_account,
                    raw={"transRef": transaction_ref, "simulated": True},
                )
            )
        )
        self.script(key, *outcomes)

    def fail_transiently(self, key: ScriptKey, times: int = 1, reason: str = "timeout") -> None:
        self.script(key, *[TransientFailure(reason=reason) for _ in range(times)])

    def reject(self, key: ScriptKey, reason: str = "not_a_valid_slip") -> None:
        self.script(key, PermanentFailure(reason=reason))

    async def _key(self, image_ref: str) -> ScriptKey:
        if self.blob_store is None:
            return image_ref
        return await self.blob_store.get(image_ref)

    async def verify(self, image_ref: str) -> ProviderOutcome:
        self.calls.append(image_ref)
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

        try:
            key = await self._key(image_ref)
        except BlobNotFound:
            return PermanentFailure(reason="image_missing")
        except StorageUnavailable as e:
            return TransientFailure(reason=f"storage_unavailable: {e.message}")

        queue = self._scripts.get(key)
        if not queue:
            return PermanentFailure(reason=self.config.unknown_reason)
        if len(queue) > 1:
            return queue.popleft()
        return queue[0]
