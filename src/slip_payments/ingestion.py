"""Slip ingestion: validate, store the image, record a pending slip."""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock
from .config import UploadPolicy
from .database import PaymentRepository, PaymentStatus, SlipRepository
from .exceptions import InvalidUpload, StorageUnavailable
from .state_machine import PaymentStateMachine
from .storage import BlobStore, build_blob_key

logger = logging.getLogger(__name__)


def normalize_content_type(content_type: Optional[str]) -> str:
    """Strip parameters and case from a MIME type (``Image/PNG; q=1`` -> ``image/png``)."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class SlipIngestor:
    """Accepts uploaded slips.

    A successful ``submit`` performs exactly one blob write and creates exactly
    one Slip. If the write fails nothing is recorded and the caller gets
    ``StorageUnavailable`` to retry later.
    """

    def __init__(
        self,
        session: AsyncSession,
        blob_store: BlobStore,
        state_machine: PaymentStateMachine,
        policy: Optional[UploadPolicy] = None,
        clock: Optional[Clock] = None,
        enqueue: Optional[Callable[[str], None]] = None,
    ):
        self.session = session
        self.blob_store = blob_store
        self.state_machine = state_machine
        self.policy = policy or UploadPolicy()
        self.clock = clock or Clock()
        self.enqueue = enqueue
        self.slips = SlipRepository(session)
        self.payments = PaymentRepository(session)

    def validate(self, claimed_payer_id: str, image_bytes: bytes, content_type: str) -> str:
        """Check the upload against the configured limits.

        Returns:
            The normalized content type.

        Raises:
            InvalidUpload: On an empty payer, unsupported type, empty or oversized image.
        """
        if not claimed_payer_id or not claimed_payer_id.strip():
            raise InvalidUpload("claimed payer id is required")

        normalized = normalize_content_type(content_type)
        if normalized not in self.policy.allowed_content_types:
            raise InvalidUpload(
                f"Unsupported content type {content_type!r}",
                {"allowed": list(self.policy.allowed_content_types)},
            )

        if not image_bytes:
            raise InvalidUpload("Slip image is empty")

        if len(image_bytes) > self.policy.max_bytes:
            raise InvalidUpload(
                f"Slip image is {len(image_bytes)} bytes, limit is {self.policy.max_bytes}",
                {"size": len(image_bytes), "max_bytes": self.policy.max_bytes},
            )
        return normalized

    async def submit(self, claimed_payer_id: str, image_bytes: bytes, content_type: str) -> str:
        """Store an uploaded slip and record it as ``pending``.

        Args:
            claimed_payer_id: Member the uploader says the transfer pays for.
            image_bytes: Raw image.
            content_type: MIME type reported by the client.

        Returns:
            The new Slip ID.

        Raises:
            InvalidUpload: If validation fails.
            StorageUnavailable: If the blob store cannot take the write.
        """
        payer_id = claimed_payer_id.strip() if claimed_payer_id else ""
        normalized = self.validate(payer_id, image_bytes, content_type)
        now = self.clock.now()

        key = build_blob_key(payer_id, normalized, now)
        try:
            image_ref = await asyncio.wait_for(
                self.blob_store.put(key, image_bytes, normalized),
                timeout=self.policy.storage_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Blob write for payer {payer_id} timed out")
            raise StorageUnavailable("Blob store write timed out") from e

        slip = await self.slips.create(
            claimed_payer_id=payer_id,
            image_ref=image_ref,
            content_type=normalized,
            size_bytes=len(image_bytes),
            uploaded_at=now,
        )

        for payment in await self.payments.list_open_for_member(payer_id):
            if payment.status == PaymentStatus.PENDING.value:
                await self.state_machine.transition(
                    payment,
                    PaymentStatus.AWAITING_VERIFICATION.value,
                    slip_id=slip.id,
                )

        if self.enqueue is not None:
            self.enqueue(slip.id)

        logger.info(f"Ingested slip {slip.id} ({len(image_bytes)} bytes) for payer {payer_id}")
        return slip.id
