"""Tests for slip ingestion and blob storage."""

import asyncio

import pytest

from slip_payments.config import UploadPolicy
from slip_payments.database import PaymentStatus, SlipRepository, SlipStatus
from slip_payments.exceptions import BlobNotFound, InvalidUpload, StorageUnavailable
from slip_payments.ingestion import SlipIngestor, normalize_content_type
from slip_payments.state_machine import PaymentStateMachine
from slip_payments.storage import BlobStore, LocalBlobStore, build_blob_key

from conftest import slip_image


class SlowBlobStore(BlobStore):
    async def put(self, key, data, content_type):
        await asyncio.sleep(1)
        return key

    async def get(self, ref):
        raise BlobNotFound(ref)


@pytest.fixture
def ingestor(db_session, blob_store, clock):
    return SlipIngestor(
        db_session,
        blob_store=blob_store,
        state_machine=PaymentStateMachine(db_session, clock=clock),
        policy=UploadPolicy(max_bytes=1024),
        clock=clock,
    )


class TestContentType:
    def test_normalize(self):
        assert normalize_content_type("Image/PNG; charset=binary") == "image/png"
        assert normalize_content_type(None) == ""


class TestValidation:
    """Tests for upload validation."""

    async def test_rejects_unsupported_type(self, ingestor, blob_store):
        """Test a PDF upload is refused before anything is stored."""
        with pytest.raises(InvalidUpload) as exc_info:
            await ingestor.submit("member-1", b"%PDF-1.4", "application/pdf")
        assert exc_info.value.details["allowed"] == ["image/jpeg", "image/png", "image/webp"]
        assert blob_store.writes == 0

    async def test_rejects_oversized_image(self, ingestor, blob_store):
        """Test an image over the byte limit is refused."""
        with pytest.raises(InvalidUpload) as exc_info:
            await ingestor.submit("member-1", b"x" * 1025, "image/png")
        assert exc_info.value.details["max_bytes"] == 1024
        assert blob_store.writes == 0

    async def test_accepts_image_at_limit(self, ingestor):
        slip_id = await ingestor.submit("member-1", b"x" * 1024, "image/png")
        assert slip_id

    async def test_rejects_empty_image(self, ingestor):
        with pytest.raises(InvalidUpload):
            await ingestor.submit("member-1", b"", "image/png")

    async def test_rejects_blank_payer(self, ingestor):
        with pytest.raises(InvalidUpload):
            await ingestor.submit("   ", slip_image("a"), "image/png")


class TestSubmit:
    """Tests for a successful submit."""

    async def test_creates_one_pending_slip_and_one_blob(self, ingestor, blob_store, db_session, clock):
        """Test exactly one blob write and one pending slip per call."""
        slip_id = await ingestor.submit("member-1", slip_image("a"), "IMAGE/PNG")

        assert blob_store.writes == 1
        slip = await SlipRepository(db_session).get_by_id(slip_id)
        assert slip.status == SlipStatus.PENDING.value
        assert slip.content_type == "image/png"
        assert slip.uploaded_at == clock.now()
        assert slip.image_ref in blob_store.blobs
        assert slip.image_ref.startswith("member-1/20240430100000-")
        assert slip.image_ref.endswith(".png")

    async def test_moves_pending_payments_to_awaiting_verification(
        self, ingestor, make_payment, db_session
    ):
        """Test the payer's pending payments await verification after an upload."""
        payment = await make_payment()
        other = await make_payment(member_id="member-2")

        await ingestor.submit("member-1", slip_image("a"), "image/png")

        await db_session.refresh(payment)
        await db_session.refresh(other)
        assert payment.status == PaymentStatus.AWAITING_VERIFICATION.value
        assert payment.version == 2
        assert other.status == PaymentStatus.PENDING.value

    async def test_enqueue_called_with_slip_id(self, db_session, blob_store, clock):
        queued = []
        ingestor = SlipIngestor(
            db_session,
            blob_store=blob_store,
            state_machine=PaymentStateMachine(db_session, clock=clock),
            clock=clock,
            enqueue=queued.append,
        )
        slip_id = await ingestor.submit("member-1", slip_image("a"), "image/jpeg")
        assert queued == [slip_id]


class TestStorageFailures:
    """Tests for blob store failures."""

    async def test_unavailable_store_creates_no_slip(self, ingestor, blob_store, db_session):
        """Test a failed write surfaces StorageUnavailable and records nothing."""
        blob_store.available = False
        with pytest.raises(StorageUnavailable):
            await ingestor.submit("member-1", slip_image("a"), "image/png")

        slips = await SlipRepository(db_session).list_by_payer("member-1")
        assert slips == []

    async def test_write_timeout_is_storage_unavailable(self, db_session, clock):
        ingestor = SlipIngestor(
            db_session,
            blob_store=SlowBlobStore(),
            state_machine=PaymentStateMachine(db_session, clock=clock),
            policy=UploadPolicy(storage_timeout=0.01),
            clock=clock,
        )
        with pytest.raises(StorageUnavailable):
            await ingestor.submit("member-1", slip_image("a"), "image/png")


class TestLocalBlobStore:
    """Tests for the filesystem blob store."""

    async def test_put_and_get(self, tmp_path, clock):
        store = LocalBlobStore(str(tmp_path))
        key = build_blob_key("member/1", "image/jpeg", clock.now())
        ref = await store.put(key, b"image-bytes", "image/jpeg")

        assert ref.startswith("member_1/")
        assert await store.get(ref) == b"image-bytes"

    async def test_missing_blob(self, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        with pytest.raises(BlobNotFound):
            await store.get("nobody/missing.png")

    async def test_reference_outside_root(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "root"))
        with pytest.raises(BlobNotFound):
            await store.get("../escape.png")
