"""Blob storage for uploaded slip images."""

import asyncio
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from .exceptions import BlobNotFound, StorageUnavailable

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def build_blob_key(payer_id: str, content_type: str, now: datetime) -> str:
    """Build a storage key of the form ``<payer>/<timestamp>-<uuid>.<ext>``."""
    safe_payer = _UNSAFE_KEY_CHARS.sub("_", payer_id) or "unknown"
    ext = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"{safe_payer}/{now:%Y%m%d%H%M%S}-{uuid.uuid4().hex}.{ext}"


class BlobStore(ABC):
    """Opaque store for slip images keyed by reference."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store the bytes and return a stable reference.

        Raises:
            StorageUnavailable: If the store cannot accept the write.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        """Read the bytes for a reference.

        Raises:
            BlobNotFound: If nothing is stored under the reference.
            StorageUnavailable: If the store cannot be read.
        """
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Stores images as files under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents:
            raise BlobNotFound(f"Invalid blob reference {ref}")
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error(f"Failed to write blob {key}: {e}")
            raise StorageUnavailable(f"Blob store rejected write: {e}") from e
        return key

    async def get(self, ref: str) -> bytes:
        path = self._path(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise BlobNotFound(f"No blob stored under {ref}") from e
        except OSError as e:
            raise StorageUnavailable(f"Blob store read failed: {e}") from e


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed store for tests and local development."""

    def __init__(self):
        self.blobs: Dict[str, Tuple[bytes, str]] = {}
        self.available = True
        self.writes = 0

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        if not self.available:
            raise StorageUnavailable("In-memory blob store is marked unavailable")
        self.blobs[key] = (data, content_type)
        self.writes += 1
        return key

    async def get(self, ref: str) -> bytes:
        if not self.available:
            raise StorageUnavailable("In-memory blob store is marked unavailable")
        blob: Optional[Tuple[bytes, str]] = self.blobs.get(ref)
        if blob is None:
            raise BlobNotFound(f"No blob stored under {ref}")
        return blob[0]
