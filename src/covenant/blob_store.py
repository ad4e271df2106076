"""File-backed content-addressed blob store.

Stand-in for off-chain storage (IPFS pinning and similar): blobs are stored
under their keccak-256 content id and re-hashed on every read.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .canonical import keccak_hex
from .errors import BlobIntegrityError, BlobNotFoundError
from .mandate import Mandate
from .primitives import PrimitiveRegistry
from .storage import atomic_write_bytes, ensure_private_dir, exclusive_lock, safe_child_path

logger = logging.getLogger(__name__)

DEFAULT_BLOB_STORE_DIR = Path.home() / ".covenant" / "blobs"


class LocalBlobStore:
    """Content-addressed store with lock-based concurrency control."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or DEFAULT_BLOB_STORE_DIR
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"

    def _blob_path(self, content_id: str) -> Path:
        identifier = content_id.lower().replace("0x", "")
        return safe_child_path(self.base_dir, identifier, ".blob")

    def put(self, data: bytes) -> str:
        """Store bytes and return their content id. Re-putting is a no-op."""
        content_id = keccak_hex(data)
        with exclusive_lock(self._lock_path):
            path = self._blob_path(content_id)
            if not path.exists():
                atomic_write_bytes(path, data)
                logger.debug("Blob stored: %s (%d bytes)", content_id, len(data))
        return content_id

    def get(self, content_id: str) -> bytes:
        with exclusive_lock(self._lock_path):
            path = self._blob_path(content_id)
            if not path.exists():
                raise BlobNotFoundError(content_id)
            data = path.read_bytes()
        if keccak_hex(data) != "0x" + content_id.lower().removeprefix("0x"):
            raise BlobIntegrityError(f"Content hash mismatch for {content_id}")
        return data

    def has(self, content_id: str) -> bool:
        return self._blob_path(content_id).exists()

    def list_ids(self) -> list[str]:
        return sorted("0x" + p.stem for p in self.base_dir.glob("*.blob"))

    def put_mandate(self, mandate: Mandate) -> str:
        """Store the full signed document as UTF-8 JSON."""
        return self.put(mandate.to_json(indent=None).encode("utf-8"))

    def get_mandate(self, content_id: str, registry: Optional[PrimitiveRegistry] = None) -> Mandate:
        return Mandate.from_json(self.get(content_id), registry=registry)
