"""Durable blob storage for snapshot archives.

Blob stores only move bytes. Which key belongs to which node lives in the
animation_snapshot table and is owned by SnapshotManager.
"""

import threading
from abc import ABC
from abc import abstractmethod

from koda.server.features.animation.configs import SNAPSHOT_STORAGE_BACKEND
from koda.server.features.animation.configs import SnapshotStorageBackend
from koda.utils.logger import setup_logger

logger = setup_logger()


class BlobStoreError(Exception):
    """The blob store failed an operation."""


class BlobNotFoundError(BlobStoreError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Blob not found: {key}")
        self.key = key


class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Write a blob. Readers never observe a partially written blob."""
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read a whole blob.

        Raises:
            BlobNotFoundError: If no blob exists at ``key``
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a blob. Deleting a missing blob is not an error."""
        ...

    @abstractmethod
    def list_keys(self, prefix: str) -> list[str]:
        ...


_blob_store_instance: BlobStore | None = None
_blob_store_lock = threading.Lock()


def get_blob_store() -> BlobStore:
    """Get the BlobStore selected by SNAPSHOT_STORAGE_BACKEND."""
    global _blob_store_instance

    if _blob_store_instance is None:
        with _blob_store_lock:
            if _blob_store_instance is None:
                if SNAPSHOT_STORAGE_BACKEND == SnapshotStorageBackend.S3:
                    from koda.server.features.animation.snapshot.storage.s3 import (
                        S3BlobStore,
                    )

                    _blob_store_instance = S3BlobStore()
                else:
                    from koda.server.features.animation.snapshot.storage.local import (
                        LocalBlobStore,
                    )

                    _blob_store_instance = LocalBlobStore()

                logger.info(
                    f"Using {type(_blob_store_instance).__name__} for snapshot storage"
                )

    return _blob_store_instance
