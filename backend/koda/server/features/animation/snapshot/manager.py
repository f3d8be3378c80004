"""Durable snapshots of a sandbox's output subtree.

A save never rewrites an existing blob: the archive goes to a fresh key
``{prefix}/{node_id}/{uuid}.tar.gz`` and the node's record is then swapped
to point at it in a single transaction. Readers therefore see either the
old snapshot or the new one, never a mix.

IMPORTANT: SnapshotManager does not touch the sandbox registry. Marking a
sandbox as errored after a failed copy-out is the caller's job.
"""

import hashlib
from collections.abc import Callable
from contextlib import AbstractContextManager
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from koda.db.engine import get_session_with_default_tenant
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SNAPSHOT_KEY_PREFIX
from koda.server.features.animation.db.snapshot import delete_snapshot__no_commit
from koda.server.features.animation.db.snapshot import get_snapshot_for_node
from koda.server.features.animation.db.snapshot import list_snapshot_storage_keys
from koda.server.features.animation.db.snapshot import upsert_snapshot__no_commit
from koda.server.features.animation.errors import SandboxFileNotFoundError
from koda.server.features.animation.errors import SnapshotNotFoundError
from koda.server.features.animation.errors import StorageFailureError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.server.features.animation.sandbox.path_validator import (
    validate_sandbox_path,
)
from koda.server.features.animation.snapshot.models import SnapshotRecord
from koda.server.features.animation.snapshot.storage.base import BlobNotFoundError
from koda.server.features.animation.snapshot.storage.base import BlobStore
from koda.server.features.animation.snapshot.storage.base import BlobStoreError
from koda.utils.logger import setup_logger

logger = setup_logger()

SessionScope = Callable[[], AbstractContextManager[Session]]


def compute_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class SnapshotManager:
    def __init__(
        self,
        provider: ExecutionProvider,
        blob_store: BlobStore,
        session_scope: SessionScope = get_session_with_default_tenant,
        key_prefix: str = SNAPSHOT_KEY_PREFIX,
    ) -> None:
        self._provider = provider
        self._blob_store = blob_store
        self._session_scope = session_scope
        self._key_prefix = key_prefix.strip("/")

    def _new_storage_key(self, node_id: str) -> str:
        return f"{self._key_prefix}/{node_id}/{uuid4()}.tar.gz"

    def _delete_blob_best_effort(self, key: str) -> None:
        try:
            self._blob_store.delete(key)
        except BlobStoreError as e:
            logger.warning(f"Failed to delete snapshot blob {key}: {e}")

    def get_metadata(self, node_id: str) -> SnapshotRecord | None:
        try:
            with self._session_scope() as db_session:
                snapshot = get_snapshot_for_node(db_session, node_id)
                return SnapshotRecord.from_model(snapshot) if snapshot else None
        except SQLAlchemyError as e:
            raise StorageFailureError(
                f"Failed to read snapshot record for node {node_id}: {e}"
            ) from e

    def save(
        self,
        node_id: str,
        source_handle: SandboxHandle,
        source_subpath: str,
        template: SandboxTemplate,
    ) -> SnapshotRecord:
        """Capture ``source_subpath`` of a live sandbox as the node's snapshot.

        Raises:
            InvalidPathError: If the subpath is absolute or traverses upward
            SandboxFileNotFoundError: If the subtree does not exist
            SubstrateError: If the sandbox fails while archiving
            StorageFailureError: If the blob upload or record swap fails
        """
        subpath = validate_sandbox_path(source_subpath)

        try:
            archive = self._provider.copy_out(source_handle, subpath)
        except ExecutionFileNotFoundError as e:
            raise SandboxFileNotFoundError(source_handle.sandbox_id, subpath) from e
        except ExecutionProviderError as e:
            raise SubstrateError(source_handle.sandbox_id, str(e)) from e

        storage_key = self._new_storage_key(node_id)
        checksum = compute_checksum(archive.data)

        try:
            self._blob_store.put(storage_key, archive.data)
        except BlobStoreError as e:
            self._delete_blob_best_effort(storage_key)
            raise StorageFailureError(
                f"Failed to upload snapshot for node {node_id}: {e}"
            ) from e

        try:
            with self._session_scope() as db_session:
                snapshot, previous_key = upsert_snapshot__no_commit(
                    db_session,
                    node_id=node_id,
                    storage_key=storage_key,
                    size_bytes=len(archive.data),
                    checksum=checksum,
                    file_count=archive.file_count,
                    source_subpath=subpath,
                    template=template,
                )
                record = SnapshotRecord.from_model(snapshot)
                db_session.commit()
        except SQLAlchemyError as e:
            self._delete_blob_best_effort(storage_key)
            raise StorageFailureError(
                f"Failed to record snapshot for node {node_id}: {e}"
            ) from e

        if previous_key and previous_key != storage_key:
            self._delete_blob_best_effort(previous_key)

        logger.info(
            f"Saved snapshot for node {node_id}: {storage_key} "
            f"({record.size_bytes} bytes, {record.file_count} files)"
        )
        return record

    def restore(self, node_id: str) -> SandboxArchive:
        """Fetch and verify the node's latest snapshot archive.

        Raises:
            SnapshotNotFoundError: If the node has no snapshot
            StorageFailureError: If the blob is missing, unreadable or corrupt
        """
        record = self.get_metadata(node_id)
        if record is None:
            raise SnapshotNotFoundError(node_id)

        try:
            data = self._blob_store.get(record.storage_key)
        except BlobNotFoundError as e:
            raise StorageFailureError(
                f"Snapshot blob {record.storage_key} for node {node_id} is missing"
            ) from e
        except BlobStoreError as e:
            raise StorageFailureError(
                f"Failed to download snapshot for node {node_id}: {e}"
            ) from e

        if compute_checksum(data) != record.checksum:
            raise StorageFailureError(
                f"Checksum mismatch for snapshot {record.storage_key} of node {node_id}"
            )

        return SandboxArchive(data=data, file_count=record.file_count)

    def delete(self, node_id: str) -> None:
        """Delete the node's snapshot. Deleting a missing snapshot is a no-op."""
        try:
            with self._session_scope() as db_session:
                storage_key = delete_snapshot__no_commit(db_session, node_id)
                db_session.commit()
        except SQLAlchemyError as e:
            raise StorageFailureError(
                f"Failed to delete snapshot record for node {node_id}: {e}"
            ) from e

        if storage_key is None:
            logger.debug(f"No snapshot to delete for node {node_id}")
            return

        self._delete_blob_best_effort(storage_key)
        logger.info(f"Deleted snapshot for node {node_id}")

    def _node_id_for_key(self, key: str) -> str | None:
        if not key.startswith(f"{self._key_prefix}/"):
            return None
        node_id, _, name = key[len(self._key_prefix) + 1 :].rpartition("/")
        if not node_id or not name:
            return None
        return node_id

    def find_unreferenced_blobs(self) -> dict[str, list[str]]:
        """Blobs under the key prefix that no snapshot record points at.

        Left behind when a save dies between upload and record swap, or when
        a best-effort blob delete failed. The result is only a candidate list
        grouped by node; remove_unreferenced_blobs rechecks each node.

        Raises:
            StorageFailureError: If the blob store or the records can't be read
        """
        try:
            keys = self._blob_store.list_keys(f"{self._key_prefix}/")
        except BlobStoreError as e:
            raise StorageFailureError(f"Failed to list snapshot blobs: {e}") from e

        try:
            with self._session_scope() as db_session:
                referenced = list_snapshot_storage_keys(db_session)
        except SQLAlchemyError as e:
            raise StorageFailureError(f"Failed to read snapshot records: {e}") from e

        candidates: dict[str, list[str]] = {}
        for key in keys:
            if key in referenced:
                continue
            node_id = self._node_id_for_key(key)
            if node_id is None:
                logger.debug(f"Ignoring blob outside the snapshot layout: {key}")
                continue
            candidates.setdefault(node_id, []).append(key)
        return candidates

    def remove_unreferenced_blobs(self, node_id: str, keys: list[str]) -> list[str]:
        """Delete those of ``keys`` the node's record does not point at.

        Callers must hold the node's lock so no save is mid-flight.

        Returns:
            The keys actually deleted
        """
        record = self.get_metadata(node_id)
        current_key = record.storage_key if record else None

        removed = []
        for key in keys:
            if key == current_key:
                continue
            try:
                self._blob_store.delete(key)
            except BlobStoreError as e:
                logger.warning(f"Failed to delete unreferenced snapshot blob {key}: {e}")
                continue
            removed.append(key)

        if removed:
            logger.info(
                f"Removed {len(removed)} unreferenced snapshot blob(s) for node {node_id}"
            )
        return removed
