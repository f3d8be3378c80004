"""Lifecycle reaper for animation sandboxes.

A daemon thread started from the API server lifespan. Each sweep:

1. Destroys sandboxes in ERROR (retrying failed teardowns).
2. Destroys running/idle sandboxes not accessed within the idle TTL.
3. Marks running sandboxes not accessed within the idle window as IDLE.
4. Destroys substrate resources with no active registry entry (orphans
   left behind by a crash or restart).
5. Drops DESTROYED tombstones older than the retention window.
6. Deletes snapshot blobs no snapshot record points at.

Snapshot records, and the blobs they point at, are never touched.
"""

import threading
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from pydantic import BaseModel
from pydantic import Field

from koda.db.enums import SandboxStatus
from koda.server.features.animation.configs import SANDBOX_IDLE_AFTER_SECONDS
from koda.server.features.animation.configs import SANDBOX_IDLE_TTL_SECONDS
from koda.server.features.animation.configs import SANDBOX_REAPER_INTERVAL_SECONDS
from koda.server.features.animation.configs import (
    SANDBOX_TOMBSTONE_RETENTION_SECONDS,
)
from koda.server.features.animation.errors import StorageFailureError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.locks import KeyedLock
from koda.server.features.animation.sandbox.models import SandboxInstance
from koda.server.features.animation.sandbox.provisioner import Provisioner
from koda.server.features.animation.sandbox.registry import SandboxRegistry
from koda.server.features.animation.snapshot.manager import SnapshotManager
from koda.utils.logger import setup_logger

logger = setup_logger()


class ReaperSweepResult(BaseModel):
    destroyed: list[str] = Field(default_factory=list)
    idled: list[str] = Field(default_factory=list)
    orphans_destroyed: list[str] = Field(default_factory=list)
    tombstones_removed: list[str] = Field(default_factory=list)
    orphan_blobs_removed: list[str] = Field(default_factory=list)


class SandboxReaper:
    def __init__(
        self,
        registry: SandboxRegistry,
        provider: ExecutionProvider,
        provisioner: Provisioner,
        node_locks: KeyedLock,
        snapshot_manager: SnapshotManager | None = None,
        idle_after_seconds: float = SANDBOX_IDLE_AFTER_SECONDS,
        idle_ttl_seconds: float = SANDBOX_IDLE_TTL_SECONDS,
        tombstone_retention_seconds: float = SANDBOX_TOMBSTONE_RETENTION_SECONDS,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._provisioner = provisioner
        self._node_locks = node_locks
        self._snapshot_manager = snapshot_manager
        self._idle_after = timedelta(seconds=idle_after_seconds)
        self._idle_ttl = timedelta(seconds=idle_ttl_seconds)
        self._tombstone_retention = timedelta(seconds=tombstone_retention_seconds)

    def _is_expired(self, instance: SandboxInstance, now: datetime) -> bool:
        return (
            instance.status.is_live()
            and now - instance.last_accessed_at > self._idle_ttl
        )

    def _destroy(self, sandbox_id: str, node_id: str, now: datetime) -> bool:
        with self._node_locks.hold(node_id):
            # re-check under the lock; a read may have touched it meanwhile
            instance = self._registry.get(sandbox_id)
            if instance is None:
                return False
            if instance.status != SandboxStatus.ERROR and not self._is_expired(
                instance, now
            ):
                return False

            try:
                self._provisioner.destroy(sandbox_id)
            except SubstrateError as e:
                logger.warning(f"Reaper failed to destroy sandbox {sandbox_id}: {e}")
                return False
            return True

    def _reap_orphans(self, result: ReaperSweepResult) -> None:
        try:
            resources = self._provider.list_resources()
        except ExecutionProviderError as e:
            logger.warning(f"Reaper could not list substrate resources: {e}")
            return

        for handle in resources:
            instance = self._registry.get(handle.sandbox_id)
            if instance is not None and instance.status != SandboxStatus.DESTROYED:
                continue

            logger.info(
                f"Destroying orphaned sandbox resource {handle.substrate_id} "
                f"(sandbox {handle.sandbox_id})"
            )
            try:
                self._provider.destroy(handle)
            except ExecutionResourceNotFoundError:
                pass
            except ExecutionProviderError as e:
                logger.warning(
                    f"Failed to destroy orphaned resource {handle.substrate_id}: {e}"
                )
                continue
            result.orphans_destroyed.append(handle.sandbox_id)

    def _remove_orphan_blobs(self, result: ReaperSweepResult) -> None:
        if self._snapshot_manager is None:
            return

        try:
            candidates = self._snapshot_manager.find_unreferenced_blobs()
        except StorageFailureError as e:
            logger.warning(f"Reaper could not scan snapshot blobs: {e}")
            return

        for node_id, keys in candidates.items():
            with self._node_locks.hold(node_id):
                try:
                    removed = self._snapshot_manager.remove_unreferenced_blobs(
                        node_id, keys
                    )
                except StorageFailureError as e:
                    logger.warning(
                        f"Reaper could not clean snapshot blobs of node {node_id}: {e}"
                    )
                    continue
            result.orphan_blobs_removed.extend(removed)

    def run_once(self, now: datetime | None = None) -> ReaperSweepResult:
        now = now or datetime.now(timezone.utc)
        result = ReaperSweepResult()

        for instance in self._registry.list_instances():
            if instance.status == SandboxStatus.ERROR or self._is_expired(
                instance, now
            ):
                if self._destroy(instance.id, instance.node_id, now):
                    result.destroyed.append(instance.id)

            elif (
                instance.status == SandboxStatus.RUNNING
                and now - instance.last_accessed_at > self._idle_after
            ):
                if self._registry.update_status(
                    instance.id, SandboxStatus.RUNNING, SandboxStatus.IDLE
                ):
                    result.idled.append(instance.id)

            elif (
                instance.status == SandboxStatus.DESTROYED
                and now - instance.status_changed_at > self._tombstone_retention
            ):
                self._registry.remove(instance.id)
                result.tombstones_removed.append(instance.id)

        self._reap_orphans(result)
        self._remove_orphan_blobs(result)

        if result.destroyed or result.orphans_destroyed:
            logger.info(
                f"Reaper sweep destroyed {len(result.destroyed)} sandbox(es) and "
                f"{len(result.orphans_destroyed)} orphan(s)"
            )
        return result


# ------------------------------------------------------------------
# Daemon thread
# ------------------------------------------------------------------

_shutdown_event = threading.Event()
_reaper_thread: threading.Thread | None = None


def _reaper_loop(reaper: SandboxReaper, interval_seconds: float) -> None:
    logger.info(f"Sandbox reaper started, sweeping every {interval_seconds}s")

    while not _shutdown_event.wait(interval_seconds):
        try:
            reaper.run_once()
        except Exception:
            logger.exception("Sandbox reaper - Error during sweep")


def start_sandbox_reaper(
    reaper: SandboxReaper,
    interval_seconds: float = SANDBOX_REAPER_INTERVAL_SECONDS,
) -> None:
    """Start the reaper daemon thread."""
    global _reaper_thread  # noqa: PLW0603
    _shutdown_event.clear()
    _reaper_thread = threading.Thread(
        target=_reaper_loop,
        args=(reaper, interval_seconds),
        daemon=True,
        name="animation-sandbox-reaper",
    )
    _reaper_thread.start()
    logger.info("Sandbox reaper thread started")


def stop_sandbox_reaper() -> None:
    """Signal the reaper to stop and wait for it to exit."""
    global _reaper_thread  # noqa: PLW0603
    if _reaper_thread is None:
        return
    _shutdown_event.set()
    _reaper_thread.join(timeout=10)
    if _reaper_thread.is_alive():
        logger.warning("Sandbox reaper thread did not stop within timeout")
    _reaper_thread = None
    logger.info("Sandbox reaper thread stopped")
