"""Provisioning and teardown of sandbox instances.

Provisioning registers the instance as PROVISIONING before any substrate
work, so the reaper can always tie a substrate resource back to a registry
entry. A failure at any step leaves the instance in ERROR with the cause
recorded, attempts a teardown, and moves it to DESTROYED only if the
teardown succeeded.
"""

from datetime import datetime
from datetime import timezone
from uuid import uuid4

from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_PROVISION_TIMEOUT_SECONDS
from koda.server.features.animation.configs import SANDBOX_WORK_ROOT
from koda.server.features.animation.errors import ProvisionFailureError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.server.features.animation.sandbox.models import SandboxInstance
from koda.server.features.animation.sandbox.registry import SandboxRegistry
from koda.server.features.animation.snapshot.manager import SnapshotManager
from koda.utils.logger import setup_logger

logger = setup_logger()


class Provisioner:
    def __init__(
        self,
        registry: SandboxRegistry,
        provider: ExecutionProvider,
        snapshot_manager: SnapshotManager,
        provision_timeout: float = SANDBOX_PROVISION_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._snapshot_manager = snapshot_manager
        self._provision_timeout = provision_timeout

    def provision(
        self,
        node_id: str,
        template: SandboxTemplate,
        restore_snapshot: bool = False,
    ) -> str:
        """Create a sandbox for ``node_id`` and wait until it is running.

        Callers must hold the node's lock.

        Returns:
            The new sandbox id

        Raises:
            SandboxConflictError: If the node already has an active sandbox
            SnapshotNotFoundError: If a restore was requested but none exists
            StorageFailureError: If the snapshot could not be fetched
            ProvisionFailureError: If the substrate failed or timed out
        """
        node_logger = setup_logger(extra={"node": node_id})

        restore_archive: SandboxArchive | None = None
        if restore_snapshot:
            # raises SnapshotNotFoundError before any substrate work
            restore_archive = self._snapshot_manager.restore(node_id)
            node_logger.debug(
                f"Fetched snapshot with {restore_archive.file_count} files for restore"
            )

        now = datetime.now(timezone.utc)
        sandbox_id = str(uuid4())
        self._registry.register(
            SandboxInstance(
                id=sandbox_id,
                node_id=node_id,
                status=SandboxStatus.PROVISIONING,
                template=template,
                created_at=now,
                last_accessed_at=now,
                work_root=SANDBOX_WORK_ROOT,
                restored_from_snapshot=restore_archive is not None,
                status_changed_at=now,
            )
        )
        node_logger.info(f"Provisioning sandbox {sandbox_id} ({template.value})")

        handle: SandboxHandle | None = None
        try:
            handle = self._provider.create(
                sandbox_id, template, restore_archive=restore_archive
            )
            self._registry.set_execution_ref(sandbox_id, handle)
            node_logger.debug(f"Substrate resource {handle.substrate_id} created")

            if not self._provider.start(handle, self._provision_timeout):
                raise ExecutionProviderError(
                    f"Timed out after {self._provision_timeout}s waiting for sandbox"
                )
        except Exception as e:
            self._fail_provisioning(sandbox_id, handle, str(e))
            raise ProvisionFailureError(
                sandbox_id, str(e), handle.substrate_id if handle else None
            ) from e

        if not self._registry.update_status(
            sandbox_id, SandboxStatus.PROVISIONING, SandboxStatus.RUNNING
        ):
            # someone destroyed it while we were waiting on the substrate
            raise ProvisionFailureError(sandbox_id, "Sandbox was destroyed during start")

        node_logger.info(f"Sandbox {sandbox_id} is running")
        return sandbox_id

    def _fail_provisioning(
        self, sandbox_id: str, handle: SandboxHandle | None, cause: str
    ) -> None:
        substrate_id = handle.substrate_id if handle else "none"
        logger.error(
            f"Provisioning sandbox {sandbox_id} failed "
            f"(substrate resource {substrate_id}): {cause}"
        )
        self._registry.record_failure(
            sandbox_id, f"{cause} (substrate resource {substrate_id})"
        )
        self._registry.update_status(
            sandbox_id, SandboxStatus.PROVISIONING, SandboxStatus.ERROR
        )

        if handle is None:
            # nothing was created on the substrate
            self._registry.update_status(
                sandbox_id, SandboxStatus.ERROR, SandboxStatus.DESTROYED
            )
            return

        try:
            self._teardown(handle)
        except Exception as e:
            logger.warning(
                f"Teardown of failed sandbox {sandbox_id} failed, "
                f"leaving it for the reaper: {e}"
            )
            return

        self._registry.update_status(
            sandbox_id, SandboxStatus.ERROR, SandboxStatus.DESTROYED
        )

    def _teardown(self, handle: SandboxHandle) -> None:
        try:
            self._provider.destroy(handle)
        except ExecutionResourceNotFoundError:
            logger.debug(f"Sandbox {handle.sandbox_id} already gone from substrate")

    def destroy(self, sandbox_id: str) -> None:
        """Release a sandbox. Unknown or already destroyed ids are a no-op.

        Callers must hold the node's lock.

        Raises:
            SubstrateError: If the substrate failed to release the sandbox.
                The instance is left in ERROR for the reaper to retry.
        """
        instance = self._registry.get(sandbox_id)
        if instance is None or instance.status == SandboxStatus.DESTROYED:
            return

        if instance.status == SandboxStatus.PROVISIONING:
            # not created yet from the caller's view; fail it first
            self._registry.update_status(
                sandbox_id, SandboxStatus.PROVISIONING, SandboxStatus.ERROR
            )
            instance = self._registry.get(sandbox_id)
            if instance is None:
                return

        if instance.execution_ref is not None:
            try:
                self._teardown(instance.execution_ref)
            except ExecutionProviderError as e:
                self._registry.record_failure(sandbox_id, f"Teardown failed: {e}")
                if instance.status != SandboxStatus.ERROR:
                    self._registry.update_status(
                        sandbox_id, instance.status, SandboxStatus.ERROR
                    )
                raise SubstrateError(sandbox_id, str(e)) from e

        if self._registry.update_status(
            sandbox_id, instance.status, SandboxStatus.DESTROYED
        ):
            logger.info(f"Destroyed sandbox {sandbox_id}")
