"""Public interface for animation sandbox operations.

SandboxService is the main entry point used by the API. It wires the
registry, provisioner, file gateway, snapshot manager and reaper around
one execution provider and one blob store, and serializes every operation
on the same node through a per-node lock.
"""

import threading

from koda.db.engine import get_session_with_default_tenant
from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_SNAPSHOT_SUBPATH
from koda.server.features.animation.errors import SandboxNotFoundError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import get_execution_provider
from koda.server.features.animation.sandbox.file_gateway import FileAccessGateway
from koda.server.features.animation.sandbox.locks import KeyedLock
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxFile
from koda.server.features.animation.sandbox.models import SandboxInstance
from koda.server.features.animation.sandbox.provisioner import Provisioner
from koda.server.features.animation.sandbox.reaper import SandboxReaper
from koda.server.features.animation.sandbox.registry import SandboxRegistry
from koda.server.features.animation.snapshot.manager import SessionScope
from koda.server.features.animation.snapshot.manager import SnapshotManager
from koda.server.features.animation.snapshot.models import SnapshotRecord
from koda.server.features.animation.snapshot.storage.base import BlobStore
from koda.server.features.animation.snapshot.storage.base import get_blob_store
from koda.utils.logger import setup_logger

logger = setup_logger()


class SandboxService:
    def __init__(
        self,
        provider: ExecutionProvider,
        blob_store: BlobStore,
        session_scope: SessionScope = get_session_with_default_tenant,
        provision_timeout: float | None = None,
    ) -> None:
        self.registry = SandboxRegistry()
        self.node_locks = KeyedLock()
        self.provider = provider

        self.snapshot_manager = SnapshotManager(
            provider=provider, blob_store=blob_store, session_scope=session_scope
        )
        provisioner_kwargs = (
            {"provision_timeout": provision_timeout}
            if provision_timeout is not None
            else {}
        )
        self.provisioner = Provisioner(
            registry=self.registry,
            provider=provider,
            snapshot_manager=self.snapshot_manager,
            **provisioner_kwargs,
        )
        self.gateway = FileAccessGateway(
            registry=self.registry, provider=provider, node_locks=self.node_locks
        )
        self.reaper = SandboxReaper(
            registry=self.registry,
            provider=provider,
            provisioner=self.provisioner,
            node_locks=self.node_locks,
            snapshot_manager=self.snapshot_manager,
        )

    # ---- lifecycle ----

    def provision(
        self,
        node_id: str,
        template: SandboxTemplate,
        restore_snapshot: bool = False,
    ) -> SandboxInstance:
        with self.node_locks.hold(node_id):
            sandbox_id = self.provisioner.provision(
                node_id, template, restore_snapshot=restore_snapshot
            )
            return self.get_instance(sandbox_id)

    def destroy(self, sandbox_id: str) -> None:
        """Destroy a sandbox. Unknown or already destroyed ids are a no-op."""
        instance = self.registry.get(sandbox_id)
        if instance is None:
            return
        with self.node_locks.hold(instance.node_id):
            self.provisioner.destroy(sandbox_id)

    def get_instance(self, sandbox_id: str) -> SandboxInstance:
        instance = self.registry.get(sandbox_id)
        if instance is None:
            raise SandboxNotFoundError(sandbox_id)
        return instance

    # ---- file access ----

    def read_file(self, sandbox_id: str, path: str | None) -> SandboxFile:
        return self.gateway.read_file(sandbox_id, path)

    def list_directory(
        self, sandbox_id: str, path: str | None = None
    ) -> list[FilesystemEntry]:
        return self.gateway.list_directory(sandbox_id, path)

    def write_file(self, sandbox_id: str, path: str | None, content: bytes) -> None:
        self.gateway.write_file(sandbox_id, path, content)

    def run_command(
        self, sandbox_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        return self.gateway.run_command(sandbox_id, command, timeout)

    def get_dev_server_url(self, sandbox_id: str) -> str:
        return self.gateway.get_dev_server_url(sandbox_id)

    # ---- snapshots ----

    def save_snapshot(
        self,
        node_id: str,
        sandbox_id: str,
        subpath: str | None = None,
    ) -> SnapshotRecord:
        """Capture a subtree of the node's live sandbox as its snapshot.

        Raises:
            SandboxNotFoundError: If the sandbox is unknown, not live, or
                belongs to another node
        """
        with self.node_locks.hold(node_id):
            instance = self.registry.get(sandbox_id)
            if (
                instance is None
                or instance.node_id != node_id
                or not instance.status.is_live()
                or instance.execution_ref is None
            ):
                raise SandboxNotFoundError(sandbox_id)

            try:
                record = self.snapshot_manager.save(
                    node_id,
                    instance.execution_ref,
                    subpath or SANDBOX_SNAPSHOT_SUBPATH,
                    instance.template,
                )
            except SubstrateError as e:
                self.registry.record_failure(sandbox_id, e.cause)
                self.registry.update_status(
                    sandbox_id, instance.status, SandboxStatus.ERROR
                )
                raise

            self.registry.touch(sandbox_id)
            return record

    def get_snapshot_metadata(self, node_id: str) -> SnapshotRecord | None:
        return self.snapshot_manager.get_metadata(node_id)

    def delete_snapshot(self, node_id: str) -> None:
        with self.node_locks.hold(node_id):
            self.snapshot_manager.delete(node_id)


# Singleton instance cache for the factory
_sandbox_service_instance: SandboxService | None = None
_sandbox_service_lock = threading.Lock()


def get_sandbox_service() -> SandboxService:
    """Get the process-wide SandboxService, built on first use.

    Uses the execution provider selected by SANDBOX_BACKEND and the blob
    store selected by SNAPSHOT_STORAGE_BACKEND.
    """
    global _sandbox_service_instance

    if _sandbox_service_instance is None:
        with _sandbox_service_lock:
            if _sandbox_service_instance is None:
                _sandbox_service_instance = SandboxService(
                    provider=get_execution_provider(),
                    blob_store=get_blob_store(),
                )

    return _sandbox_service_instance
