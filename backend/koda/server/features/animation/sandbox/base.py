"""Abstract execution provider and factory.

ExecutionProvider is the capability interface over whatever actually runs
sandbox code (a local directory + process, a Kubernetes pod, ...).
Use get_execution_provider() to get the implementation selected by
SANDBOX_BACKEND.

IMPORTANT: ExecutionProvider implementations must NOT touch the sandbox
registry or snapshot storage. Status bookkeeping is the caller's job
(Provisioner, FileAccessGateway, SandboxReaper).
"""

import threading
from abc import ABC
from abc import abstractmethod

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_BACKEND
from koda.server.features.animation.configs import SandboxBackend
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.utils.logger import setup_logger

logger = setup_logger()


class ExecutionProviderError(Exception):
    """The substrate failed an operation."""


class ExecutionResourceNotFoundError(ExecutionProviderError):
    """The substrate resource behind a handle no longer exists."""


class ExecutionFileNotFoundError(ExecutionProviderError):
    """The sandbox is alive but the requested path does not exist."""


class ExecutionProvider(ABC):
    """Abstract interface over a sandbox execution substrate.

    Paths passed to file operations are absolute paths inside the sandbox,
    already validated and resolved against ``handle.work_root``.
    """

    @abstractmethod
    def create(
        self,
        sandbox_id: str,
        template: SandboxTemplate,
        restore_archive: SandboxArchive | None = None,
    ) -> SandboxHandle:
        """Create (but do not wait for) the substrate resource for a sandbox.

        Args:
            sandbox_id: Registry id of the sandbox being provisioned
            template: Which sandbox template/image to seed from
            restore_archive: Optional snapshot archive to extract into the
                work root before the sandbox is reported ready

        Returns:
            Handle used for every later call

        Raises:
            ExecutionProviderError: If the resource could not be created
        """
        ...

    @abstractmethod
    def start(self, handle: SandboxHandle, timeout: float) -> bool:
        """Start the sandbox and wait until it is ready.

        Returns:
            True once ready, False if ``timeout`` seconds elapsed first

        Raises:
            ExecutionProviderError: If the sandbox failed to start
        """
        ...

    @abstractmethod
    def read_file(self, handle: SandboxHandle, path: str) -> bytes:
        """Read a whole file.

        Raises:
            ExecutionFileNotFoundError: If the path is missing or not a file
            ExecutionProviderError: On any other substrate failure
        """
        ...

    @abstractmethod
    def write_file(self, handle: SandboxHandle, path: str, content: bytes) -> None:
        """Write a file, creating parent directories as needed."""
        ...

    @abstractmethod
    def list_directory(
        self, handle: SandboxHandle, path: str
    ) -> list[FilesystemEntry]:
        """List a directory. Entry paths are relative to the work root.

        Raises:
            ExecutionFileNotFoundError: If the path is missing or not a directory
        """
        ...

    @abstractmethod
    def run_command(
        self, handle: SandboxHandle, command: str, timeout: float
    ) -> CommandResult:
        """Run a shell command in the work root and wait for it."""
        ...

    @abstractmethod
    def copy_out(self, handle: SandboxHandle, subpath: str) -> SandboxArchive:
        """Archive a subtree (relative to the work root) as a gzipped tarball.

        Member names are relative to the work root so the archive can be
        extracted straight into another sandbox's work root.
        """
        ...

    @abstractmethod
    def get_dev_server_url(self, handle: SandboxHandle) -> str:
        """Base URL of the template's dev server, reachable from this process.

        Raises:
            ExecutionFileNotFoundError: If the sandbox runs no dev server
            ExecutionResourceNotFoundError: If the sandbox no longer exists
        """
        ...

    @abstractmethod
    def destroy(self, handle: SandboxHandle) -> None:
        """Release every substrate resource behind the handle.

        Raises:
            ExecutionResourceNotFoundError: If nothing exists for the handle
        """
        ...

    @abstractmethod
    def list_resources(self) -> list[SandboxHandle]:
        """List every sandbox resource this provider currently holds.

        Used by the reaper to find orphans left behind by a crash or restart.
        """
        ...


# Singleton instance cache for the factory
_execution_provider_instance: ExecutionProvider | None = None
_execution_provider_lock = threading.Lock()


def get_execution_provider() -> ExecutionProvider:
    """Get the ExecutionProvider implementation selected by SANDBOX_BACKEND.

    Returns:
        - LocalExecutionProvider for the local backend (development)
        - KubernetesExecutionProvider for the kubernetes backend (production)
    """
    global _execution_provider_instance

    if _execution_provider_instance is None:
        with _execution_provider_lock:
            if _execution_provider_instance is None:
                if SANDBOX_BACKEND == SandboxBackend.LOCAL:
                    from koda.server.features.animation.sandbox.local.provider import (
                        LocalExecutionProvider,
                    )

                    _execution_provider_instance = LocalExecutionProvider()
                elif SANDBOX_BACKEND == SandboxBackend.KUBERNETES:
                    from koda.server.features.animation.sandbox.kubernetes.provider import (
                        KubernetesExecutionProvider,
                    )

                    _execution_provider_instance = KubernetesExecutionProvider()
                else:
                    raise ValueError(f"Unknown sandbox backend: {SANDBOX_BACKEND}")

                logger.info(
                    "Using "
                    f"{type(_execution_provider_instance).__name__} for sandbox execution"
                )

    return _execution_provider_instance
