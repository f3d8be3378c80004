"""Access to files and the dev server inside live sandboxes.

Every request goes through the same steps:
1. Validate the requested path (InvalidPathError before any lookup or I/O)
2. Look up the instance; anything not running/idle is not found
3. Call the provider under the node's lock, so a concurrent destroy cannot
   tear the sandbox down mid-read
4. Record the access, which also wakes an idle sandbox

A missing file leaves the instance untouched. Any other substrate failure
marks the instance as errored for the reaper and raises SubstrateError.
"""

import posixpath
from collections.abc import Callable
from typing import TypeVar

from koda.db.enums import SandboxStatus
from koda.server.features.animation.configs import SANDBOX_COMMAND_TIMEOUT_SECONDS
from koda.server.features.animation.configs import SANDBOX_MAX_COMMAND_TIMEOUT_SECONDS
from koda.server.features.animation.errors import SandboxFileNotFoundError
from koda.server.features.animation.errors import SandboxNotFoundError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.locks import KeyedLock
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxFile
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.server.features.animation.sandbox.path_validator import (
    resolve_in_work_root,
)
from koda.server.features.animation.sandbox.path_validator import (
    validate_sandbox_path,
)
from koda.server.features.animation.sandbox.registry import SandboxRegistry
from koda.utils.logger import setup_logger

logger = setup_logger()

T = TypeVar("T")

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".json": "application/json",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".css": "text/css",
    ".html": "text/html",
    ".txt": "text/plain",
}


def get_content_type(path: str) -> str:
    _, ext = posixpath.splitext(path)
    return CONTENT_TYPES.get(ext.lower(), DEFAULT_CONTENT_TYPE)


class FileAccessGateway:
    def __init__(
        self,
        registry: SandboxRegistry,
        provider: ExecutionProvider,
        node_locks: KeyedLock,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._node_locks = node_locks

    def _call_live(
        self,
        sandbox_id: str,
        operation: Callable[[SandboxHandle], T],
        missing: Callable[[], Exception],
    ) -> T:
        instance = self._registry.get(sandbox_id)
        if instance is None:
            raise SandboxNotFoundError(sandbox_id)

        with self._node_locks.hold(instance.node_id):
            # status may have changed while waiting for the lock
            instance = self._registry.get(sandbox_id)
            if (
                instance is None
                or not instance.status.is_live()
                or instance.execution_ref is None
            ):
                raise SandboxNotFoundError(sandbox_id)

            try:
                result = operation(instance.execution_ref)
            except ExecutionFileNotFoundError as e:
                raise missing() from e
            except ExecutionProviderError as e:
                logger.error(f"Sandbox {sandbox_id} failed serving a request: {e}")
                self._registry.record_failure(sandbox_id, str(e))
                self._registry.update_status(
                    sandbox_id, instance.status, SandboxStatus.ERROR
                )
                raise SubstrateError(sandbox_id, str(e)) from e

            self._registry.touch(sandbox_id)
            return result

    def read_file(self, sandbox_id: str, requested_path: str | None) -> SandboxFile:
        """Read a file from a live sandbox.

        Raises:
            InvalidPathError: If the path is empty, absolute or traverses upward
            SandboxNotFoundError: If the sandbox is unknown or not running/idle
            SandboxFileNotFoundError: If the file does not exist
            SubstrateError: If the sandbox failed while reading
        """
        path = validate_sandbox_path(requested_path)

        content = self._call_live(
            sandbox_id,
            lambda handle: self._provider.read_file(
                handle, resolve_in_work_root(handle.work_root, path)
            ),
            lambda: SandboxFileNotFoundError(sandbox_id, path),
        )
        return SandboxFile(content=content, content_type=get_content_type(path))

    def list_directory(
        self, sandbox_id: str, requested_path: str | None = None
    ) -> list[FilesystemEntry]:
        path = validate_sandbox_path(requested_path, allow_root=True)

        return self._call_live(
            sandbox_id,
            lambda handle: self._provider.list_directory(
                handle, resolve_in_work_root(handle.work_root, path)
            ),
            lambda: SandboxFileNotFoundError(sandbox_id, path),
        )

    def write_file(
        self, sandbox_id: str, requested_path: str | None, content: bytes
    ) -> None:
        path = validate_sandbox_path(requested_path)

        self._call_live(
            sandbox_id,
            lambda handle: self._provider.write_file(
                handle, resolve_in_work_root(handle.work_root, path), content
            ),
            lambda: SandboxFileNotFoundError(sandbox_id, path),
        )

    def run_command(
        self, sandbox_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Run a shell command in the sandbox's work root.

        The timeout is clamped to SANDBOX_MAX_COMMAND_TIMEOUT_SECONDS. A
        command that fails or times out is a result, not a substrate error.
        """
        effective_timeout = min(
            timeout or SANDBOX_COMMAND_TIMEOUT_SECONDS,
            SANDBOX_MAX_COMMAND_TIMEOUT_SECONDS,
        )

        return self._call_live(
            sandbox_id,
            lambda handle: self._provider.run_command(
                handle, command, effective_timeout
            ),
            lambda: SandboxNotFoundError(sandbox_id),
        )

    def get_dev_server_url(self, sandbox_id: str) -> str:
        """Base URL of a live sandbox's dev server, for the preview proxy.

        Raises:
            SandboxNotFoundError: If the sandbox is unknown, not running/idle,
                or runs no dev server
            SubstrateError: If the sandbox failed while being looked up
        """
        return self._call_live(
            sandbox_id,
            self._provider.get_dev_server_url,
            lambda: SandboxNotFoundError(sandbox_id),
        )
