"""Filesystem-based execution provider for local/dev environments.

LocalExecutionProvider runs each sandbox as a directory on the local
filesystem, optionally with one long-running process (for example the
template's dev server) started in its work root.

Suitable for development, testing, and single-node deployments. There is
no container isolation, only path confinement to the sandbox directory.
"""

import subprocess
import tarfile
import threading
from pathlib import Path

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_BASE_PATH
from koda.server.features.animation.configs import SANDBOX_LOCAL_START_COMMAND
from koda.server.features.animation.configs import SANDBOX_TEMPLATES_PATH
from koda.server.features.animation.sandbox.archive import build_archive
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.local.internal.directory_manager import (
    DirectoryManager,
)
from koda.server.features.animation.sandbox.local.internal.process_manager import (
    ProcessManager,
)
from koda.server.features.animation.sandbox.local.internal.process_manager import (
    allocate_port,
)
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.utils.logger import setup_logger

logger = setup_logger()

COMMAND_TIMEOUT_EXIT_CODE = 124

# Kept beside the work root so snapshots never pick it up
PROCESS_LOG_NAME = "process.log"


class LocalExecutionProvider(ExecutionProvider):
    """Directory-per-sandbox execution provider.

    Key characteristics:
    - Sandboxes are directories under SANDBOX_BASE_PATH
    - The work root ({sandbox}/app) is seeded from SANDBOX_TEMPLATES_PATH
    - SANDBOX_LOCAL_START_COMMAND, if set, is started in the work root with
      PORT set to a free loopback port for its dev server
    - Every path is confined to the work root after symlink resolution
    """

    def __init__(
        self,
        base_path: Path | None = None,
        templates_path: Path | None = None,
        start_command: list[str] | None = None,
    ) -> None:
        self._directory_manager = DirectoryManager(
            base_path=base_path or Path(SANDBOX_BASE_PATH),
            templates_path=templates_path or Path(SANDBOX_TEMPLATES_PATH),
        )
        self._process_manager = ProcessManager()
        self._start_command = (
            start_command if start_command is not None else SANDBOX_LOCAL_START_COMMAND
        )

        # sandbox_id -> process started by start()
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._ports: dict[str, int] = {}
        self._processes_lock = threading.Lock()

    def _handle_for(self, sandbox_id: str) -> SandboxHandle:
        sandbox_path = self._directory_manager.get_sandbox_path(sandbox_id)
        return SandboxHandle(
            sandbox_id=sandbox_id,
            substrate_id=str(sandbox_path),
            work_root=str(self._directory_manager.get_work_path(sandbox_path)),
        )

    def _confine(self, handle: SandboxHandle, path: str) -> Path:
        """Resolve ``path`` and make sure it stays inside the work root.

        Raises:
            ExecutionResourceNotFoundError: If the sandbox directory is gone
            ExecutionFileNotFoundError: If the path escapes the work root
        """
        work_root = Path(handle.work_root)
        if not work_root.is_dir():
            raise ExecutionResourceNotFoundError(
                f"Sandbox {handle.sandbox_id} has no work root at {work_root}"
            )

        target_path = Path(path)
        try:
            target_path.resolve().relative_to(work_root.resolve())
        except ValueError:
            # symlink pointing outside; report as missing rather than leak
            raise ExecutionFileNotFoundError(f"Path escapes sandbox: {path}")
        return target_path

    def create(
        self,
        sandbox_id: str,
        template: SandboxTemplate,
        restore_archive: SandboxArchive | None = None,
    ) -> SandboxHandle:
        logger.info(f"Creating local sandbox {sandbox_id} from template {template.value}")

        try:
            sandbox_path = self._directory_manager.create_sandbox_directory(sandbox_id)
        except OSError as e:
            raise ExecutionProviderError(
                f"Failed to create sandbox directory for {sandbox_id}: {e}"
            ) from e

        try:
            self._directory_manager.setup_work_directory(sandbox_path, template)
            logger.debug(f"Work root ready for sandbox {sandbox_id}")

            if restore_archive is not None:
                file_count = self._directory_manager.restore_archive(
                    sandbox_path, restore_archive.data
                )
                logger.debug(
                    f"Restored {file_count} files into sandbox {sandbox_id}"
                )
        except (OSError, ValueError, tarfile.TarError) as e:
            logger.error(
                f"Local sandbox setup failed for {sandbox_id}: {e}", exc_info=True
            )
            self._directory_manager.cleanup_sandbox_directory(sandbox_path)
            raise ExecutionProviderError(
                f"Failed to set up sandbox {sandbox_id}: {e}"
            ) from e

        return self._handle_for(sandbox_id)

    def start(self, handle: SandboxHandle, timeout: float) -> bool:
        work_root = Path(handle.work_root)
        if not work_root.is_dir():
            raise ExecutionResourceNotFoundError(
                f"Sandbox {handle.sandbox_id} has no work root at {work_root}"
            )

        if not self._start_command:
            return True

        log_path = Path(handle.substrate_id) / PROCESS_LOG_NAME
        port = allocate_port()
        try:
            process = self._process_manager.start_process(
                work_root, self._start_command, log_path, env_vars={"PORT": str(port)}
            )
        except OSError as e:
            raise ExecutionProviderError(
                f"Failed to start process for sandbox {handle.sandbox_id}: {e}"
            ) from e

        with self._processes_lock:
            self._processes[handle.sandbox_id] = process
            self._ports[handle.sandbox_id] = port

        try:
            return self._process_manager.wait_for_startup(process, timeout, log_path)
        except RuntimeError as e:
            raise ExecutionProviderError(str(e)) from e

    def read_file(self, handle: SandboxHandle, path: str) -> bytes:
        target_path = self._confine(handle, path)
        if not target_path.is_file():
            raise ExecutionFileNotFoundError(f"Not a file: {path}")

        try:
            return target_path.read_bytes()
        except FileNotFoundError as e:
            raise ExecutionFileNotFoundError(f"Not a file: {path}") from e
        except OSError as e:
            raise ExecutionProviderError(f"Failed to read {path}: {e}") from e

    def write_file(self, handle: SandboxHandle, path: str, content: bytes) -> None:
        target_path = self._confine(handle, path)
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            target_path.write_bytes(content)
        except OSError as e:
            raise ExecutionProviderError(f"Failed to write {path}: {e}") from e

    def list_directory(
        self, handle: SandboxHandle, path: str
    ) -> list[FilesystemEntry]:
        target_path = self._confine(handle, path)
        if not target_path.is_dir():
            raise ExecutionFileNotFoundError(f"Not a directory: {path}")

        try:
            return self._directory_manager.list_directory(
                Path(handle.work_root), target_path
            )
        except OSError as e:
            raise ExecutionProviderError(f"Failed to list {path}: {e}") from e

    def run_command(
        self, handle: SandboxHandle, command: str, timeout: float
    ) -> CommandResult:
        work_root = Path(handle.work_root)
        if not work_root.is_dir():
            raise ExecutionResourceNotFoundError(
                f"Sandbox {handle.sandbox_id} has no work root at {work_root}"
            )

        try:
            completed = subprocess.run(
                ["/bin/sh", "-c", command],
                cwd=work_root,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                success=False,
                stdout=(e.stdout or b"").decode("utf-8", errors="replace"),
                stderr=f"Command timed out after {timeout}s",
                exit_code=COMMAND_TIMEOUT_EXIT_CODE,
            )
        except OSError as e:
            raise ExecutionProviderError(f"Failed to run command: {e}") from e

        return CommandResult(
            success=completed.returncode == 0,
            stdout=completed.stdout.decode("utf-8", errors="replace"),
            stderr=completed.stderr.decode("utf-8", errors="replace"),
            exit_code=completed.returncode,
        )

    def copy_out(self, handle: SandboxHandle, subpath: str) -> SandboxArchive:
        work_root = Path(handle.work_root)
        self._confine(handle, str(work_root / subpath))

        try:
            return build_archive(work_root, subpath)
        except FileNotFoundError as e:
            raise ExecutionFileNotFoundError(str(e)) from e
        except (OSError, tarfile.TarError) as e:
            raise ExecutionProviderError(
                f"Failed to archive {subpath} of sandbox {handle.sandbox_id}: {e}"
            ) from e

    def get_dev_server_url(self, handle: SandboxHandle) -> str:
        work_root = Path(handle.work_root)
        if not work_root.is_dir():
            raise ExecutionResourceNotFoundError(
                f"Sandbox {handle.sandbox_id} has no work root at {work_root}"
            )

        with self._processes_lock:
            port = self._ports.get(handle.sandbox_id)
        if port is None:
            raise ExecutionFileNotFoundError(
                f"Sandbox {handle.sandbox_id} has no dev server running"
            )
        return f"http://127.0.0.1:{port}"

    def destroy(self, handle: SandboxHandle) -> None:
        with self._processes_lock:
            process = self._processes.pop(handle.sandbox_id, None)
            self._ports.pop(handle.sandbox_id, None)

        terminated = False
        if process is not None:
            terminated = self._process_manager.terminate_process(process)

        sandbox_path = Path(handle.substrate_id)
        if not sandbox_path.exists():
            if terminated:
                return
            raise ExecutionResourceNotFoundError(
                f"Sandbox directory {sandbox_path} does not exist"
            )

        try:
            self._directory_manager.cleanup_sandbox_directory(sandbox_path)
        except OSError as e:
            raise ExecutionProviderError(
                f"Failed to clean up sandbox directory {sandbox_path}: {e}"
            ) from e

        logger.info(f"Destroyed local sandbox {handle.sandbox_id}")

    def list_resources(self) -> list[SandboxHandle]:
        return [
            self._handle_for(sandbox_id)
            for sandbox_id in self._directory_manager.list_sandbox_ids()
        ]
