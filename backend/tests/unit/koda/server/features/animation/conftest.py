"""Shared fixtures for animation sandbox tests.

FakeExecutionProvider keeps each sandbox's files in memory, so the
registry / provisioner / gateway / snapshot logic can be exercised without
touching a real substrate.
"""

import io
import tarfile
import threading
from collections.abc import Generator
from pathlib import Path

import pytest

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.sandbox.archive import list_archive_files
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.manager import SandboxService
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.server.features.animation.snapshot.storage.local import LocalBlobStore

WORK_ROOT = "/app"
DEV_SERVER_URL = "http://dev-server.test:5173"


class FakeExecutionProvider(ExecutionProvider):
    """In-memory provider. Failure knobs are plain attributes tests can set."""

    def __init__(self) -> None:
        self.sandboxes: dict[str, dict[str, bytes]] = {}
        self.template_files: dict[str, bytes] = {"src/index.ts": b"export {}\n"}
        self.lock = threading.Lock()

        self.start_result = True
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.read_error: Exception | None = None
        self.destroy_error: Exception | None = None
        self.dev_server_url = DEV_SERVER_URL
        self.dev_server_error: Exception | None = None

        self.create_calls = 0
        self.read_calls = 0
        self.destroy_calls: list[str] = []

    def _files(self, handle: SandboxHandle) -> dict[str, bytes]:
        files = self.sandboxes.get(handle.sandbox_id)
        if files is None:
            raise ExecutionResourceNotFoundError(handle.sandbox_id)
        return files

    def _relative(self, path: str) -> str:
        return path[len(WORK_ROOT) + 1 :] if path.startswith(WORK_ROOT + "/") else "."

    def create(
        self,
        sandbox_id: str,
        template: SandboxTemplate,
        restore_archive: SandboxArchive | None = None,
    ) -> SandboxHandle:
        self.create_calls += 1
        if self.create_error is not None:
            raise self.create_error

        files = dict(self.template_files)
        if restore_archive is not None:
            files.update(list_archive_files(restore_archive.data))
        with self.lock:
            self.sandboxes[sandbox_id] = files
        return SandboxHandle(
            sandbox_id=sandbox_id,
            substrate_id=f"fake-{sandbox_id[:8]}",
            work_root=WORK_ROOT,
        )

    def start(self, handle: SandboxHandle, timeout: float) -> bool:
        if self.start_error is not None:
            raise self.start_error
        self._files(handle)
        return self.start_result

    def read_file(self, handle: SandboxHandle, path: str) -> bytes:
        self.read_calls += 1
        if self.read_error is not None:
            raise self.read_error
        files = self._files(handle)
        relative = self._relative(path)
        if relative not in files:
            raise ExecutionFileNotFoundError(path)
        return files[relative]

    def write_file(self, handle: SandboxHandle, path: str, content: bytes) -> None:
        self._files(handle)[self._relative(path)] = content

    def list_directory(
        self, handle: SandboxHandle, path: str
    ) -> list[FilesystemEntry]:
        files = self._files(handle)
        prefix = self._relative(path)
        prefix = "" if prefix == "." else prefix + "/"
        names: dict[str, bool] = {}
        for name in files:
            if not name.startswith(prefix):
                continue
            head, _, rest = name[len(prefix) :].partition("/")
            names[head] = names.get(head, False) or bool(rest)
        if not names:
            raise ExecutionFileNotFoundError(path)
        return [
            FilesystemEntry(
                name=name,
                path=f"{prefix}{name}",
                is_directory=is_dir,
                size_bytes=None if is_dir else len(files[f"{prefix}{name}"]),
                modified_at=None,
            )
            for name, is_dir in sorted(names.items(), key=lambda i: (not i[1], i[0]))
        ]

    def run_command(
        self, handle: SandboxHandle, command: str, timeout: float
    ) -> CommandResult:
        self._files(handle)
        return CommandResult(success=True, stdout=command, stderr="", exit_code=0)

    def copy_out(self, handle: SandboxHandle, subpath: str) -> SandboxArchive:
        files = self._files(handle)
        selected = {
            name: data
            for name, data in files.items()
            if name == subpath or name.startswith(subpath + "/")
        }
        if not selected:
            raise ExecutionFileNotFoundError(subpath)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for name, data in sorted(selected.items()):
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        return SandboxArchive(data=buffer.getvalue(), file_count=len(selected))

    def get_dev_server_url(self, handle: SandboxHandle) -> str:
        self._files(handle)
        if self.dev_server_error is not None:
            raise self.dev_server_error
        return self.dev_server_url

    def destroy(self, handle: SandboxHandle) -> None:
        self.destroy_calls.append(handle.sandbox_id)
        if self.destroy_error is not None:
            raise self.destroy_error
        with self.lock:
            if self.sandboxes.pop(handle.sandbox_id, None) is None:
                raise ExecutionResourceNotFoundError(handle.sandbox_id)

    def list_resources(self) -> list[SandboxHandle]:
        with self.lock:
            ids = list(self.sandboxes)
        return [
            SandboxHandle(sandbox_id=i, substrate_id=f"fake-{i[:8]}", work_root=WORK_ROOT)
            for i in ids
        ]


@pytest.fixture
def fake_provider() -> FakeExecutionProvider:
    return FakeExecutionProvider()


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path / "blobs")


@pytest.fixture
def service(
    db_engine: None,
    fake_provider: FakeExecutionProvider,
    blob_store: LocalBlobStore,
) -> Generator[SandboxService, None, None]:
    yield SandboxService(
        provider=fake_provider, blob_store=blob_store, provision_timeout=5
    )
