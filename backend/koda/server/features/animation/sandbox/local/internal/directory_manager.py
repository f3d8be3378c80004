"""Directory management for local sandbox lifecycle."""

import shutil
from datetime import datetime
from datetime import timezone
from pathlib import Path

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.sandbox.archive import extract_archive
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.utils.logger import setup_logger

logger = setup_logger()

WORK_DIR_NAME = "app"


class DirectoryManager:
    """Manages sandbox directory creation and cleanup.

    Layout:
    {base_path}/{sandbox_id}/
    └── app/            # work root, seeded from {templates_path}/{template}/
    """

    def __init__(self, base_path: Path, templates_path: Path) -> None:
        self._base_path = base_path
        self._templates_path = templates_path

    @property
    def base_path(self) -> Path:
        return self._base_path

    def get_sandbox_path(self, sandbox_id: str) -> Path:
        return self._base_path / sandbox_id

    def get_work_path(self, sandbox_path: Path) -> Path:
        return sandbox_path / WORK_DIR_NAME

    def create_sandbox_directory(self, sandbox_id: str) -> Path:
        """Create the sandbox directory. Fails if it already exists."""
        sandbox_path = self.get_sandbox_path(sandbox_id)
        self._base_path.mkdir(parents=True, exist_ok=True)
        sandbox_path.mkdir()
        return sandbox_path

    def setup_work_directory(
        self, sandbox_path: Path, template: SandboxTemplate
    ) -> Path:
        """Copy the template into the work root (or create it empty)."""
        work_path = self.get_work_path(sandbox_path)
        template_path = self._templates_path / template.value
        if template_path.is_dir():
            shutil.copytree(template_path, work_path, symlinks=True)
        else:
            logger.debug(
                f"No template directory at {template_path}, starting from empty work root"
            )
            work_path.mkdir(parents=True, exist_ok=True)
        return work_path

    def restore_archive(self, sandbox_path: Path, data: bytes) -> int:
        """Extract a snapshot archive over the template contents."""
        return extract_archive(data, self.get_work_path(sandbox_path))

    def cleanup_sandbox_directory(self, sandbox_path: Path) -> None:
        if sandbox_path.exists():
            shutil.rmtree(sandbox_path)

    def list_sandbox_ids(self) -> list[str]:
        if not self._base_path.is_dir():
            return []
        return sorted(item.name for item in self._base_path.iterdir() if item.is_dir())

    def list_directory(self, work_path: Path, target_path: Path) -> list[FilesystemEntry]:
        entries = []
        for item in target_path.iterdir():
            try:
                # lstat so dangling symlinks are listed instead of failing
                stat = item.lstat()
            except FileNotFoundError:
                # removed while listing
                continue
            entries.append(
                FilesystemEntry(
                    name=item.name,
                    path=item.relative_to(work_path).as_posix(),
                    is_directory=item.is_dir(),
                    size_bytes=stat.st_size if item.is_file() else None,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )

        return sorted(entries, key=lambda e: (not e.is_directory, e.name.lower()))
