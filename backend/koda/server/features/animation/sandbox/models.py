"""Pydantic models for sandbox module communication."""

from datetime import datetime

from pydantic import BaseModel
from pydantic import ConfigDict

from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate


class SandboxHandle(BaseModel):
    """Opaque reference into the execution provider.

    Only providers look inside; everything else passes it through.
    """

    model_config = ConfigDict(frozen=True)

    sandbox_id: str
    substrate_id: str
    work_root: str


class SandboxInstance(BaseModel):
    """State of one sandbox as tracked by the SandboxRegistry."""

    id: str
    node_id: str
    status: SandboxStatus
    template: SandboxTemplate
    created_at: datetime
    last_accessed_at: datetime
    work_root: str
    execution_ref: SandboxHandle | None = None
    restored_from_snapshot: bool = False
    error_detail: str | None = None
    # when status last changed, used for tombstone retention
    status_changed_at: datetime


class SandboxArchive(BaseModel):
    """A gzipped tarball of a sandbox subtree, paths relative to the work root."""

    data: bytes
    file_count: int


class SandboxFile(BaseModel):
    content: bytes
    content_type: str


class FilesystemEntry(BaseModel):
    """A file or directory inside a sandbox, used for directory listings."""

    name: str
    path: str
    is_directory: bool
    size_bytes: int | None
    modified_at: datetime | None


class CommandResult(BaseModel):
    success: bool
    stdout: str
    stderr: str
    exit_code: int
