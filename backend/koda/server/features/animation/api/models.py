from datetime import datetime

from pydantic import BaseModel

from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxInstance
from koda.server.features.animation.snapshot.models import SnapshotRecord


# ===== Sandbox Models =====
class SandboxCreateRequest(BaseModel):
    node_id: str
    template: SandboxTemplate = SandboxTemplate.REMOTION
    restore_snapshot: bool = False


class SandboxResponse(BaseModel):
    """Sandbox state as reported to the UI."""

    id: str
    node_id: str
    status: SandboxStatus
    template: SandboxTemplate
    created_at: datetime
    last_accessed_at: datetime
    restored_from_snapshot: bool
    error_detail: str | None

    @classmethod
    def from_instance(cls, instance: SandboxInstance) -> "SandboxResponse":
        return cls(
            id=instance.id,
            node_id=instance.node_id,
            status=instance.status,
            template=instance.template,
            created_at=instance.created_at,
            last_accessed_at=instance.last_accessed_at,
            restored_from_snapshot=instance.restored_from_snapshot,
            error_detail=instance.error_detail,
        )


class DirectoryListingResponse(BaseModel):
    path: str
    entries: list[FilesystemEntry]


# ===== Snapshot Models =====
class SnapshotSaveRequest(BaseModel):
    sandbox_id: str
    subpath: str | None = None


class SnapshotMetadata(BaseModel):
    node_id: str
    size_bytes: int
    checksum: str
    file_count: int
    template: SandboxTemplate
    source_subpath: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: SnapshotRecord) -> "SnapshotMetadata":
        return cls(
            node_id=record.node_id,
            size_bytes=record.size_bytes,
            checksum=record.checksum,
            file_count=record.file_count,
            template=record.template,
            source_subpath=record.source_subpath,
            created_at=record.created_at,
        )


class SnapshotStatusResponse(BaseModel):
    exists: bool
    metadata: SnapshotMetadata | None = None


class SuccessResponse(BaseModel):
    success: bool = True
