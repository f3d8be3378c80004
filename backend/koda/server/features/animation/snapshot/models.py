from datetime import datetime

from pydantic import BaseModel

from koda.db.enums import SandboxTemplate
from koda.db.models import AnimationSnapshot


class SnapshotRecord(BaseModel):
    """Metadata of the latest snapshot saved for a node."""

    node_id: str
    storage_key: str
    size_bytes: int
    checksum: str
    file_count: int
    source_subpath: str
    template: SandboxTemplate
    created_at: datetime

    @classmethod
    def from_model(cls, snapshot: AnimationSnapshot) -> "SnapshotRecord":
        return cls(
            node_id=snapshot.node_id,
            storage_key=snapshot.storage_key,
            size_bytes=snapshot.size_bytes,
            checksum=snapshot.checksum,
            file_count=snapshot.file_count,
            source_subpath=snapshot.source_subpath,
            template=snapshot.template,
            created_at=snapshot.created_at,
        )
