"""Database operations for animation snapshot records."""

import datetime

from sqlalchemy import delete
from sqlalchemy import select
from sqlalchemy.orm import Session

from koda.db.enums import SandboxTemplate
from koda.db.models import AnimationSnapshot
from koda.utils.logger import setup_logger

logger = setup_logger()


def get_snapshot_for_node(
    db_session: Session, node_id: str
) -> AnimationSnapshot | None:
    stmt = select(AnimationSnapshot).where(AnimationSnapshot.node_id == node_id)
    return db_session.execute(stmt).scalar_one_or_none()


def upsert_snapshot__no_commit(
    db_session: Session,
    node_id: str,
    storage_key: str,
    size_bytes: int,
    checksum: str,
    file_count: int,
    source_subpath: str,
    template: SandboxTemplate,
) -> tuple[AnimationSnapshot, str | None]:
    """Point the node's snapshot record at a new blob.

    NOTE: This function uses flush() instead of commit(). The caller is
    responsible for committing the transaction when ready.

    Returns:
        The record and the storage key it pointed at before, if any
    """
    snapshot = get_snapshot_for_node(db_session, node_id)
    previous_key: str | None = None

    if snapshot is None:
        snapshot = AnimationSnapshot(node_id=node_id)
        db_session.add(snapshot)
    else:
        previous_key = snapshot.storage_key

    snapshot.storage_key = storage_key
    snapshot.size_bytes = size_bytes
    snapshot.checksum = checksum
    snapshot.file_count = file_count
    snapshot.source_subpath = source_subpath
    snapshot.template = template
    snapshot.created_at = datetime.datetime.now(datetime.timezone.utc)

    db_session.flush()
    return snapshot, previous_key


def delete_snapshot__no_commit(db_session: Session, node_id: str) -> str | None:
    """Delete the node's snapshot record.

    NOTE: This function uses flush() instead of commit(). The caller is
    responsible for committing the transaction when ready.

    Returns:
        The storage key of the deleted record, or None if there was none
    """
    snapshot = get_snapshot_for_node(db_session, node_id)
    if snapshot is None:
        return None

    storage_key = snapshot.storage_key
    db_session.execute(
        delete(AnimationSnapshot).where(AnimationSnapshot.node_id == node_id)
    )
    db_session.flush()
    return storage_key


def list_snapshot_storage_keys(db_session: Session) -> set[str]:
    """All storage keys currently referenced by a record."""
    stmt = select(AnimationSnapshot.storage_key)
    return set(db_session.execute(stmt).scalars().all())
