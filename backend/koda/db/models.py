import datetime

from sqlalchemy import BigInteger
from sqlalchemy import DateTime
from sqlalchemy import Enum
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import func
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column

from koda.db.enums import SandboxTemplate


class Base(DeclarativeBase):
    pass


class AnimationSnapshot(Base):
    """Pointer to the latest durable snapshot of a canvas node's sandbox output.

    One row per node. A new save writes a fresh blob and then swaps the
    storage_key on this row; blob contents are never rewritten in place.
    """

    __tablename__ = "animation_snapshot"

    node_id: Mapped[str] = mapped_column(String, primary_key=True)
    storage_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_subpath: Mapped[str] = mapped_column(String, nullable=False)
    template: Mapped[SandboxTemplate] = mapped_column(
        Enum(SandboxTemplate, native_enum=False), nullable=False
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<AnimationSnapshot(node_id={self.node_id}, "
            f"storage_key={self.storage_key}, size_bytes={self.size_bytes})>"
        )
