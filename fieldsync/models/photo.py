"""Attachment rows belonging to a record's children."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, SoftDeleteMixin, TimestampMixin, UUIDMixin


class InspectionPhoto(UUIDMixin, TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "inspection_photo"
    __table_args__ = (
        UniqueConstraint("relation_key", "file_name", name="uq_photo_relation_file"),
    )

    relation_key: Mapped[str] = mapped_column(String(64), index=True)
    file_name: Mapped[str] = mapped_column(String(500))
    content_type: Mapped[str | None] = mapped_column(String(200), default=None)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, default=None)
    sha256: Mapped[str | None] = mapped_column(String(64), default=None)
    local_path: Mapped[str] = mapped_column(Text)

    source_layer: Mapped[int] = mapped_column(Integer)
    child_object_id: Mapped[int | None] = mapped_column(Integer, default=None)
    attachment_id: Mapped[int | None] = mapped_column(Integer, default=None)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
