"""User-entered local annotations layered over synced record fields."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


class OverlayEntry(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "edit_overlay"
    __table_args__ = (
        UniqueConstraint("relation_key", "field_name", name="uq_overlay_relation_field"),
    )

    relation_key: Mapped[str] = mapped_column(String(64), index=True)
    field_name: Mapped[str] = mapped_column(String(100))
    value: Mapped[str | None] = mapped_column(Text, default=None)
    edited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
