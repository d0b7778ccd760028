"""Per-scope sync bookkeeping and the append-only sync log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


class SyncScopeState(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "sync_scope_state"

    scope_key: Mapped[str] = mapped_column(String(300), unique=True, index=True)
    scope_kind: Mapped[str] = mapped_column(String(20))  # action_code/all/filter
    # Which remote field resolved an action-code scope (primary or alternate).
    code_field: Mapped[str | None] = mapped_column(String(20), default=None)

    record_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class SyncLogEntry(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "sync_log"

    scope_key: Mapped[str] = mapped_column(String(300), index=True)
    mode: Mapped[str] = mapped_column(String(20))
    # running -> success/partial/failed/cancelled
    outcome: Mapped[str] = mapped_column(String(20), default="running", index=True)
    final_state: Mapped[str | None] = mapped_column(String(30), default=None)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    duration_ms: Mapped[int | None] = mapped_column(Integer, default=None)

    records_before: Mapped[int] = mapped_column(Integer, default=0)
    records_after: Mapped[int] = mapped_column(Integer, default=0)
    records_new: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    records_soft_deleted: Mapped[int] = mapped_column(Integer, default=0)
    rows_missing_key: Mapped[int] = mapped_column(Integer, default=0)
    orphan_children: Mapped[int] = mapped_column(Integer, default=0)
    soft_delete_skipped: Mapped[bool] = mapped_column(Boolean, default=False)

    photos_downloaded: Mapped[int] = mapped_column(Integer, default=0)
    photos_failed: Mapped[int] = mapped_column(Integer, default=0)
    photos_soft_deleted: Mapped[int] = mapped_column(Integer, default=0)

    errors_json: Mapped[list | None] = mapped_column(JSON, default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
