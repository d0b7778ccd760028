"""Local mirror of one parent inspection point, enriched with its joined children.

Typed columns are authoritative. `extra_json` holds remote attributes that
have no typed column; it is fallback-only and never duplicates a typed field.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, SoftDeleteMixin, TimestampMixin, UUIDMixin


class InspectionRecord(UUIDMixin, TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "inspection_record"
    __table_args__ = (
        Index("ix_inspection_record_codes", "action_code", "alt_action_code"),
    )

    object_id: Mapped[int | None] = mapped_column(Integer, default=None)
    relation_key: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    action_code: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    alt_action_code: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    north: Mapped[float | None] = mapped_column(Float, default=None)
    east: Mapped[float | None] = mapped_column(Float, default=None)
    zone: Mapped[str | None] = mapped_column(String(20), default=None)
    altitude: Mapped[float | None] = mapped_column(Float, default=None)

    component: Mapped[str | None] = mapped_column(String(300), default=None)
    sub_component: Mapped[str | None] = mapped_column(String(300), default=None)
    component_type: Mapped[str | None] = mapped_column(String(300), default=None)
    installation: Mapped[str | None] = mapped_column(String(300), default=None)
    modality: Mapped[str | None] = mapped_column(String(200), default=None)
    activity: Mapped[str | None] = mapped_column(String(300), default=None)
    sampling_point: Mapped[str | None] = mapped_column(String(200), default=None)
    supervisor_name: Mapped[str | None] = mapped_column(String(200), default=None)

    description: Mapped[str | None] = mapped_column(Text, default=None)
    findings: Mapped[str | None] = mapped_column(Text, default=None)
    # Up to ten per-photo description slots, index 0 -> slot 01.
    photo_descriptions: Mapped[list | None] = mapped_column(JSON, default=None)

    # Denormalized child text (multiple child rows joined with a separator).
    descriptions_text: Mapped[str | None] = mapped_column(Text, default=None)
    facts_text: Mapped[str | None] = mapped_column(Text, default=None)
    fact_descriptions_text: Mapped[str | None] = mapped_column(Text, default=None)

    # Raw child rows for consumers needing full fidelity.
    related_descriptions: Mapped[list | None] = mapped_column(JSON, default=None)
    related_facts: Mapped[list | None] = mapped_column(JSON, default=None)

    extra_json: Mapped[dict | None] = mapped_column(JSON, default=None)

    remote_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    remote_edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    remote_editor: Mapped[str | None] = mapped_column(String(200), default=None)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
