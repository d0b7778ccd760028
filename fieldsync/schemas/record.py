"""Read-side schemas for mirrored records, photos and overlay edits."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class RecordOut(BaseModel):
    relation_key: str
    object_id: int | None = None
    action_code: str | None = None
    alt_action_code: str | None = None
    occurred_at: datetime | None = None

    north: float | None = None
    east: float | None = None
    zone: str | None = None
    altitude: float | None = None

    component: str | None = None
    sub_component: str | None = None
    component_type: str | None = None
    installation: str | None = None
    modality: str | None = None
    activity: str | None = None
    sampling_point: str | None = None
    supervisor_name: str | None = None

    description: str | None = None
    findings: str | None = None
    photo_descriptions: list[str | None] | None = None
    descriptions_text: str | None = None
    facts_text: str | None = None
    fact_descriptions_text: str | None = None

    related_descriptions: list[dict[str, Any]] = []
    related_facts: list[dict[str, Any]] = []
    extra: dict[str, Any] = {}

    remote_created_at: datetime | None = None
    remote_edited_at: datetime | None = None
    remote_editor: str | None = None

    fingerprint: str
    is_deleted: bool = False
    last_synced_at: datetime | None = None
    # Names of fields whose value came from a local edit.
    edited_fields: list[str] = []

    model_config = {"from_attributes": True}


class PhotoOut(BaseModel):
    relation_key: str
    file_name: str
    content_type: str | None = None
    size_bytes: int | None = None
    sha256: str | None = None
    local_path: str
    source_layer: int
    child_object_id: int | None = None
    attachment_id: int | None = None
    is_deleted: bool = False
    first_seen_at: datetime
    last_seen_at: datetime | None = None

    model_config = {"from_attributes": True}


class ScopeStateOut(BaseModel):
    scope_key: str
    record_count: int = 0
    last_sync: datetime | None = None
    last_success: datetime | None = None
    code_field: str | None = None


class FreshnessOut(BaseModel):
    needs_sync: bool
    reason: str
    minutes_since_sync: float | None = None


class OverlaySet(BaseModel):
    field: str
    value: str | None = None


class OverlayEntryOut(BaseModel):
    relation_key: str
    field_name: str
    value: str | None = None
    edited_at: datetime

    model_config = {"from_attributes": True}
