"""Sync trigger and job schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class SyncStartRequest(BaseModel):
    """Exactly one of action_code / filter / all_records selects the scope."""

    action_code: str | None = None
    filter: dict[str, Any] | None = None
    all_records: bool = False
    mode: Literal["full", "incremental"] = "full"
    since: datetime | None = None
    force_attachments: bool = False
    sync_attachments: bool = True
    on_conflict: Literal["reject", "queue"] = "reject"


class SyncStarted(BaseModel):
    job_id: str
    scope: str


class SyncErrorOut(BaseModel):
    kind: str
    message: str
    relation_key: str | None = None


class JobProgress(BaseModel):
    job_id: str
    scope: str
    status: str
    state: str
    fetched: int = 0
    total: int = 0
    photos_done: int = 0
    photos_total: int = 0
    errors: list[SyncErrorOut] = []
    created_at: datetime
    finished_at: datetime | None = None
    report: dict[str, Any] | None = None


class SyncLogOut(BaseModel):
    scope_key: str
    mode: str
    outcome: str
    final_state: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    records_before: int = 0
    records_after: int = 0
    records_new: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_soft_deleted: int = 0
    rows_missing_key: int = 0
    orphan_children: int = 0
    soft_delete_skipped: bool = False
    photos_downloaded: int = 0
    photos_failed: int = 0
    photos_soft_deleted: int = 0
    error_message: str | None = None

    model_config = {"from_attributes": True}
