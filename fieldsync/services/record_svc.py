"""Record service - read accessors over the local mirror.

Everything reporting and the assistant read goes through here. Overlay edits
are merged into the returned objects as the last step and never written back
into record rows.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.photo import InspectionPhoto
from ..models.record import InspectionRecord
from ..schemas.record import FreshnessOut, RecordOut, ScopeStateOut
from ..sync.field_mapper import normalize_relation_key
from ..sync.overlay import load_overlays
from ..sync.scope import FULL_MIRROR_KEY
from ..sync.store import get_scope_state as _load_scope_state

_NESTED_FIELDS = {"related_descriptions", "related_facts", "extra", "edited_fields"}
_COLUMN_FIELDS = [name for name in RecordOut.model_fields if name not in _NESTED_FIELDS]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_record_out(record: InspectionRecord, overlay: dict[str, str | None] | None = None) -> RecordOut:
    data = {name: getattr(record, name) for name in _COLUMN_FIELDS}
    data["related_descriptions"] = list(record.related_descriptions or [])
    data["related_facts"] = list(record.related_facts or [])
    data["extra"] = dict(record.extra_json or {})

    edited: list[str] = []
    for field_name, value in (overlay or {}).items():
        if field_name in _COLUMN_FIELDS:
            data[field_name] = value
            edited.append(field_name)
    data["edited_fields"] = sorted(edited)
    return RecordOut(**data)


async def _merge(db: AsyncSession, records: list[InspectionRecord]) -> list[RecordOut]:
    overlays = await load_overlays(db, (r.relation_key for r in records))
    return [to_record_out(r, overlays.get(r.relation_key)) for r in records]


async def get_records(
    db: AsyncSession,
    action_code: str | None = None,
    *,
    include_deleted: bool = False,
) -> list[RecordOut]:
    """Records for an action code (primary or alternate field); None means all."""
    stmt = select(InspectionRecord)
    if action_code and action_code != FULL_MIRROR_KEY:
        stmt = stmt.where(
            or_(
                InspectionRecord.action_code == action_code,
                InspectionRecord.alt_action_code == action_code,
            )
        )
    if not include_deleted:
        stmt = stmt.where(InspectionRecord.is_deleted.is_(False))
    stmt = stmt.order_by(InspectionRecord.occurred_at, InspectionRecord.object_id, InspectionRecord.relation_key)
    records = list((await db.execute(stmt)).scalars().all())
    return await _merge(db, records)


async def get_records_including_deleted(db: AsyncSession, action_code: str | None = None) -> list[RecordOut]:
    return await get_records(db, action_code, include_deleted=True)


async def get_record(
    db: AsyncSession, relation_key: str, *, include_deleted: bool = False
) -> RecordOut | None:
    key = normalize_relation_key(relation_key)
    if key is None:
        return None
    stmt = select(InspectionRecord).where(InspectionRecord.relation_key == key)
    if not include_deleted:
        stmt = stmt.where(InspectionRecord.is_deleted.is_(False))
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        return None
    return (await _merge(db, [record]))[0]


async def get_photos(
    db: AsyncSession, relation_key: str, *, include_deleted: bool = False
) -> list[InspectionPhoto]:
    """Photos for one record: exact key, then case-insensitive, then ignoring braces."""
    if not isinstance(relation_key, str) or not relation_key.strip():
        return []
    raw = relation_key.strip()
    bare = raw.strip("{}").upper()

    candidates = [
        InspectionPhoto.relation_key == raw,
        func.upper(InspectionPhoto.relation_key) == raw.upper(),
        func.upper(func.replace(func.replace(InspectionPhoto.relation_key, "{", ""), "}", "")) == bare,
    ]
    for clause in candidates:
        stmt = select(InspectionPhoto).where(clause)
        if not include_deleted:
            stmt = stmt.where(InspectionPhoto.is_deleted.is_(False))
        stmt = stmt.order_by(InspectionPhoto.source_layer, InspectionPhoto.child_object_id, InspectionPhoto.file_name)
        photos = list((await db.execute(stmt)).scalars().all())
        if photos:
            return photos
    return []


async def get_scope_state(db: AsyncSession, scope_key: str) -> ScopeStateOut:
    state = await _load_scope_state(db, scope_key)
    if state is None:
        return ScopeStateOut(scope_key=scope_key)
    return ScopeStateOut(
        scope_key=state.scope_key,
        record_count=state.record_count or 0,
        last_sync=_as_utc(state.last_sync_at),
        last_success=_as_utc(state.last_success_at),
        code_field=state.code_field,
    )


async def needs_sync(
    db: AsyncSession,
    scope_key: str,
    threshold_minutes: float = 5,
    *,
    now: datetime | None = None,
) -> FreshnessOut:
    state = await get_scope_state(db, scope_key)
    if state.record_count == 0 or state.last_sync is None:
        return FreshnessOut(needs_sync=True, reason="no_local_data")

    minutes = ((now or datetime.now(timezone.utc)) - state.last_sync).total_seconds() / 60.0
    if minutes > threshold_minutes:
        return FreshnessOut(needs_sync=True, reason="time_threshold", minutes_since_sync=round(minutes, 2))
    return FreshnessOut(needs_sync=False, reason="recently_synced", minutes_since_sync=round(minutes, 2))


async def local_action_codes(db: AsyncSession) -> list[tuple[str, int]]:
    """(action code, active record count) for every code present locally."""
    stmt = (
        select(InspectionRecord.action_code, func.count())
        .where(InspectionRecord.is_deleted.is_(False), InspectionRecord.action_code.is_not(None))
        .group_by(InspectionRecord.action_code)
        .order_by(InspectionRecord.action_code)
    )
    return [(code, int(count)) for code, count in (await db.execute(stmt)).all()]
