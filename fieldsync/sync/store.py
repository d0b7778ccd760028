"""Local mirror store helpers - record/photo upserts, soft-delete and bookkeeping.

No commit is performed by the mutating helpers; callers group one logical
batch and finish it with `commit_batch`, which rolls back and raises
`StoreError` on failure so no partially applied batch is ever visible.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..assets.photostore import PhotoStore
from ..errors import StoreError
from ..models.photo import InspectionPhoto
from ..models.record import InspectionRecord
from ..models.sync_state import SyncLogEntry, SyncScopeState
from .joiner import JoinedRecord
from .scope import SyncScope

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement.
_IN_CHUNK = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _chunks(items: list[str], size: int = _IN_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


async def commit_batch(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise StoreError(f"commit failed: {e}") from e


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------


async def load_records_by_key(db: AsyncSession, keys: Iterable[str]) -> dict[str, InspectionRecord]:
    """Stored rows (soft-deleted included) for the given relation keys."""
    wanted = sorted({k for k in keys if k})
    found: dict[str, InspectionRecord] = {}
    for chunk in _chunks(wanted):
        stmt = select(InspectionRecord).where(InspectionRecord.relation_key.in_(chunk))
        for record in (await db.execute(stmt)).scalars():
            found[record.relation_key] = record
    return found


async def count_active(db: AsyncSession, scope: SyncScope, observed_keys: Iterable[str] = ()) -> int:
    """Active rows owned by `scope`; filter scopes count the observed keys only."""
    clause = scope.record_clause()
    stmt = select(func.count()).select_from(InspectionRecord).where(InspectionRecord.is_deleted.is_(False))
    if clause is not None:
        stmt = stmt.where(clause)
        return int((await db.execute(stmt)).scalar_one())

    total = 0
    for chunk in _chunks(sorted(set(observed_keys))):
        chunk_stmt = stmt.where(InspectionRecord.relation_key.in_(chunk))
        total += int((await db.execute(chunk_stmt)).scalar_one())
    return total


def _apply_joined(record: InspectionRecord, row: JoinedRecord, fingerprint: str, now: datetime) -> None:
    for column, value in row.columns.items():
        setattr(record, column, value)
    record.related_descriptions = list(row.descriptions)
    record.related_facts = list(row.facts)
    record.extra_json = dict(row.extra) or None
    record.fingerprint = fingerprint
    record.last_synced_at = now
    record.is_deleted = False
    record.deleted_at = None


async def upsert_record(
    db: AsyncSession,
    row: JoinedRecord,
    fingerprint: str,
    *,
    existing: InspectionRecord | None = None,
    now: datetime | None = None,
) -> InspectionRecord:
    """Insert or update one record in place, reactivating it if soft-deleted."""
    now = now or _utcnow()
    if existing is None:
        existing = (
            await db.execute(select(InspectionRecord).where(InspectionRecord.relation_key == row.relation_key))
        ).scalar_one_or_none()

    if existing is not None:
        if existing.is_deleted:
            logger.info("Reactivating soft-deleted record %s", row.relation_key)
        _apply_joined(existing, row, fingerprint, now)
        return existing

    record = InspectionRecord(relation_key=row.relation_key, fingerprint=fingerprint)
    _apply_joined(record, row, fingerprint, now)
    db.add(record)
    return record


async def soft_delete_records_not_in(
    db: AsyncSession,
    scope: SyncScope,
    observed_keys: Iterable[str],
    *,
    now: datetime | None = None,
) -> list[str]:
    """Flag active rows of `scope` whose key was not observed. Full scopes only."""
    clause = scope.record_clause()
    if clause is None:
        raise StoreError("soft-delete propagation requires an action-code or full-mirror scope")

    observed = set(observed_keys)
    stmt = select(InspectionRecord).where(InspectionRecord.is_deleted.is_(False), clause)
    now = now or _utcnow()
    removed: list[str] = []
    for record in (await db.execute(stmt)).scalars():
        if record.relation_key in observed:
            continue
        record.is_deleted = True
        record.deleted_at = now
        removed.append(record.relation_key)
    return removed


# ----------------------------------------------------------------------
# Photos
# ----------------------------------------------------------------------


async def photos_for_key(db: AsyncSession, relation_key: str) -> dict[str, InspectionPhoto]:
    """file name -> photo row (soft-deleted included) for one record."""
    stmt = select(InspectionPhoto).where(InspectionPhoto.relation_key == relation_key)
    return {p.file_name: p for p in (await db.execute(stmt)).scalars()}


async def upsert_photo(
    db: AsyncSession,
    *,
    relation_key: str,
    file_name: str,
    local_path: str | Path,
    source_layer: int,
    content_type: str | None = None,
    size_bytes: int | None = None,
    sha256: str | None = None,
    child_object_id: int | None = None,
    attachment_id: int | None = None,
    now: datetime | None = None,
) -> InspectionPhoto:
    now = now or _utcnow()
    stmt = select(InspectionPhoto).where(
        InspectionPhoto.relation_key == relation_key,
        InspectionPhoto.file_name == file_name,
    )
    existing = (await db.execute(stmt)).scalar_one_or_none()

    if existing:
        existing.local_path = str(local_path)
        existing.source_layer = source_layer
        existing.last_seen_at = now
        existing.is_deleted = False
        existing.deleted_at = None
        if content_type and not existing.content_type:
            existing.content_type = content_type
        # Set only when bytes were actually (re)written.
        if size_bytes is not None:
            existing.size_bytes = int(size_bytes)
        if sha256:
            existing.sha256 = sha256
        if child_object_id is not None:
            existing.child_object_id = child_object_id
        if attachment_id is not None:
            existing.attachment_id = attachment_id
        return existing

    photo = InspectionPhoto(
        relation_key=relation_key,
        file_name=file_name,
        local_path=str(local_path),
        source_layer=source_layer,
        content_type=content_type,
        size_bytes=size_bytes,
        sha256=sha256,
        child_object_id=child_object_id,
        attachment_id=attachment_id,
        first_seen_at=now,
        last_seen_at=now,
        is_deleted=False,
    )
    db.add(photo)
    return photo


async def touch_photos(db: AsyncSession, relation_key: str, file_names: Iterable[str], *, now: datetime | None = None) -> None:
    names = sorted(set(file_names))
    if not names:
        return
    await db.execute(
        update(InspectionPhoto)
        .where(
            InspectionPhoto.relation_key == relation_key,
            InspectionPhoto.file_name.in_(names),
            InspectionPhoto.is_deleted.is_(False),
        )
        .values(last_seen_at=now or _utcnow())
    )


async def soft_delete_photos_not_in(
    db: AsyncSession,
    relation_key: str,
    observed_file_names: Iterable[str],
    *,
    now: datetime | None = None,
) -> int:
    observed = set(observed_file_names)
    stmt = select(InspectionPhoto).where(
        InspectionPhoto.relation_key == relation_key,
        InspectionPhoto.is_deleted.is_(False),
    )
    now = now or _utcnow()
    count = 0
    for photo in (await db.execute(stmt)).scalars():
        if photo.file_name in observed:
            continue
        photo.is_deleted = True
        photo.deleted_at = now
        count += 1
    return count


async def verify_photo_files(db: AsyncSession, relation_key: str | None = None) -> list[InspectionPhoto]:
    """Active photo rows whose file is missing on disk."""
    stmt = select(InspectionPhoto).where(InspectionPhoto.is_deleted.is_(False))
    if relation_key:
        stmt = stmt.where(InspectionPhoto.relation_key == relation_key)
    stmt = stmt.order_by(InspectionPhoto.relation_key, InspectionPhoto.file_name)
    missing = [p for p in (await db.execute(stmt)).scalars() if not Path(p.local_path).is_file()]
    for photo in missing:
        logger.warning("Photo file missing: %s/%s -> %s", photo.relation_key, photo.file_name, photo.local_path)
    return missing


async def purge_photos(db: AsyncSession, relation_key: str, photo_store: PhotoStore) -> int:
    """Hard-remove photo rows and files for one record so the next sync re-fetches them."""
    rows = list((await photos_for_key(db, relation_key)).values())
    paths = [photo.local_path for photo in rows]
    await db.execute(delete(InspectionPhoto).where(InspectionPhoto.relation_key == relation_key))
    await commit_batch(db)
    # Files go only once no row points at them any more.
    for path in paths:
        photo_store.remove(path)
    photo_store.remove_record_dir(relation_key)
    logger.info("Purged %d photo(s) for %s", len(rows), relation_key)
    return len(rows)


# ----------------------------------------------------------------------
# Scope state + sync log
# ----------------------------------------------------------------------


async def get_scope_state(db: AsyncSession, scope_key: str) -> SyncScopeState | None:
    stmt = select(SyncScopeState).where(SyncScopeState.scope_key == scope_key)
    return (await db.execute(stmt)).scalar_one_or_none()


async def mark_scope_synced(
    db: AsyncSession,
    scope: SyncScope,
    *,
    record_count: int,
    code_field: str | None = None,
    now: datetime | None = None,
) -> SyncScopeState:
    """Record a successful run. last_sync_at never moves backwards."""
    now = now or _utcnow()
    state = await get_scope_state(db, scope.key)
    if state is None:
        state = SyncScopeState(scope_key=scope.key, scope_kind=scope.kind.value)
        db.add(state)

    previous = _as_utc(state.last_sync_at)
    if previous is None or now >= previous:
        state.last_sync_at = now
        state.last_success_at = now
    state.record_count = int(record_count)
    if code_field:
        state.code_field = code_field
    return state


async def start_sync_log(
    db: AsyncSession,
    scope: SyncScope,
    *,
    mode: str,
    records_before: int,
    now: datetime | None = None,
) -> SyncLogEntry:
    entry = SyncLogEntry(
        scope_key=scope.key,
        mode=mode,
        outcome="running",
        started_at=now or _utcnow(),
        records_before=records_before,
    )
    db.add(entry)
    await commit_batch(db)
    return entry


async def list_sync_log(db: AsyncSession, scope_key: str | None = None, limit: int = 20) -> list[SyncLogEntry]:
    stmt = select(SyncLogEntry)
    if scope_key:
        stmt = stmt.where(SyncLogEntry.scope_key == scope_key)
    stmt = stmt.order_by(SyncLogEntry.started_at.desc()).limit(max(1, int(limit)))
    return list((await db.execute(stmt)).scalars())
