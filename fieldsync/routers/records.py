"""Read API over the local mirror - records, photos, overlay, scope state."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..assets.photostore import PhotoStore
from ..config import settings
from ..database import get_db
from ..deps import get_overlay, get_photo_store
from ..schemas.record import (
    FreshnessOut,
    OverlayEntryOut,
    OverlaySet,
    PhotoOut,
    RecordOut,
    ScopeStateOut,
)
from ..services import record_svc
from ..sync import store
from ..sync.field_mapper import normalize_relation_key
from ..sync.overlay import EditOverlay

router = APIRouter(tags=["records"])


@router.get("/records", response_model=list[RecordOut])
async def list_records(
    action_code: str | None = None,
    include_deleted: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await record_svc.get_records(db, action_code, include_deleted=include_deleted)


@router.get("/records/{relation_key}", response_model=RecordOut)
async def get_record(
    relation_key: str,
    include_deleted: bool = False,
    db: AsyncSession = Depends(get_db),
):
    record = await record_svc.get_record(db, relation_key, include_deleted=include_deleted)
    if record is None:
        raise HTTPException(status_code=404, detail="record not found")
    return record


@router.get("/records/{relation_key}/photos", response_model=list[PhotoOut])
async def list_photos(
    relation_key: str,
    include_deleted: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await record_svc.get_photos(db, relation_key, include_deleted=include_deleted)


@router.delete("/records/{relation_key}/photos")
async def purge_photos(
    relation_key: str,
    db: AsyncSession = Depends(get_db),
    photo_store: PhotoStore = Depends(get_photo_store),
):
    key = normalize_relation_key(relation_key) or relation_key
    removed = await store.purge_photos(db, key, photo_store)
    return {"relation_key": key, "purged": removed}


@router.get("/photos/missing", response_model=list[PhotoOut])
async def missing_photos(
    relation_key: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await store.verify_photo_files(db, relation_key)


@router.get("/records/{relation_key}/overlay")
async def get_overlay_fields(
    relation_key: str,
    overlay: EditOverlay = Depends(get_overlay),
):
    return await overlay.get_all(relation_key)


@router.put("/records/{relation_key}/overlay")
async def set_overlay_field(
    relation_key: str,
    body: OverlaySet,
    overlay: EditOverlay = Depends(get_overlay),
):
    await overlay.set(relation_key, body.field, body.value)
    return await overlay.get_all(relation_key)


@router.get("/overlay/edited", response_model=list[OverlayEntryOut])
async def list_edited(
    action_code: str,
    overlay: EditOverlay = Depends(get_overlay),
):
    return await overlay.list_edited(action_code)


@router.get("/scopes/{scope_key}/state", response_model=ScopeStateOut)
async def scope_state(scope_key: str, db: AsyncSession = Depends(get_db)):
    return await record_svc.get_scope_state(db, scope_key)


@router.get("/scopes/{scope_key}/freshness", response_model=FreshnessOut)
async def scope_freshness(
    scope_key: str,
    threshold_minutes: float | None = None,
    db: AsyncSession = Depends(get_db),
):
    threshold = settings.sync_recent_threshold_minutes if threshold_minutes is None else threshold_minutes
    return await record_svc.needs_sync(db, scope_key, threshold)
