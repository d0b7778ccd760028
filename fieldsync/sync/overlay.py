"""Local edit overlay.

User corrections live in their own table keyed by (relation key, field) and
are merged over record fields at read time. Syncs never write here, and the
overlay never writes into record rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import OverlayFieldError, StoreError
from ..models.overlay import OverlayEntry
from ..models.record import InspectionRecord
from .field_mapper import normalize_relation_key
from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class EditOverlay:
    """Last-write-wins per (relation key, field)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        allowed_fields: Iterable[str],
    ):
        self._session_factory = session_factory
        self.allowed_fields = frozenset(allowed_fields)
        self._locks: KeyedLocks[tuple[str, str]] = KeyedLocks()

    def _check(self, relation_key: str, field_name: str) -> str:
        key = normalize_relation_key(relation_key)
        if key is None:
            raise OverlayFieldError("relation key required")
        if field_name not in self.allowed_fields:
            allowed = ", ".join(sorted(self.allowed_fields))
            raise OverlayFieldError(f"field '{field_name}' is not editable (allowed: {allowed})")
        return key

    async def set(self, relation_key: str, field_name: str, value: str | None) -> None:
        """Store `value` for the field; None clears the edit."""
        key = self._check(relation_key, field_name)
        async with self._locks.hold((key, field_name)):
            async with self._session_factory() as db:
                try:
                    stmt = select(OverlayEntry).where(
                        OverlayEntry.relation_key == key,
                        OverlayEntry.field_name == field_name,
                    )
                    existing = (await db.execute(stmt)).scalar_one_or_none()
                    if value is None:
                        if existing is not None:
                            await db.delete(existing)
                    elif existing is not None:
                        existing.value = value
                        existing.edited_at = datetime.now(timezone.utc)
                    else:
                        db.add(
                            OverlayEntry(
                                relation_key=key,
                                field_name=field_name,
                                value=value,
                                edited_at=datetime.now(timezone.utc),
                            )
                        )
                    await db.commit()
                except SQLAlchemyError as e:
                    await db.rollback()
                    raise StoreError(f"overlay write failed: {e}") from e
        logger.debug("Overlay %s.%s %s", key, field_name, "cleared" if value is None else "set")

    async def get_all(self, relation_key: str) -> dict[str, str | None]:
        key = normalize_relation_key(relation_key)
        if key is None:
            return {}
        return (await self.get_many([key])).get(key, {})

    async def get_many(self, relation_keys: Iterable[str]) -> dict[str, dict[str, str | None]]:
        async with self._session_factory() as db:
            return await load_overlays(db, relation_keys)

    async def list_edited(self, action_code: str) -> list[OverlayEntry]:
        """Overlay entries for every active record of an action code."""
        async with self._session_factory() as db:
            stmt = (
                select(OverlayEntry)
                .join(InspectionRecord, InspectionRecord.relation_key == OverlayEntry.relation_key)
                .where(
                    InspectionRecord.is_deleted.is_(False),
                    or_(
                        InspectionRecord.action_code == action_code,
                        InspectionRecord.alt_action_code == action_code,
                    ),
                )
                .order_by(OverlayEntry.relation_key, OverlayEntry.field_name)
            )
            return list((await db.execute(stmt)).scalars())

    async def clear(self, relation_key: str) -> int:
        key = normalize_relation_key(relation_key)
        if key is None:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(delete(OverlayEntry).where(OverlayEntry.relation_key == key))
            await db.commit()
            return result.rowcount or 0


async def load_overlays(db: AsyncSession, relation_keys: Iterable[str]) -> dict[str, dict[str, str | None]]:
    """relation key -> {field: value} for the given keys, read on an open session."""
    keys = sorted({k for k in relation_keys if k})
    merged: dict[str, dict[str, str | None]] = {}
    for i in range(0, len(keys), 500):
        stmt = select(OverlayEntry).where(OverlayEntry.relation_key.in_(keys[i : i + 500]))
        for entry in (await db.execute(stmt)).scalars():
            merged.setdefault(entry.relation_key, {})[entry.field_name] = entry.value
    return merged
