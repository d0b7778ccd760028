"""Attachment sync - list, dedupe by file name, download what is missing.

Relation keys are processed concurrently up to a bounded worker count; the
downloads of one key run one after another. Database writes go through a
single lock so at most one writer transaction is open at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..assets.photostore import PhotoStore
from ..errors import AttachmentError
from ..remote.base import AttachmentInfo, RemoteFeatureClient
from .joiner import ChildRef, JoinedRecord
from .progress import SyncErrorInfo, SyncProgress
from .store import commit_batch, photos_for_key, soft_delete_photos_not_in, touch_photos, upsert_photo

logger = logging.getLogger(__name__)


@dataclass
class AttachmentStats:
    keys_processed: int = 0
    listed: int = 0
    downloaded: int = 0
    reactivated: int = 0
    failed: int = 0
    list_failures: int = 0
    soft_deleted: int = 0
    missing_files: list[str] = field(default_factory=list)
    errors: list[SyncErrorInfo] = field(default_factory=list)


@dataclass(frozen=True)
class _Listed:
    child: ChildRef
    info: AttachmentInfo


class AttachmentSyncer:
    def __init__(
        self,
        client: RemoteFeatureClient,
        session_factory: async_sessionmaker[AsyncSession],
        photo_store: PhotoStore,
        *,
        max_workers: int = 4,
        parent_layer_id: int | None = None,
        cancel_event: asyncio.Event | None = None,
        progress: SyncProgress | None = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.photo_store = photo_store
        self.max_workers = max(1, int(max_workers))
        # When set, the parent row's own attachments are synced as well.
        self.parent_layer_id = parent_layer_id
        self.cancel_event = cancel_event or asyncio.Event()
        self.progress = progress or SyncProgress()
        self._write_lock = asyncio.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def sync(self, records: list[JoinedRecord], *, propagate_deletes: bool = False) -> AttachmentStats:
        stats = AttachmentStats()
        semaphore = asyncio.Semaphore(self.max_workers)

        async def _worker(record: JoinedRecord) -> None:
            async with semaphore:
                if self.cancelled:
                    return
                await self._sync_record(record, stats, propagate_deletes=propagate_deletes)

        # Every worker finishes before an error propagates, so nothing writes after the run ends.
        results = await asyncio.gather(*(_worker(r) for r in records), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for exc in failures[1:]:
            logger.error("Attachment worker also failed: %r", exc)
        if failures:
            raise failures[0]
        return stats

    def _fail(self, stats: AttachmentStats, exc: BaseException, relation_key: str) -> None:
        info = SyncErrorInfo.from_exception(exc, relation_key=relation_key)
        stats.errors.append(info)
        self.progress.errors.append(info)

    def _sources(self, record: JoinedRecord) -> list[ChildRef]:
        refs = list(record.children)
        if self.parent_layer_id is not None and record.object_id is not None:
            refs.insert(0, ChildRef(self.parent_layer_id, record.object_id))
        return refs

    async def _list_all(self, record: JoinedRecord, stats: AttachmentStats) -> tuple[list[_Listed], bool]:
        listed: list[_Listed] = []
        complete = True
        for child in self._sources(record):
            try:
                infos = await self.client.list_attachments(child.layer_id, child.object_id)
            except Exception as e:
                complete = False
                stats.list_failures += 1
                logger.warning(
                    "Listing attachments failed for %s (layer %s, object %s): %s",
                    record.relation_key, child.layer_id, child.object_id, e,
                )
                err = AttachmentError(f"list failed for layer {child.layer_id} object {child.object_id}: {e}")
                self._fail(stats, err, record.relation_key)
                continue
            listed.extend(_Listed(child, info) for info in infos)
        stats.listed += len(listed)
        return listed, complete

    async def _sync_record(self, record: JoinedRecord, stats: AttachmentStats, *, propagate_deletes: bool) -> None:
        key = record.relation_key
        listed, complete = await self._list_all(record, stats)

        # The first child listing a file name owns it.
        by_name: dict[str, _Listed] = {}
        for item in listed:
            by_name.setdefault(item.info.name, item)

        async with self.session_factory() as db:
            stored = await photos_for_key(db, key)

        present: list[str] = []
        to_reactivate: list[_Listed] = []
        to_download: list[_Listed] = []
        for name, item in by_name.items():
            photo = stored.get(name)
            if photo is None:
                to_download.append(item)
            elif not self.photo_store.exists(photo.local_path):
                logger.warning("Photo row without file, re-fetching: %s/%s", key, name)
                stats.missing_files.append(f"{key}/{name}")
                to_download.append(item)
            elif photo.is_deleted:
                to_reactivate.append(item)
            else:
                present.append(name)

        self.progress.photos_total += len(to_download)

        async with self._write_lock:
            async with self.session_factory() as db:
                now = datetime.now(timezone.utc)
                await touch_photos(db, key, present, now=now)
                for item in to_reactivate:
                    await upsert_photo(
                        db,
                        relation_key=key,
                        file_name=item.info.name,
                        local_path=stored[item.info.name].local_path,
                        source_layer=item.child.layer_id,
                        content_type=item.info.content_type,
                        child_object_id=item.child.object_id,
                        attachment_id=item.info.attachment_id,
                        now=now,
                    )
                await commit_batch(db)
        stats.reactivated += len(to_reactivate)

        for item in to_download:
            if self.cancelled:
                logger.info("Cancellation requested; not starting further downloads for %s", key)
                complete = False
                break
            await self._download(key, item, stats)
            self.progress.photos_done += 1

        if propagate_deletes and complete and not self.cancelled:
            async with self._write_lock:
                async with self.session_factory() as db:
                    removed = await soft_delete_photos_not_in(db, key, by_name.keys())
                    await commit_batch(db)
            stats.soft_deleted += removed

        stats.keys_processed += 1

    async def _download(self, key: str, item: _Listed, stats: AttachmentStats) -> None:
        name = item.info.name
        dest = self.photo_store.path_for(key, name)
        try:
            result = await self.photo_store.write_stream(
                dest,
                self.client.iter_attachment(item.child.layer_id, item.child.object_id, item.info.attachment_id),
            )
        except Exception as e:
            stats.failed += 1
            logger.warning("Download failed for %s/%s: %s", key, name, e)
            self._fail(stats, AttachmentError(f"download failed for {name}: {e}"), key)
            return

        async with self._write_lock:
            async with self.session_factory() as db:
                await upsert_photo(
                    db,
                    relation_key=key,
                    file_name=name,
                    local_path=result.path,
                    source_layer=item.child.layer_id,
                    content_type=item.info.content_type,
                    size_bytes=result.size_bytes,
                    sha256=result.sha256,
                    child_object_id=item.child.object_id,
                    attachment_id=item.info.attachment_id,
                )
                await commit_batch(db)
        stats.downloaded += 1
