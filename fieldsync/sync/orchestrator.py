"""Sync orchestrator - one run end to end.

    Idle -> Fetching -> Joining -> Diffing -> Persisting -> SyncingAttachments
         -> Completed | Failed | Cancelled

Each step runs under a wall-clock limit. Cancellation is checked between
steps (and by the attachment syncer before each download). Record upserts
and soft-deletes for the scope commit as one batch before attachment work
starts, so a failure or cancellation afterwards leaves every record row
fully written.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Iterable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..assets.photostore import PhotoStore
from ..errors import FilterError, MirrorError, StoreError, SyncTimeoutError
from ..models.sync_state import SyncLogEntry
from ..remote.base import RemoteFeatureClient
from ..remote.filters import FieldFilter, Filter, all_of, field_in, filter_from_dict, to_where
from .attachments import AttachmentStats, AttachmentSyncer
from .field_mapper import find_attribute
from .fingerprint import DEFAULT_IGNORED_FIELDS, ChangeKind, classify, compute_fingerprint
from .joiner import DEFAULT_SEPARATOR, JoinedRecord, JoinResult, join_records
from .progress import SyncErrorInfo, SyncProgress, SyncState
from .scope import ModeKind, ScopeKind, SyncMode, SyncScope
from . import store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Cancelled(Exception):
    pass


@dataclass(frozen=True)
class SyncRequest:
    scope: SyncScope
    mode: SyncMode = field(default_factory=SyncMode.full)
    # Re-list attachments for every observed row, not just New/Updated.
    force_attachments: bool = False
    sync_attachments: bool = True

    @classmethod
    def build(
        cls,
        *,
        action_code: str | None = None,
        filter_payload: Any = None,
        all_records: bool = False,
        mode: str = "full",
        since: datetime | None = None,
        force_attachments: bool = False,
        sync_attachments: bool = True,
    ) -> "SyncRequest":
        """Validate caller options into a request; exactly one scope selector."""
        chosen = [bool(action_code), filter_payload is not None, bool(all_records)]
        if sum(chosen) != 1:
            raise FilterError("choose exactly one of action_code, filter or all_records")
        if action_code:
            scope = SyncScope.for_action_code(action_code)
        elif filter_payload is not None:
            scope = SyncScope.for_filter(filter_from_dict(filter_payload))
        else:
            scope = SyncScope.full_mirror()

        if mode == ModeKind.INCREMENTAL.value:
            sync_mode = SyncMode.incremental(since)
        elif mode == ModeKind.FULL.value:
            sync_mode = SyncMode.full()
        else:
            raise FilterError(f"unknown sync mode: {mode}")
        return cls(
            scope=scope,
            mode=sync_mode,
            force_attachments=force_attachments,
            sync_attachments=sync_attachments,
        )


@dataclass
class SyncReport:
    scope_key: str
    mode: str
    state: SyncState = SyncState.IDLE
    code_field: str | None = None

    fetched: int = 0
    records_before: int = 0
    records_after: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    soft_deleted: int = 0
    soft_delete_skipped: bool = False
    rows_missing_key: int = 0
    duplicate_keys: int = 0
    orphan_children: int = 0

    photos_downloaded: int = 0
    photos_failed: int = 0
    photos_reactivated: int = 0
    photos_soft_deleted: int = 0
    attachment_list_failures: int = 0
    missing_photo_files: list[str] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)
    errors: list[SyncErrorInfo] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int = 0

    @property
    def outcome(self) -> str:
        if self.state is SyncState.CANCELLED:
            return "cancelled"
        if self.state is not SyncState.COMPLETED:
            return "failed"
        return "partial" if (self.warnings or self.errors) else "success"

    @property
    def upserts(self) -> int:
        return self.new + self.updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_key": self.scope_key,
            "mode": self.mode,
            "state": self.state.value,
            "outcome": self.outcome,
            "code_field": self.code_field,
            "fetched": self.fetched,
            "records_before": self.records_before,
            "records_after": self.records_after,
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "soft_deleted": self.soft_deleted,
            "soft_delete_skipped": self.soft_delete_skipped,
            "rows_missing_key": self.rows_missing_key,
            "duplicate_keys": self.duplicate_keys,
            "orphan_children": self.orphan_children,
            "photos_downloaded": self.photos_downloaded,
            "photos_failed": self.photos_failed,
            "photos_reactivated": self.photos_reactivated,
            "photos_soft_deleted": self.photos_soft_deleted,
            "attachment_list_failures": self.attachment_list_failures,
            "missing_photo_files": list(self.missing_photo_files),
            "warnings": list(self.warnings),
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Fetched:
    parents: list[dict[str, Any]]
    descriptions: list[dict[str, Any]]
    facts: list[dict[str, Any]]
    code_field: str | None = None


@dataclass
class _Diffed:
    changed: list[tuple[JoinedRecord, str, ChangeKind]]
    unchanged: list[JoinedRecord]


class SyncOrchestrator:
    def __init__(
        self,
        client: RemoteFeatureClient,
        session_factory: async_sessionmaker[AsyncSession],
        photo_store: PhotoStore,
        *,
        parent_layer_id: int = 0,
        descriptions_layer_id: int = 1,
        facts_layer_id: int = 2,
        action_code_field: str = "CA",
        alt_action_code_field: str = "OTRO_CA",
        relation_key_field: str = "GLOBALID",
        child_key_field: str = "GUID",
        edited_at_field: str = "LAST_EDITED_DATE",
        separator: str = DEFAULT_SEPARATOR,
        child_chunk_size: int = 200,
        step_timeout_seconds: float = 300.0,
        max_download_workers: int = 4,
        parent_attachments: bool = True,
        ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
    ):
        self.client = client
        self.session_factory = session_factory
        self.photo_store = photo_store
        self.parent_layer_id = parent_layer_id
        self.descriptions_layer_id = descriptions_layer_id
        self.facts_layer_id = facts_layer_id
        self.action_code_field = action_code_field
        self.alt_action_code_field = alt_action_code_field
        self.relation_key_field = relation_key_field
        self.child_key_field = child_key_field
        self.edited_at_field = edited_at_field
        self.separator = separator
        self.child_chunk_size = max(1, int(child_chunk_size))
        self.step_timeout_seconds = step_timeout_seconds
        self.max_download_workers = max_download_workers
        self.parent_attachments = parent_attachments
        self.ignored_fields = frozenset(n.lower() for n in ignored_fields)

    @classmethod
    def from_settings(
        cls,
        client: RemoteFeatureClient,
        session_factory: async_sessionmaker[AsyncSession],
        settings,
        photo_store: PhotoStore | None = None,
    ) -> "SyncOrchestrator":
        return cls(
            client,
            session_factory,
            photo_store or PhotoStore(settings.photo_dir),
            parent_layer_id=settings.parent_layer_id,
            descriptions_layer_id=settings.descriptions_layer_id,
            facts_layer_id=settings.facts_layer_id,
            action_code_field=settings.action_code_field,
            alt_action_code_field=settings.alt_action_code_field,
            relation_key_field=settings.relation_key_field,
            child_key_field=settings.child_key_field,
            edited_at_field=settings.edited_at_field,
            separator=settings.sync_join_separator,
            child_chunk_size=settings.child_query_chunk_size,
            step_timeout_seconds=settings.sync_step_timeout_seconds,
            max_download_workers=settings.sync_max_download_workers,
            parent_attachments=settings.sync_parent_attachments,
            ignored_fields=settings.fingerprint_ignored,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        request: SyncRequest,
        *,
        cancel_event: asyncio.Event | None = None,
        progress: SyncProgress | None = None,
    ) -> SyncReport:
        """Execute one run. Never raises; the outcome is on the report."""
        cancel_event = cancel_event or asyncio.Event()
        progress = progress or SyncProgress()
        scope, mode = request.scope, request.mode
        report = SyncReport(scope_key=scope.key, mode=mode.kind.value, started_at=_utcnow())
        t0 = time.monotonic()
        log_id = None
        observed: list[str] = []

        logger.info("Sync started: scope=%s mode=%s", scope.key, mode.kind.value)
        try:
            async with self.session_factory() as db:
                report.records_before = await store.count_active(db, scope)
                entry = await store.start_sync_log(
                    db, scope, mode=mode.kind.value, records_before=report.records_before, now=report.started_at
                )
                log_id = entry.id

            self._check_cancel(cancel_event)
            self._enter(SyncState.FETCHING, report, progress)
            fetched = await self._step(self._fetch(scope, mode))
            report.code_field = fetched.code_field
            report.fetched = progress.fetched = progress.total = len(fetched.parents)

            self._check_cancel(cancel_event)
            self._enter(SyncState.JOINING, report, progress)
            joined = await self._step(self._join(fetched))
            report.rows_missing_key = joined.missing_key
            report.duplicate_keys = joined.duplicate_keys
            report.orphan_children = joined.orphan_children
            report.warnings.extend(joined.warnings)

            self._check_cancel(cancel_event)
            self._enter(SyncState.DIFFING, report, progress)
            observed = [r.relation_key for r in joined.records]
            diffed = await self._step(self._diff(joined.records))
            report.new = sum(1 for _, _, kind in diffed.changed if kind is ChangeKind.NEW)
            report.updated = sum(1 for _, _, kind in diffed.changed if kind is ChangeKind.UPDATED)
            report.unchanged = len(diffed.unchanged)

            self._check_cancel(cancel_event)
            self._enter(SyncState.PERSISTING, report, progress)
            propagate = mode.allows_soft_delete(scope)
            if not propagate:
                report.soft_delete_skipped = True
                reason = "partial scope" if scope.kind is ScopeKind.FILTER else "incremental mode"
                logger.info("soft-delete skipped: %s (scope=%s)", reason, scope.key)
                report.warnings.append(f"soft-delete skipped: {reason}")
            removed = await self._step(self._persist(scope, joined.records, diffed, propagate=propagate))
            report.soft_deleted = len(removed)

            if request.sync_attachments:
                self._check_cancel(cancel_event)
                self._enter(SyncState.SYNCING_ATTACHMENTS, report, progress)
                targets = joined.records if request.force_attachments else [r for r, _, _ in diffed.changed]
                syncer = AttachmentSyncer(
                    self.client,
                    self.session_factory,
                    self.photo_store,
                    max_workers=self.max_download_workers,
                    parent_layer_id=self.parent_layer_id if self.parent_attachments else None,
                    cancel_event=cancel_event,
                    progress=progress,
                )
                stats = await self._step(syncer.sync(targets, propagate_deletes=propagate))
                self._apply_attachment_stats(report, stats)

            self._check_cancel(cancel_event)
            self._enter(SyncState.COMPLETED, report, progress)
        except _Cancelled:
            self._enter(SyncState.CANCELLED, report, progress)
            logger.info("Sync cancelled: scope=%s", scope.key)
        except (asyncio.TimeoutError, SyncTimeoutError):
            err = SyncTimeoutError(
                f"step '{report.state.value}' exceeded {self.step_timeout_seconds:g}s"
            )
            self._record_error(report, progress, err)
            self._enter(SyncState.FAILED, report, progress)
        except MirrorError as e:
            self._record_error(report, progress, e)
            self._enter(SyncState.FAILED, report, progress)
        except Exception as e:
            logger.exception("Unexpected sync failure: scope=%s", scope.key)
            self._record_error(report, progress, e)
            self._enter(SyncState.FAILED, report, progress)

        report.finished_at = _utcnow()
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        await self._finalize(scope, report, progress, log_id, observed)
        logger.info(
            "Sync finished: scope=%s outcome=%s new=%d updated=%d unchanged=%d soft_deleted=%d photos=%d/%d",
            scope.key, report.outcome, report.new, report.updated, report.unchanged,
            report.soft_deleted, report.photos_downloaded, report.photos_failed,
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _step(self, coro: Awaitable[T]) -> T:
        return await asyncio.wait_for(coro, timeout=self.step_timeout_seconds)

    def _since_filter(self, mode: SyncMode) -> Filter | None:
        if mode.kind is ModeKind.INCREMENTAL and mode.since is not None:
            return FieldFilter(self.edited_at_field, "ge", mode.since)
        return None

    async def _fetch(self, scope: SyncScope, mode: SyncMode) -> _Fetched:
        since = self._since_filter(mode)
        code_field = None

        if scope.kind is ScopeKind.ACTION_CODE:
            code_field = self.action_code_field
            parents = await self._query_code(code_field, scope.action_code, since)
            if not parents and await self._uses_alternate_code(scope, since):
                logger.info(
                    "No parents on %s=%s, trying %s", code_field, scope.action_code, self.alt_action_code_field
                )
                code_field = self.alt_action_code_field
                parents = await self._query_code(code_field, scope.action_code, since)
        elif scope.kind is ScopeKind.FILTER:
            parents = await self.client.query(self.parent_layer_id, to_where(all_of(scope.filter, since)))
        else:
            parents = await self.client.query(self.parent_layer_id, to_where(since))

        keys: list[Any] = []
        seen: set[Any] = set()
        for attrs in parents:
            _, value = find_attribute(attrs, (self.relation_key_field,)) if isinstance(attrs, dict) else (None, None)
            if isinstance(value, str) and value.strip() and value not in seen:
                seen.add(value)
                keys.append(value)

        descriptions = await self._fetch_children(self.descriptions_layer_id, keys)
        facts = await self._fetch_children(self.facts_layer_id, keys)
        logger.info(
            "Fetched %d parent(s), %d description(s), %d fact(s) for scope %s",
            len(parents), len(descriptions), len(facts), scope.key,
        )
        return _Fetched(parents, descriptions, facts, code_field)

    async def _query_code(self, code_field: str, action_code: str, since: Filter | None) -> list[dict[str, Any]]:
        where = to_where(all_of(FieldFilter(code_field, "eq", action_code), since))
        return await self.client.query(self.parent_layer_id, where)

    async def _uses_alternate_code(self, scope: SyncScope, since: Filter | None) -> bool:
        """Whether an empty primary-field result means the code lives on the alternate field.

        An incremental window can be empty simply because nothing changed, so
        the field recorded by an earlier run wins; without one, the primary
        field is queried once without the window.
        """
        if since is None:
            return True
        async with self.session_factory() as db:
            state = await store.get_scope_state(db, scope.key)
        if state is not None and state.code_field:
            return state.code_field == self.alt_action_code_field
        return not await self._query_code(self.action_code_field, scope.action_code, None)

    async def _fetch_children(self, layer_id: int, keys: list[Any]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for i in range(0, len(keys), self.child_chunk_size):
            chunk = keys[i : i + self.child_chunk_size]
            rows.extend(await self.client.query(layer_id, to_where(field_in(self.child_key_field, chunk))))
        return rows

    async def _join(self, fetched: _Fetched) -> JoinResult:
        return join_records(
            fetched.parents,
            fetched.descriptions,
            fetched.facts,
            separator=self.separator,
            descriptions_layer_id=self.descriptions_layer_id,
            facts_layer_id=self.facts_layer_id,
        )

    async def _diff(self, records: list[JoinedRecord]) -> _Diffed:
        async with self.session_factory() as db:
            existing = await store.load_records_by_key(db, (r.relation_key for r in records))
        changed: list[tuple[JoinedRecord, str, ChangeKind]] = []
        unchanged: list[JoinedRecord] = []
        for row in records:
            fingerprint = compute_fingerprint(row, self.ignored_fields)
            kind = classify(fingerprint, existing.get(row.relation_key))
            if kind is ChangeKind.UNCHANGED:
                unchanged.append(row)
            else:
                changed.append((row, fingerprint, kind))
        return _Diffed(changed=changed, unchanged=unchanged)

    async def _persist(
        self,
        scope: SyncScope,
        records: list[JoinedRecord],
        diffed: _Diffed,
        *,
        propagate: bool,
    ) -> list[str]:
        now = _utcnow()
        async with self.session_factory() as db:
            try:
                # Re-read inside this session so the rows are attached to it.
                existing = await store.load_records_by_key(db, (r.relation_key for r, _, _ in diffed.changed))
                for row, fingerprint, _ in diffed.changed:
                    await store.upsert_record(
                        db, row, fingerprint, existing=existing.get(row.relation_key), now=now
                    )
                removed: list[str] = []
                if propagate:
                    removed = await store.soft_delete_records_not_in(
                        db, scope, (r.relation_key for r in records), now=now
                    )
                    if removed:
                        logger.info("Soft-deleted %d record(s) no longer present in %s", len(removed), scope.key)
                await db.flush()
            except SQLAlchemyError as e:
                await db.rollback()
                raise StoreError(f"persisting records failed: {e}") from e
            await store.commit_batch(db)
        return removed

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(
        self, scope: SyncScope, report: SyncReport, progress: SyncProgress, log_id, observed: list[str]
    ) -> None:
        try:
            async with self.session_factory() as db:
                report.records_after = await store.count_active(db, scope, observed_keys=observed)
                if report.state is SyncState.COMPLETED:
                    await store.mark_scope_synced(
                        db,
                        scope,
                        record_count=report.records_after,
                        code_field=report.code_field,
                        now=report.finished_at,
                    )
                if log_id is not None:
                    entry = await db.get(SyncLogEntry, log_id)
                    if entry is not None:
                        self._fill_log(entry, report)
                await store.commit_batch(db)
        except (MirrorError, SQLAlchemyError) as e:
            logger.error("Could not finalize sync bookkeeping for %s: %s", scope.key, e)
            self._record_error(report, progress, e if isinstance(e, MirrorError) else StoreError(str(e)))
            if report.state is SyncState.COMPLETED:
                report.state = progress.state = SyncState.FAILED

    def _fill_log(self, entry: SyncLogEntry, report: SyncReport) -> None:
        entry.outcome = report.outcome
        entry.final_state = report.state.value
        entry.finished_at = report.finished_at
        entry.duration_ms = report.duration_ms
        entry.records_before = report.records_before
        entry.records_after = report.records_after
        entry.records_new = report.new
        entry.records_updated = report.updated
        entry.records_unchanged = report.unchanged
        entry.records_soft_deleted = report.soft_deleted
        entry.rows_missing_key = report.rows_missing_key
        entry.orphan_children = report.orphan_children
        entry.soft_delete_skipped = report.soft_delete_skipped
        entry.photos_downloaded = report.photos_downloaded
        entry.photos_failed = report.photos_failed
        entry.photos_soft_deleted = report.photos_soft_deleted
        entry.errors_json = [e.to_dict() for e in report.errors] or None
        entry.error_message = "; ".join(e.message for e in report.errors)[:2000] or None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, state: SyncState, report: SyncReport, progress: SyncProgress) -> None:
        logger.debug("Sync %s: %s -> %s", report.scope_key, report.state.value, state.value)
        report.state = state
        progress.state = state

    @staticmethod
    def _check_cancel(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise _Cancelled()

    @staticmethod
    def _record_error(report: SyncReport, progress: SyncProgress, exc: BaseException) -> None:
        info = SyncErrorInfo.from_exception(exc)
        logger.error("Sync %s failed in %s: %s", report.scope_key, report.state.value, info.message)
        report.errors.append(info)
        if info not in progress.errors:
            progress.errors.append(info)

    @staticmethod
    def _apply_attachment_stats(report: SyncReport, stats: AttachmentStats) -> None:
        report.photos_downloaded = stats.downloaded
        report.photos_failed = stats.failed
        report.photos_reactivated = stats.reactivated
        report.photos_soft_deleted = stats.soft_deleted
        report.attachment_list_failures = stats.list_failures
        report.missing_photo_files = list(stats.missing_files)
        report.errors.extend(stats.errors)
        if stats.missing_files:
            report.warnings.append(f"{len(stats.missing_files)} photo file(s) were missing on disk and re-fetched")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
