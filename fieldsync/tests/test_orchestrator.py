"""End-to-end sync runs against the in-process remote."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from fieldsync.errors import RemoteTransientError
from fieldsync.services import record_svc
from fieldsync.sync import store
from fieldsync.sync.orchestrator import SyncOrchestrator, SyncRequest
from fieldsync.sync.overlay import EditOverlay
from fieldsync.sync.progress import SyncProgress, SyncState
from fieldsync.sync.scope import SyncMode, SyncScope
from fieldsync.remote.filters import FieldFilter
from fieldsync.tests.fakes import KEY_1, KEY_2, KEY_3, parent_row, seed_ca001

CA001 = SyncRequest(scope=SyncScope.for_action_code("CA-001"))


@pytest.fixture
def orchestrator(remote, session_factory, photo_store):
    return SyncOrchestrator(remote, session_factory, photo_store)


async def _records(session_factory, code="CA-001", **kwargs):
    async with session_factory() as db:
        return await record_svc.get_records(db, code, **kwargs)


@pytest.mark.asyncio
async def test_three_run_scenario(orchestrator, remote, session_factory, photo_store):
    seed_ca001(remote)

    first = await orchestrator.run(CA001)
    assert first.state is SyncState.COMPLETED
    assert first.outcome == "success"
    assert (first.new, first.updated, first.unchanged) == (3, 0, 0)
    assert first.photos_downloaded == 6
    assert first.code_field == "CA"
    async with session_factory() as db:
        state = await store.get_scope_state(db, "CA-001")
        assert state.record_count == 3

    second = await orchestrator.run(CA001)
    assert second.upserts == 0
    assert second.unchanged == 3
    assert second.photos_downloaded == 0
    assert len(remote.downloads) == 6

    remote.layers[1][0]["DESCRIP_1"] = "Fuga mayor en brida"
    remote.list_calls.clear()
    third = await orchestrator.run(CA001)
    assert (third.new, third.updated, third.unchanged) == (0, 1, 2)
    assert third.photos_downloaded == 0
    # Only the changed row's sources are re-listed.
    assert sorted(remote.list_calls) == [(0, 1), (1, 11), (1, 12), (2, 21)]

    records = {r.relation_key: r for r in await _records(session_factory)}
    assert records[KEY_1].descriptions_text == "Fuga mayor en brida | Corrosion en soporte"
    assert records[KEY_1].related_descriptions[0]["DESCRIP_1"] == "Fuga mayor en brida"
    assert records[KEY_1].facts_text == "Derrame"


@pytest.mark.asyncio
async def test_idempotent_rerun_keeps_record_count(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)
    again = await orchestrator.run(CA001)

    assert again.upserts == 0
    assert again.records_before == again.records_after == 3
    async with session_factory() as db:
        assert (await store.get_scope_state(db, "CA-001")).record_count == 3


@pytest.mark.asyncio
async def test_single_field_change_updates_only_that_row(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)

    remote.layers[0][1]["SUPERVISOR"] = "Luis Paz"
    # Volatile metadata moving on other rows is not a change.
    remote.layers[0][2]["LAST_EDITED_DATE"] = 1800000000000
    report = await orchestrator.run(CA001)
    assert (report.updated, report.unchanged) == (1, 2)

    records = {r.relation_key: r for r in await _records(session_factory)}
    assert records[KEY_2].supervisor_name == "Luis Paz"


@pytest.mark.asyncio
async def test_missing_row_is_soft_deleted(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)

    remote.layers[0] = remote.layers[0][:2]
    report = await orchestrator.run(CA001)
    assert report.soft_deleted == 1
    assert report.records_after == 2

    active = await _records(session_factory)
    assert KEY_3 not in {r.relation_key for r in active}
    async with session_factory() as db:
        everything = await record_svc.get_records_including_deleted(db, "CA-001")
    deleted = [r for r in everything if r.relation_key == KEY_3]
    assert deleted and deleted[0].is_deleted is True

    # Back on the remote: reactivated as an update.
    seed_ca001(remote)
    back = await orchestrator.run(CA001)
    assert back.updated == 1
    assert len(await _records(session_factory)) == 3


@pytest.mark.asyncio
async def test_filter_scope_never_soft_deletes(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)
    remote.layers[0][2]["ZONA"] = "19S"
    remote.layers[0][1]["ZONA"] = "19S"

    request = SyncRequest(scope=SyncScope.for_filter(FieldFilter("ZONA", "eq", "18S")))
    report = await orchestrator.run(request)

    assert report.state is SyncState.COMPLETED
    assert report.soft_delete_skipped is True
    assert report.soft_deleted == 0
    assert report.records_after == 1
    assert "soft-delete skipped: partial scope" in report.warnings
    assert len(await _records(session_factory)) == 3

    async with session_factory() as db:
        log = await store.list_sync_log(db, report.scope_key, limit=1)
    assert log[0].soft_delete_skipped is True


@pytest.mark.asyncio
async def test_incremental_mode_skips_soft_delete(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)

    # P3 disappears; P1 is edited after the cutoff.
    remote.layers[0] = remote.layers[0][:2]
    remote.layers[0][0].update(SUPERVISOR="Luis Paz", LAST_EDITED_DATE=1800000000000)

    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    request = SyncRequest(scope=SyncScope.for_action_code("CA-001"), mode=SyncMode.incremental(since))
    report = await orchestrator.run(request)

    assert report.fetched == 1
    assert report.updated == 1
    assert report.soft_deleted == 0
    assert report.soft_delete_skipped is True
    assert "soft-delete skipped: incremental mode" in report.warnings
    assert "LAST_EDITED_DATE >= timestamp '2024-01-01 00:00:00'" in remote.queries[-3][1]
    assert len(await _records(session_factory)) == 3


@pytest.mark.asyncio
async def test_overlay_survives_sync(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)
    overlay = EditOverlay(session_factory, ["findings", "descriptions_text"])
    await overlay.set(KEY_1, "descriptions_text", "Texto corregido")

    remote.layers[1][0]["DESCRIP_1"] = "Cambio remoto"
    report = await orchestrator.run(CA001)
    assert report.updated == 1

    records = {r.relation_key: r for r in await _records(session_factory)}
    assert records[KEY_1].descriptions_text == "Texto corregido"
    assert records[KEY_1].edited_fields == ["descriptions_text"]
    assert await overlay.get_all(KEY_1) == {"descriptions_text": "Texto corregido"}


@pytest.mark.asyncio
async def test_alternate_action_code_fallback(orchestrator, remote, session_factory):
    remote.layers[0] = [parent_row(1, KEY_1, code="OTRO", OTRO_CA="CA-777")]
    report = await orchestrator.run(SyncRequest(scope=SyncScope.for_action_code("CA-777")))

    assert report.new == 1
    assert report.code_field == "OTRO_CA"
    assert [w for _, w in remote.queries if "CA" in w][:2] == ["CA = 'CA-777'", "OTRO_CA = 'CA-777'"]
    assert len(await _records(session_factory, "CA-777")) == 1


@pytest.mark.asyncio
async def test_missing_relation_key_is_counted_not_fatal(orchestrator, remote):
    seed_ca001(remote)
    remote.layers[0].append({"OBJECTID": 9, "CA": "CA-001"})
    report = await orchestrator.run(CA001)

    assert report.state is SyncState.COMPLETED
    assert report.outcome == "partial"
    assert report.rows_missing_key == 1
    assert report.new == 3


@pytest.mark.asyncio
async def test_attachment_failure_does_not_fail_run(orchestrator, remote):
    seed_ca001(remote)
    remote.fail_downloads.add("p3_a.jpg")
    report = await orchestrator.run(CA001)

    assert report.state is SyncState.COMPLETED
    assert report.outcome == "partial"
    assert report.photos_downloaded == 5
    assert report.photos_failed == 1
    assert report.errors[0].relation_key == KEY_3


@pytest.mark.asyncio
async def test_remote_error_fails_run_and_is_logged(orchestrator, remote, session_factory):
    seed_ca001(remote)
    remote.query_error = RemoteTransientError("HTTP 503", status_code=503)
    progress = SyncProgress()
    report = await orchestrator.run(CA001, progress=progress)

    assert report.state is SyncState.FAILED
    assert report.outcome == "failed"
    assert progress.state is SyncState.FAILED
    assert progress.errors[0].kind == "remote_transient"

    async with session_factory() as db:
        entry = (await store.list_sync_log(db, "CA-001", limit=1))[0]
        assert entry.outcome == "failed"
        assert "HTTP 503" in entry.error_message
        assert await store.get_scope_state(db, "CA-001") is None


@pytest.mark.asyncio
async def test_step_timeout_fails_run(remote, session_factory, photo_store):
    seed_ca001(remote)
    remote.query_delay = 0.5
    orchestrator = SyncOrchestrator(remote, session_factory, photo_store, step_timeout_seconds=0.05)
    report = await orchestrator.run(CA001)

    assert report.state is SyncState.FAILED
    assert report.errors[0].kind == "timeout"


@pytest.mark.asyncio
async def test_cancel_before_start(orchestrator, remote, session_factory):
    seed_ca001(remote)
    cancel = asyncio.Event()
    cancel.set()
    report = await orchestrator.run(CA001, cancel_event=cancel)

    assert report.state is SyncState.CANCELLED
    assert report.outcome == "cancelled"
    assert remote.queries == []
    async with session_factory() as db:
        assert (await store.list_sync_log(db, "CA-001"))[0].outcome == "cancelled"


@pytest.mark.asyncio
async def test_records_only_run(orchestrator, remote):
    seed_ca001(remote)
    report = await orchestrator.run(SyncRequest(scope=SyncScope.for_action_code("CA-001"), sync_attachments=False))
    assert report.new == 3
    assert remote.list_calls == []

    forced = await orchestrator.run(SyncRequest(scope=SyncScope.for_action_code("CA-001"), force_attachments=True))
    assert forced.unchanged == 3
    assert forced.photos_downloaded == 6


@pytest.mark.asyncio
async def test_empty_incremental_window_keeps_primary_code_field(orchestrator, remote, session_factory):
    seed_ca001(remote)
    await orchestrator.run(CA001)
    remote.queries.clear()

    since = datetime(2030, 1, 1, tzinfo=timezone.utc)
    request = SyncRequest(scope=SyncScope.for_action_code("CA-001"), mode=SyncMode.incremental(since))
    report = await orchestrator.run(request)

    assert report.state is SyncState.COMPLETED
    assert report.fetched == 0
    assert report.code_field == "CA"
    assert not any("OTRO_CA" in where for _, where in remote.queries)
    async with session_factory() as db:
        state = await store.get_scope_state(db, "CA-001")
    assert state.code_field == "CA"
    assert len(await _records(session_factory)) == 3


@pytest.mark.asyncio
async def test_incremental_run_reuses_alternate_code_field(orchestrator, remote, session_factory):
    remote.layers[0] = [parent_row(1, KEY_1, code="OTRO", OTRO_CA="CA-777", LAST_EDITED_DATE=1800000000000)]
    scope = SyncScope.for_action_code("CA-777")
    await orchestrator.run(SyncRequest(scope=scope))

    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    report = await orchestrator.run(SyncRequest(scope=scope, mode=SyncMode.incremental(since)))
    assert report.code_field == "OTRO_CA"
    assert report.fetched == 1


@pytest.mark.asyncio
async def test_store_failure_rolls_back_every_upsert(orchestrator, remote, session_factory, monkeypatch):
    seed_ca001(remote)
    original = store.upsert_record
    calls = []

    async def _flaky_upsert(db, *args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise OperationalError("INSERT INTO inspection_records", {}, Exception("disk I/O error"))
        return await original(db, *args, **kwargs)

    monkeypatch.setattr(store, "upsert_record", _flaky_upsert)
    report = await orchestrator.run(CA001)

    assert report.state is SyncState.FAILED
    assert report.errors[0].kind == "store"
    assert report.photos_downloaded == 0
    assert remote.downloads == []
    assert await _records(session_factory) == []
    async with session_factory() as db:
        assert await store.get_scope_state(db, "CA-001") is None


@pytest.mark.asyncio
async def test_malformed_attachment_listing_does_not_fail_run(orchestrator, remote):
    seed_ca001(remote)
    remote.attachments[(0, 2)].append({"name": "no_id.jpg"})
    report = await orchestrator.run(CA001)

    assert report.state is SyncState.COMPLETED
    assert report.outcome == "partial"
    assert report.attachment_list_failures == 1
    assert report.photos_downloaded == 4
    assert report.errors[0].relation_key == KEY_2
