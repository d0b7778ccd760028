"""Tests for attachment listing, dedupe and download."""

from __future__ import annotations

import asyncio

import pytest

from fieldsync.sync import attachments, store
from fieldsync.sync.attachments import AttachmentSyncer
from fieldsync.sync.joiner import join_records
from fieldsync.tests.fakes import KEY_1, KEY_2, KEY_3, parent_row, seed_ca001


def _records(remote):
    return join_records(remote.layers[0], remote.layers[1], remote.layers[2]).records


def _syncer(remote, session_factory, photo_store, **kwargs):
    return AttachmentSyncer(remote, session_factory, photo_store, parent_layer_id=0, **kwargs)


@pytest.mark.asyncio
async def test_downloads_each_file_once(remote, session_factory, photo_store):
    seed_ca001(remote)
    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote))

    assert stats.downloaded == 6
    assert stats.failed == 0
    assert stats.keys_processed == 3

    async with session_factory() as db:
        photos = await store.photos_for_key(db, KEY_1)
    assert set(photos) == {"desc_11_a.jpg", "fact_21_a.jpg"}
    assert photos["desc_11_a.jpg"].source_layer == 1
    assert photos["fact_21_a.jpg"].child_object_id == 21
    path = photo_store.path_for(KEY_1, "desc_11_a.jpg")
    assert path.read_bytes() == b"jpeg:desc_11_a.jpg"

    # Second pass finds everything on disk.
    again = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert again.downloaded == 0
    assert len(remote.downloads) == 6


@pytest.mark.asyncio
async def test_duplicate_names_across_children_download_once(remote, session_factory, photo_store):
    remote.layers[0] = [parent_row(1, KEY_1)]
    remote.layers[1] = [{"OBJECTID": 11, "GUID": KEY_1}, {"OBJECTID": 12, "GUID": KEY_1}]
    remote.add_attachment(1, 11, "same.jpg")
    remote.add_attachment(1, 12, "same.jpg")

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert stats.downloaded == 1
    assert remote.downloads == [(1, 11, 1101)]


@pytest.mark.asyncio
async def test_failed_download_is_isolated(remote, session_factory, photo_store):
    seed_ca001(remote)
    remote.fail_downloads.add("p2_a.jpg")

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert stats.downloaded == 5
    assert stats.failed == 1
    assert stats.errors[0].relation_key == KEY_2
    assert not photo_store.path_for(KEY_2, "p2_a.jpg").exists()

    # The next run retries only the missing file.
    remote.fail_downloads.clear()
    retry = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert retry.downloaded == 1


@pytest.mark.asyncio
async def test_missing_file_is_refetched(remote, session_factory, photo_store):
    seed_ca001(remote)
    await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    photo_store.path_for(KEY_2, "p2_b.jpg").unlink()

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert stats.downloaded == 1
    assert stats.missing_files == [f"{KEY_2}/p2_b.jpg"]


@pytest.mark.asyncio
async def test_removed_attachment_soft_deleted_only_when_propagating(remote, session_factory, photo_store):
    seed_ca001(remote)
    await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    remote.attachments[(0, 2)] = [a for a in remote.attachments[(0, 2)] if a["name"] != "p2_b.jpg"]

    kept = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert kept.soft_deleted == 0

    removed = await _syncer(remote, session_factory, photo_store).sync(_records(remote), propagate_deletes=True)
    assert removed.soft_deleted == 1
    async with session_factory() as db:
        photos = await store.photos_for_key(db, KEY_2)
    assert photos["p2_b.jpg"].is_deleted is True
    # The file stays on disk.
    assert photo_store.path_for(KEY_2, "p2_b.jpg").exists()

    # Re-listed later: reactivated without a download.
    remote.add_attachment(0, 2, "p2_b.jpg", attachment_id=202)
    back = await _syncer(remote, session_factory, photo_store).sync(_records(remote), propagate_deletes=True)
    assert back.reactivated == 1
    assert back.downloaded == 0


@pytest.mark.asyncio
async def test_listing_failure_blocks_photo_soft_delete(remote, session_factory, photo_store):
    seed_ca001(remote)
    await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    remote.fail_lists.add((0, 2))

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote), propagate_deletes=True)
    assert stats.list_failures == 1
    assert stats.soft_deleted == 0


@pytest.mark.asyncio
async def test_cancel_stops_new_downloads(remote, session_factory, photo_store):
    seed_ca001(remote)
    cancel = asyncio.Event()
    cancel.set()

    stats = await _syncer(remote, session_factory, photo_store, cancel_event=cancel).sync(_records(remote))
    assert stats.downloaded == 0
    assert remote.downloads == []


@pytest.mark.asyncio
async def test_new_attachment_downloads_exactly_one_file(remote, session_factory, photo_store):
    seed_ca001(remote)
    await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    remote.downloads.clear()
    remote.add_attachment(1, 12, "desc_12_a.jpg")

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote))
    assert stats.downloaded == 1
    assert remote.downloads == [(1, 12, 1201)]

    async with session_factory() as db:
        photos = await store.photos_for_key(db, KEY_1)
    assert set(photos) == {"desc_11_a.jpg", "fact_21_a.jpg", "desc_12_a.jpg"}
    assert photos["desc_12_a.jpg"].child_object_id == 12


@pytest.mark.asyncio
async def test_malformed_attachment_entry_only_fails_its_listing(remote, session_factory, photo_store):
    seed_ca001(remote)
    remote.attachments[(0, 2)].append({"name": "no_id.jpg"})

    stats = await _syncer(remote, session_factory, photo_store).sync(_records(remote), propagate_deletes=True)
    assert stats.list_failures == 1
    assert stats.errors[0].kind == "attachment"
    assert stats.errors[0].relation_key == KEY_2
    # Every other record still gets its files.
    assert stats.downloaded == 4
    assert stats.soft_deleted == 0


@pytest.mark.asyncio
async def test_worker_error_waits_for_sibling_workers(remote, session_factory, photo_store, monkeypatch):
    seed_ca001(remote)
    remote.download_delay = 0.05
    original = attachments.photos_for_key

    async def _photos_for_key(db, relation_key):
        if relation_key == KEY_2:
            raise RuntimeError("database went away")
        return await original(db, relation_key)

    monkeypatch.setattr(attachments, "photos_for_key", _photos_for_key)

    with pytest.raises(RuntimeError):
        await _syncer(remote, session_factory, photo_store).sync(_records(remote))

    # The siblings were done writing when the error surfaced.
    async with session_factory() as db:
        settled = {key: len(await store.photos_for_key(db, key)) for key in (KEY_1, KEY_3)}
    assert settled == {KEY_1: 2, KEY_3: 2}
    await asyncio.sleep(0.2)
    assert len(remote.downloads) == 4
