"""Tests for the in-process sync job registry."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fieldsync.errors import JobNotFoundError, ScopeBusyError
from fieldsync.sync.jobs import SyncJobManager
from fieldsync.sync.orchestrator import SyncOrchestrator, SyncRequest
from fieldsync.sync.scope import SyncScope
from fieldsync.tests.fakes import seed_ca001


@pytest.fixture
def manager(remote, session_factory, photo_store):
    seed_ca001(remote)
    return SyncJobManager(SyncOrchestrator(remote, session_factory, photo_store), ttl_hours=1)


def _request(code: str = "CA-001") -> SyncRequest:
    return SyncRequest(scope=SyncScope.for_action_code(code))


@pytest.mark.asyncio
async def test_job_runs_to_completion(manager):
    job_id = manager.start_sync(_request())
    job = await manager.wait(job_id)

    assert job.status == "completed"
    progress = manager.get_progress(job_id)
    assert progress["state"] == "completed"
    assert progress["fetched"] == progress["total"] == 3
    assert progress["photos_done"] == progress["photos_total"] == 6
    assert progress["report"]["new"] == 3


@pytest.mark.asyncio
async def test_second_request_for_busy_scope_rejected(manager, remote):
    remote.query_delay = 0.2
    first = manager.start_sync(_request())
    with pytest.raises(ScopeBusyError):
        manager.start_sync(_request())

    # A different scope is independent.
    other = manager.start_sync(_request("CA-002"))
    await manager.wait(first)
    await manager.wait(other)


@pytest.mark.asyncio
async def test_queued_request_waits_for_scope(manager, remote):
    remote.query_delay = 0.05
    first = manager.start_sync(_request())
    second = manager.start_sync(_request(), on_conflict="queue")

    assert (await manager.wait(second)).status == "completed"
    first_job = manager.get_job(first)
    second_job = manager.get_job(second)
    assert first_job.finished_at <= second_job.finished_at
    assert second_job.report.unchanged == 3
    await manager.wait(first)
    assert len(manager._scope_locks) == 0


@pytest.mark.asyncio
async def test_unknown_conflict_policy(manager):
    with pytest.raises(ValueError):
        manager.start_sync(_request(), on_conflict="merge")


@pytest.mark.asyncio
async def test_cancel_running_job(manager, remote):
    remote.query_delay = 0.1
    job_id = manager.start_sync(_request())
    await asyncio.sleep(0)
    assert manager.request_cancel(job_id) is True

    job = await manager.wait(job_id)
    assert job.status == "cancelled"
    assert manager.request_cancel(job_id) is False


@pytest.mark.asyncio
async def test_failed_run_reports_structured_errors(manager, remote):
    remote.query_error = RuntimeError("socket closed")
    job = await manager.wait(manager.start_sync(_request()))

    assert job.status == "failed"
    errors = manager.get_progress(job.job_id)["errors"]
    assert errors == [{"kind": "RuntimeError", "message": "socket closed", "relation_key": None}]


@pytest.mark.asyncio
async def test_unknown_job(manager):
    with pytest.raises(JobNotFoundError):
        manager.get_progress("nope")
    with pytest.raises(JobNotFoundError):
        manager.request_cancel("nope")


@pytest.mark.asyncio
async def test_cleanup_expired(manager):
    job = await manager.wait(manager.start_sync(_request()))
    assert manager.cleanup_expired() == 0
    assert manager.cleanup_expired(now=job.finished_at + timedelta(hours=2)) == 1
    assert manager.list_jobs() == []
