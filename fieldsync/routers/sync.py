"""Sync trigger routes - start, poll, cancel, history."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..deps import get_jobs
from ..schemas.sync import JobProgress, SyncLogOut, SyncStarted, SyncStartRequest
from ..sync import store
from ..sync.jobs import SyncJobManager
from ..sync.orchestrator import SyncRequest

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=SyncStarted, status_code=202)
async def start_sync(body: SyncStartRequest, jobs: SyncJobManager = Depends(get_jobs)):
    request = SyncRequest.build(
        action_code=body.action_code,
        filter_payload=body.filter,
        all_records=body.all_records,
        mode=body.mode,
        since=body.since,
        force_attachments=body.force_attachments,
        sync_attachments=body.sync_attachments,
    )
    job_id = jobs.start_sync(request, on_conflict=body.on_conflict)
    return SyncStarted(job_id=job_id, scope=request.scope.key)


@router.get("/jobs", response_model=list[JobProgress])
async def list_jobs(jobs: SyncJobManager = Depends(get_jobs)):
    return [job.snapshot() for job in jobs.list_jobs()]


@router.get("/jobs/{job_id}", response_model=JobProgress)
async def get_progress(job_id: str, jobs: SyncJobManager = Depends(get_jobs)):
    return jobs.get_progress(job_id)


@router.post("/jobs/{job_id}/cancel")
async def request_cancel(job_id: str, jobs: SyncJobManager = Depends(get_jobs)):
    accepted = jobs.request_cancel(job_id)
    return {"job_id": job_id, "cancel_requested": accepted}


@router.get("/log", response_model=list[SyncLogOut])
async def sync_log(
    scope: str | None = None,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
):
    return await store.list_sync_log(db, scope, limit)
