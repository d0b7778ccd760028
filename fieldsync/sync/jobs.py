"""In-process sync job registry.

Each `start_sync` call runs the orchestrator on its own asyncio task and
returns a job id. One run per scope at a time: a second request for a busy
scope is rejected or waits for the scope lock, as the caller asks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from ..errors import JobNotFoundError, ScopeBusyError
from .locks import KeyedLocks
from .orchestrator import SyncOrchestrator, SyncReport, SyncRequest
from .progress import SyncErrorInfo, SyncProgress, SyncState

logger = logging.getLogger(__name__)

ConflictPolicy = Literal["reject", "queue"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncJob:
    job_id: str
    request: SyncRequest
    created_at: datetime = field(default_factory=_utcnow)
    status: str = "pending"  # pending -> running -> completed/failed/cancelled
    progress: SyncProgress = field(default_factory=SyncProgress)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    report: SyncReport | None = None
    finished_at: datetime | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in {"completed", "failed", "cancelled"}

    def snapshot(self) -> dict[str, Any]:
        data = self.progress.snapshot()
        data.update(
            {
                "job_id": self.job_id,
                "scope": self.request.scope.key,
                "status": self.status,
                "created_at": self.created_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "report": self.report.to_dict() if self.report else None,
            }
        )
        return data


class SyncJobManager:
    def __init__(self, orchestrator: SyncOrchestrator, *, ttl_hours: float = 24):
        self.orchestrator = orchestrator
        self.ttl = timedelta(hours=ttl_hours)
        self._jobs: dict[str, SyncJob] = {}
        self._scope_locks: KeyedLocks[str] = KeyedLocks()

    def start_sync(self, request: SyncRequest, *, on_conflict: ConflictPolicy = "reject") -> str:
        scope_key = request.scope.key
        if on_conflict not in ("reject", "queue"):
            raise ValueError(f"unknown conflict policy: {on_conflict}")
        if on_conflict == "reject" and any(
            j.request.scope.key == scope_key and not j.done for j in self._jobs.values()
        ):
            raise ScopeBusyError(f"a sync for scope '{scope_key}' is already in flight")

        self.cleanup_expired()
        job = SyncJob(job_id=uuid.uuid4().hex, request=request)
        self._jobs[job.job_id] = job
        job.task = asyncio.create_task(self._run(job), name=f"sync-{scope_key}")
        logger.info("Sync job %s created for scope %s", job.job_id, scope_key)
        return job.job_id

    async def _run(self, job: SyncJob) -> None:
        async with self._scope_locks.hold(job.request.scope.key):
            if job.cancel_event.is_set():
                job.progress.state = SyncState.CANCELLED
                job.status = "cancelled"
                job.finished_at = _utcnow()
                return
            job.status = "running"
            try:
                report = await self.orchestrator.run(
                    job.request, cancel_event=job.cancel_event, progress=job.progress
                )
            except Exception as e:
                # run() reports its own failures; this only covers bugs around it.
                logger.exception("Sync job %s crashed", job.job_id)
                job.progress.errors.append(SyncErrorInfo.from_exception(e))
                job.progress.state = SyncState.FAILED
                job.status = "failed"
            else:
                job.report = report
                job.status = report.state.value if report.state.is_terminal else "failed"
            job.finished_at = _utcnow()

    def _get(self, job_id: str) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"unknown job '{job_id}'")
        return job

    def request_cancel(self, job_id: str) -> bool:
        """Flag the job for cancellation. False when it already finished."""
        job = self._get(job_id)
        if job.done:
            return False
        job.cancel_event.set()
        logger.info("Cancellation requested for sync job %s", job_id)
        return True

    def get_progress(self, job_id: str) -> dict[str, Any]:
        return self._get(job_id).snapshot()

    def get_job(self, job_id: str) -> SyncJob:
        return self._get(job_id)

    def list_jobs(self) -> list[SyncJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    async def wait(self, job_id: str) -> SyncJob:
        job = self._get(job_id)
        if job.task is not None:
            await asyncio.shield(job.task)
        return job

    def cleanup_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or _utcnow()) - self.ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.done and (job.finished_at or job.created_at) < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Dropped %d expired sync job(s)", len(expired))
        return len(expired)

    async def shutdown(self) -> None:
        pending = [j for j in self._jobs.values() if not j.done]
        for job in pending:
            job.cancel_event.set()
        tasks = [j.task for j in pending if j.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
