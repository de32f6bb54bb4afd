"""
Scheduled sync entry point: enumerate linked work items, split them into
chunks and hand each chunk to a Callout Worker as its own tracked job.

Policy when the outstanding-job ceiling is reached: chunks of the current run
queue for a free slot; a new run is skipped while an earlier run still has
jobs outstanding or is still submitting chunks, and the next scheduled run
picks the records up.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casebridge.config import REMOTE_BATCH_LIMIT
from casebridge.core.callout_worker import CalloutWorker, ChunkResult
from casebridge.core.local_store import LocalStore
from casebridge.models import SyncJob


logger = logging.getLogger(__name__)


def partition(remote_ids: Iterable[str], chunk_size: int) -> List[List[str]]:
    """Split ids into consecutive chunks of at most ``chunk_size``; each id appears once."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    unique_ids = list(dict.fromkeys(remote_ids))
    return [
        unique_ids[start:start + chunk_size]
        for start in range(0, len(unique_ids), chunk_size)
    ]


@dataclass
class SyncRunSummary:
    run_id: str
    total_ids: int = 0
    chunks_submitted: int = 0
    submission_failures: int = 0


class SyncOrchestrator:
    """Fans a sync run out into independently scheduled chunk jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: LocalStore,
        worker: CalloutWorker,
        *,
        chunk_size: int = REMOTE_BATCH_LIMIT,
        max_outstanding_jobs: int = 5,
    ):
        if chunk_size > REMOTE_BATCH_LIMIT:
            raise ValueError(f"chunk_size cannot exceed the remote batch limit of {REMOTE_BATCH_LIMIT}")
        self._session_factory = session_factory
        self.store = store
        self.worker = worker
        self.chunk_size = chunk_size
        self.max_outstanding_jobs = max_outstanding_jobs
        self._slots = asyncio.Semaphore(max_outstanding_jobs)
        self.active_tasks: Set[asyncio.Task] = set()
        self._active_tasks_lock = threading.Lock()
        self._run_in_progress = False

    @property
    def outstanding_jobs(self) -> int:
        with self._active_tasks_lock:
            return sum(1 for t in self.active_tasks if not t.done())

    async def run_scheduled_sync(self) -> Optional[SyncRunSummary]:
        """Submit one job per chunk of linked work items. Returns None when the run is skipped."""
        # Check and claim before the first await so overlapping triggers cannot both submit
        if self._run_in_progress:
            logger.info("Skipping sync run - another run is still submitting chunks. Will retry on next schedule.")
            return None

        outstanding = self.outstanding_jobs
        if outstanding:
            logger.info(
                f"Skipping sync run - {outstanding} job(s) from an earlier run are still outstanding. "
                f"Will retry on next schedule."
            )
            return None

        self._run_in_progress = True
        try:
            return await self._submit_run()
        finally:
            self._run_in_progress = False

    async def _submit_run(self) -> SyncRunSummary:
        summary = SyncRunSummary(run_id=uuid.uuid4().hex)
        remote_ids = await self.store.list_linked_remote_ids()
        chunks = partition(remote_ids, self.chunk_size)
        summary.total_ids = sum(len(c) for c in chunks)

        logger.info(
            f"Sync run {summary.run_id}: {summary.total_ids} linked work items in {len(chunks)} chunk(s) "
            f"(chunk size {self.chunk_size}, max {self.max_outstanding_jobs} concurrent)"
        )

        for index, chunk in enumerate(chunks):
            try:
                await self.submit_chunk(summary.run_id, index, chunk)
                summary.chunks_submitted += 1
            except Exception as e:
                summary.submission_failures += 1
                logger.error(f"Failed to submit chunk {index} of run {summary.run_id}: {e}", exc_info=True)

        return summary

    async def submit_chunk(self, run_id: str, chunk_index: int, remote_ids: List[str]) -> int:
        """Persist a pending job for the chunk and start its task. Returns the job id."""
        async with self._session_factory() as db:
            job = SyncJob(
                run_id=run_id,
                chunk_index=chunk_index,
                remote_ids=list(remote_ids),
                status="pending",
                ids_received=len(remote_ids),
            )
            db.add(job)
            await db.commit()
            await db.refresh(job)
            job_id = job.id

        task = asyncio.create_task(self._run_job(job_id, list(remote_ids)))

        def remove_task(t, lock=self._active_tasks_lock, tasks=self.active_tasks):
            with lock:
                tasks.discard(t)

        with self._active_tasks_lock:
            self.active_tasks.add(task)
        task.add_done_callback(remove_task)
        return job_id

    async def _run_job(self, job_id: int, remote_ids: List[str]) -> None:
        async with self._slots:
            try:
                await self._mark_started(job_id)
                result = await self.worker.process_chunk(remote_ids)
            except Exception as e:
                logger.error(f"Sync job {job_id} crashed: {e}", exc_info=True)
                result = ChunkResult(status="failed", ids_received=len(remote_ids), error=str(e))

            try:
                await self._record_result(job_id, result)
            except Exception as e:
                logger.error(f"Failed to record result of sync job {job_id}: {e}", exc_info=True)

    async def _mark_started(self, job_id: int) -> None:
        async with self._session_factory() as db:
            job = (await db.execute(select(SyncJob).where(SyncJob.id == job_id))).scalar_one()
            job.status = "running"
            job.started_at = datetime.utcnow()
            await db.commit()

    async def _record_result(self, job_id: int, result: ChunkResult) -> None:
        async with self._session_factory() as db:
            job = (await db.execute(select(SyncJob).where(SyncJob.id == job_id))).scalar_one()
            job.status = result.status
            job.completed_at = datetime.utcnow()
            job.ids_valid = result.ids_valid
            job.records_fetched = result.records_fetched
            job.records_matched = result.records_matched
            job.records_updated = result.records_updated
            job.error_details = result.as_error_details()
            await db.commit()

    async def wait_for_jobs(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all outstanding jobs. On timeout the remaining tasks are cancelled.

        Returns True if every job finished on its own.
        """
        with self._active_tasks_lock:
            tasks_snapshot = list(self.active_tasks)
        if not tasks_snapshot:
            return True

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks_snapshot, return_exceptions=True),
                timeout=timeout
            )
            return True
        except asyncio.TimeoutError:
            remaining = [t for t in tasks_snapshot if not t.done()]
            logger.warning(
                f"Timeout waiting for sync jobs after {timeout}s. "
                f"{len(remaining)} job(s) were interrupted."
            )
            for task in remaining:
                task.cancel()
            return False
