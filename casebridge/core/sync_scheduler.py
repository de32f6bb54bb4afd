"""Background scheduler that triggers the orchestrated sync on an interval."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casebridge.config import settings
from casebridge.core.sync_orchestrator import SyncOrchestrator, SyncRunSummary
from casebridge.models import SyncJob


logger = logging.getLogger(__name__)


async def cleanup_stale_jobs(db: AsyncSession, timeout_minutes: Optional[int] = None) -> int:
    """
    Mark jobs stuck in 'pending' or 'running' as failed.

    Such rows are left behind when the process stops mid-run; chunk jobs are
    never re-enqueued, so the rows only need closing out.

    Returns:
        Number of stale jobs cleaned up
    """
    if timeout_minutes is None:
        timeout_minutes = settings.stale_job_timeout_minutes
    stale_threshold = datetime.utcnow() - timedelta(minutes=timeout_minutes)

    stale_jobs_result = await db.execute(
        select(SyncJob).where(
            or_(
                and_(
                    SyncJob.status == "running",
                    SyncJob.started_at != None,
                    SyncJob.started_at < stale_threshold
                ),
                and_(
                    SyncJob.status == "pending",
                    SyncJob.created_at < stale_threshold
                )
            )
        )
    )
    stale_jobs = stale_jobs_result.scalars().all()

    if not stale_jobs:
        return 0

    for job in stale_jobs:
        logger.warning(
            f"Marking stale sync job {job.id} as failed (run: {job.run_id}, chunk: {job.chunk_index}, "
            f"status: {job.status}, created: {job.created_at})"
        )
        job.status = "failed"
        job.completed_at = datetime.utcnow()
        job.error_details = {
            "error": f"Job marked as stale after {timeout_minutes} minutes. "
                     f"This usually indicates the application stopped during sync."
        }

    await db.commit()
    logger.info(f"Cleaned up {len(stale_jobs)} stale sync job(s)")
    return len(stale_jobs)


class SyncScheduler:
    """Runs the orchestrator every ``sync_interval_minutes`` with graceful shutdown."""

    def __init__(self):
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.shutdown_event = asyncio.Event()
        self.orchestrator: Optional[SyncOrchestrator] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._last_run_started_at: Optional[datetime] = None
        self._last_run: Optional[SyncRunSummary] = None
        self._last_run_skipped: bool = False

    async def start(self, orchestrator: SyncOrchestrator, session_factory: async_sessionmaker[AsyncSession]):
        """Start the scheduler."""
        self.orchestrator = orchestrator
        self._session_factory = session_factory

        if not settings.sync_enabled:
            logger.info("Scheduled sync is disabled")
            return

        if self.running:
            logger.warning("Sync scheduler is already running")
            return

        self.running = True
        self.shutdown_event.clear()
        self.task = asyncio.create_task(self._run())
        logger.info(f"Sync scheduler started (interval: {settings.sync_interval_minutes}m)")

    async def stop(self):
        """
        Stop the scheduler with graceful shutdown.

        Waits for outstanding chunk jobs to complete, up to sync_shutdown_timeout seconds.
        """
        if self.running:
            logger.info("Stopping sync scheduler (graceful shutdown)...")
            self.running = False
            self.shutdown_event.set()

            if self.task:
                self.task.cancel()
                try:
                    await self.task
                except asyncio.CancelledError:
                    pass

        if self.orchestrator and self.orchestrator.outstanding_jobs:
            logger.info(
                f"Waiting for {self.orchestrator.outstanding_jobs} sync job(s) to complete "
                f"(timeout: {settings.sync_shutdown_timeout}s)..."
            )
            await self.orchestrator.wait_for_jobs(timeout=settings.sync_shutdown_timeout)

        logger.info("Sync scheduler stopped")

    async def _run(self):
        """Main scheduler loop."""
        if not settings.sync_on_startup:
            if await self._sleep(settings.sync_interval_minutes * 60):
                return

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in sync scheduler loop: {e}", exc_info=True)

            if await self._sleep(settings.sync_interval_minutes * 60):
                break

    async def _sleep(self, seconds: float) -> bool:
        """Interruptible sleep. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_once(self) -> Optional[SyncRunSummary]:
        """Close out stale jobs, then start one orchestrated run."""
        if self.orchestrator is None or self._session_factory is None:
            raise RuntimeError("Sync scheduler has not been started")

        self._last_run_started_at = datetime.utcnow()
        async with self._session_factory() as db:
            await cleanup_stale_jobs(db)

        summary = await self.orchestrator.run_scheduled_sync()
        self._last_run_skipped = summary is None
        if summary is not None:
            self._last_run = summary
        return summary

    def get_status(self) -> dict:
        """Return scheduler status for API consumption."""
        return {
            "enabled": settings.sync_enabled,
            "running": self.running,
            "interval_minutes": settings.sync_interval_minutes,
            "outstanding_jobs": self.orchestrator.outstanding_jobs if self.orchestrator else 0,
            "max_outstanding_jobs": settings.max_outstanding_jobs,
            "last_run_started_at": (
                self._last_run_started_at.isoformat() + "Z"
                if self._last_run_started_at
                else None
            ),
            "last_run_skipped": self._last_run_skipped,
            "last_run_id": self._last_run.run_id if self._last_run else None,
            "last_run_total_ids": self._last_run.total_ids if self._last_run else 0,
            "last_run_chunks": self._last_run.chunks_submitted if self._last_run else 0,
        }


# Global scheduler instance
scheduler = SyncScheduler()
