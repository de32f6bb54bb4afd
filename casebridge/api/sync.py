"""Scheduled sync status, manual trigger and job history."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from casebridge.core.auth import verify_credentials
from casebridge.core.components import SyncComponents, get_components
from casebridge.core.sync_scheduler import cleanup_stale_jobs, scheduler
from casebridge.database import get_db
from casebridge.models import SyncJob


router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    enabled: bool
    running: bool
    interval_minutes: int
    outstanding_jobs: int
    max_outstanding_jobs: int
    last_run_started_at: Optional[str] = None
    last_run_skipped: bool = False
    last_run_id: Optional[str] = None
    last_run_total_ids: int = 0
    last_run_chunks: int = 0


class SyncRunResponse(BaseModel):
    run_id: str
    total_ids: int
    chunks_submitted: int
    submission_failures: int


class SyncJobResponse(BaseModel):
    id: int
    run_id: str
    chunk_index: int
    status: str
    ids_received: int
    ids_valid: int
    records_fetched: int
    records_matched: int
    records_updated: int
    error_details: Optional[dict] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    """Scheduler state and the outcome of the most recent run."""
    data = scheduler.get_status()
    data["outstanding_jobs"] = components.orchestrator.outstanding_jobs
    return SyncStatusResponse(**data)


@router.post("/run", response_model=SyncRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    db: AsyncSession = Depends(get_db),
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    """
    Start one orchestrated run outside the schedule.

    Chunk jobs run in the background; poll /api/sync/jobs for their results.
    """
    await cleanup_stale_jobs(db)

    summary = await components.orchestrator.run_scheduled_sync()
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A sync run is already in progress. Try again once its jobs finish."
        )

    return SyncRunResponse(
        run_id=summary.run_id,
        total_ids=summary.total_ids,
        chunks_submitted=summary.chunks_submitted,
        submission_failures=summary.submission_failures,
    )


@router.get("/jobs", response_model=List[SyncJobResponse])
async def list_sync_jobs(
    limit: int = Query(50, ge=1, le=500),
    run_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_credentials),
):
    """Most recent chunk jobs, newest first."""
    query = select(SyncJob)
    if run_id:
        query = query.where(SyncJob.run_id == run_id)
    query = query.order_by(SyncJob.id.desc()).limit(limit)

    result = await db.execute(query)
    jobs = result.scalars().all()

    return [
        SyncJobResponse(
            id=job.id,
            run_id=job.run_id,
            chunk_index=job.chunk_index,
            status=job.status,
            ids_received=job.ids_received or 0,
            ids_valid=job.ids_valid or 0,
            records_fetched=job.records_fetched or 0,
            records_matched=job.records_matched or 0,
            records_updated=job.records_updated or 0,
            error_details=job.error_details,
            created_at=_iso(job.created_at),
            started_at=_iso(job.started_at),
            completed_at=_iso(job.completed_at),
        )
        for job in jobs
    ]
