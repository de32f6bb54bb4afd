"""Tests for chunk partitioning and job fan-out."""

import asyncio
import math

import pytest
from sqlalchemy import select

from casebridge.core.callout_worker import ChunkResult
from casebridge.core.sync_orchestrator import SyncOrchestrator, partition
from casebridge.models import SyncJob, WorkItem


class FakeWorker:
    """Records chunks and optionally blocks until released."""

    def __init__(self, gate: asyncio.Event = None, crash: bool = False):
        self.gate = gate
        self.crash = crash
        self.chunks = []
        self.running = 0
        self.max_running = 0

    async def process_chunk(self, remote_ids):
        self.chunks.append(list(remote_ids))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.crash:
                raise RuntimeError("worker exploded")
            return ChunkResult(ids_received=len(remote_ids), ids_valid=len(remote_ids),
                               records_fetched=len(remote_ids), records_matched=len(remote_ids))
        finally:
            self.running -= 1


async def _seed_work_items(db_session, count):
    db_session.add_all([WorkItem(remote_id=str(1000 + i), title=f"item {i}") for i in range(count)])
    await db_session.commit()


async def _jobs(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(SyncJob).order_by(SyncJob.chunk_index))).scalars().all()


@pytest.mark.parametrize("n,size", [(0, 200), (1, 200), (200, 200), (201, 200), (450, 200), (7, 3)])
def test_partition_covers_every_id_once(n, size):
    ids = [str(i) for i in range(n)]
    chunks = partition(ids, size)

    assert len(chunks) == math.ceil(n / size)
    assert all(1 <= len(c) <= size for c in chunks)
    flat = [i for c in chunks for i in c]
    assert flat == ids


def test_partition_drops_duplicates_and_rejects_bad_size():
    assert partition(["1", "2", "1", "3"], 2) == [["1", "2"], ["3"]]
    with pytest.raises(ValueError):
        partition(["1"], 0)


@pytest.mark.asyncio
async def test_chunk_size_above_remote_limit_is_rejected(session_maker, store):
    with pytest.raises(ValueError):
        SyncOrchestrator(session_maker, store, FakeWorker(), chunk_size=201)


@pytest.mark.asyncio
async def test_run_submits_one_job_per_chunk(session_maker, store, db_session):
    await _seed_work_items(db_session, 5)
    worker = FakeWorker()
    orchestrator = SyncOrchestrator(session_maker, store, worker, chunk_size=2, max_outstanding_jobs=5)

    summary = await orchestrator.run_scheduled_sync()
    assert await orchestrator.wait_for_jobs(timeout=5)

    assert summary.total_ids == 5
    assert summary.chunks_submitted == 3
    assert summary.submission_failures == 0
    assert sorted(i for c in worker.chunks for i in c) == [str(1000 + i) for i in range(5)]

    jobs = await _jobs(session_maker)
    assert [j.chunk_index for j in jobs] == [0, 1, 2]
    assert {j.run_id for j in jobs} == {summary.run_id}
    assert all(j.status == "completed" for j in jobs)
    assert [j.ids_received for j in jobs] == [2, 2, 1]
    assert all(j.started_at and j.completed_at for j in jobs)


@pytest.mark.asyncio
async def test_run_with_no_linked_items_submits_nothing(session_maker, store, db_session):
    orchestrator = SyncOrchestrator(session_maker, store, FakeWorker(), chunk_size=2)

    summary = await orchestrator.run_scheduled_sync()

    assert summary.total_ids == 0
    assert summary.chunks_submitted == 0
    assert await _jobs(session_maker) == []


@pytest.mark.asyncio
async def test_ceiling_queues_chunks_and_skips_overlapping_runs(session_maker, store, db_session):
    await _seed_work_items(db_session, 5)
    gate = asyncio.Event()
    worker = FakeWorker(gate=gate)
    orchestrator = SyncOrchestrator(session_maker, store, worker, chunk_size=1, max_outstanding_jobs=2)

    summary = await orchestrator.run_scheduled_sync()
    for _ in range(50):
        await asyncio.sleep(0.01)

    assert summary.chunks_submitted == 5
    assert worker.max_running == 2
    assert orchestrator.outstanding_jobs == 5
    assert await orchestrator.run_scheduled_sync() is None

    gate.set()
    assert await orchestrator.wait_for_jobs(timeout=5)
    assert worker.max_running == 2
    assert orchestrator.outstanding_jobs == 0
    assert len(worker.chunks) == 5


@pytest.mark.asyncio
async def test_submission_failure_does_not_stop_other_chunks(session_maker, store, db_session, monkeypatch):
    await _seed_work_items(db_session, 3)
    orchestrator = SyncOrchestrator(session_maker, store, FakeWorker(), chunk_size=1)
    original_submit = orchestrator.submit_chunk

    async def flaky_submit(run_id, chunk_index, remote_ids):
        if chunk_index == 1:
            raise RuntimeError("queue unavailable")
        return await original_submit(run_id, chunk_index, remote_ids)

    monkeypatch.setattr(orchestrator, "submit_chunk", flaky_submit)

    summary = await orchestrator.run_scheduled_sync()
    await orchestrator.wait_for_jobs(timeout=5)

    assert summary.chunks_submitted == 2
    assert summary.submission_failures == 1
    assert [j.chunk_index for j in await _jobs(session_maker)] == [0, 2]


@pytest.mark.asyncio
async def test_worker_crash_is_recorded_as_failed_job(session_maker, store, db_session):
    await _seed_work_items(db_session, 1)
    orchestrator = SyncOrchestrator(session_maker, store, FakeWorker(crash=True))

    await orchestrator.run_scheduled_sync()
    await orchestrator.wait_for_jobs(timeout=5)

    (job,) = await _jobs(session_maker)
    assert job.status == "failed"
    assert "worker exploded" in job.error_details["error"]


@pytest.mark.asyncio
async def test_wait_for_jobs_timeout_cancels_remaining(session_maker, store, db_session):
    await _seed_work_items(db_session, 1)
    orchestrator = SyncOrchestrator(session_maker, store, FakeWorker(gate=asyncio.Event()))

    await orchestrator.run_scheduled_sync()

    assert await orchestrator.wait_for_jobs(timeout=0.1) is False
    await asyncio.sleep(0.05)
    assert orchestrator.outstanding_jobs == 0


@pytest.mark.asyncio
async def test_overlapping_runs_submit_each_id_once(session_maker, store, db_session):
    await _seed_work_items(db_session, 3)
    worker = FakeWorker()
    orchestrator = SyncOrchestrator(session_maker, store, worker)

    first, second = await asyncio.gather(
        orchestrator.run_scheduled_sync(),
        orchestrator.run_scheduled_sync(),
    )
    await orchestrator.wait_for_jobs(timeout=5)

    summaries = [s for s in (first, second) if s is not None]
    assert len(summaries) == 1
    assert summaries[0].chunks_submitted == 1
    assert worker.chunks == [["1000", "1001", "1002"]]
    assert len(await _jobs(session_maker)) == 1
