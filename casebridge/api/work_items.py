"""Interactive case flow: create or link work items for a case."""

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from casebridge.core.auth import verify_credentials
from casebridge.core.components import SyncComponents, get_components
from casebridge.core.work_item_service import WorkItemForm


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/work-items", tags=["work-items"])

# Track interactive tasks globally for graceful shutdown
work_item_tasks: Set[asyncio.Task] = set()
_work_item_tasks_lock = threading.Lock()


async def wait_for_work_item_tasks(timeout: int = 60):
    """
    Wait for all interactive create/link tasks to complete.

    Args:
        timeout: Maximum seconds to wait (default: 60).
    """
    with _work_item_tasks_lock:
        if not work_item_tasks:
            return
        tasks_snapshot = list(work_item_tasks)

    logger.info(f"Waiting for {len(tasks_snapshot)} work item task(s) to complete (timeout: {timeout}s)...")

    try:
        results = await asyncio.wait_for(
            asyncio.gather(*tasks_snapshot, return_exceptions=True),
            timeout=timeout
        )
        exceptions = [r for r in results if isinstance(r, Exception)]
        if exceptions:
            logger.warning(f"All work item tasks finished, but {len(exceptions)} task(s) raised exceptions")
        else:
            logger.info("All work item tasks completed gracefully")
    except asyncio.TimeoutError:
        remaining = [t for t in tasks_snapshot if not t.done()]
        logger.warning(
            f"Timeout waiting for work item tasks after {timeout}s. "
            f"{len(remaining)} task(s) may have been interrupted."
        )
        for task in remaining:
            task.cancel()


def _track(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)

    def remove_task(t):
        with _work_item_tasks_lock:
            work_item_tasks.discard(t)

    with _work_item_tasks_lock:
        work_item_tasks.add(task)
    task.add_done_callback(remove_task)
    return task


class WorkItemCreate(BaseModel):
    case_id: str = Field(min_length=1, max_length=100)
    fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("case_id")
    @classmethod
    def _strip_case_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("case_id must not be blank")
        return v


class WorkItemLink(BaseModel):
    case_id: str = Field(min_length=1, max_length=100)
    remote_id: str = Field(min_length=1, max_length=50)

    @field_validator("remote_id")
    @classmethod
    def _numeric_remote_id(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("remote_id must be a positive integer")
        return v


class WorkItemUpdate(BaseModel):
    fields: Dict[str, Any]


class AcceptedResponse(BaseModel):
    message: str
    case_id: str
    remote_id: Optional[str] = None


class WorkItemResponse(BaseModel):
    id: int
    remote_id: Optional[str] = None
    last_modified: Optional[str] = None
    fields: Dict[str, Any]


@router.post("", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_work_item(
    payload: WorkItemCreate,
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    """Create a remote work item for the case. The call returns before the remote side answers."""
    form = WorkItemForm(case_id=payload.case_id, fields=dict(payload.fields))

    async def run_create():
        try:
            await components.work_items.create_remote_and_local_record(form)
        except Exception as e:
            logger.error(f"Creating work item for case {form.case_id} failed: {e}", exc_info=True)
            raise

    _track(run_create())
    return AcceptedResponse(message="Work item creation started", case_id=form.case_id)


@router.post("/link", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def link_work_item(
    payload: WorkItemLink,
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    """Link an existing remote work item to the case."""
    case_id = payload.case_id.strip()

    async def run_link():
        try:
            await components.work_items.link_existing_remote_record(payload.remote_id, case_id)
        except Exception as e:
            logger.error(
                f"Linking remote work item #{payload.remote_id} to case {case_id} failed: {e}",
                exc_info=True
            )
            raise

    _track(run_link())
    return AcceptedResponse(message="Work item link started", case_id=case_id, remote_id=payload.remote_id)


@router.get("/{remote_id}", response_model=WorkItemResponse)
async def get_work_item(
    remote_id: str,
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    record = await components.store.find_by_remote_id(remote_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Work item not found")
    return WorkItemResponse(
        id=record.id,
        remote_id=record.remote_id,
        last_modified=record.last_modified.isoformat() + "Z" if record.last_modified else None,
        fields=record.fields,
    )


@router.patch("/{remote_id}")
async def push_work_item_changes(
    remote_id: str,
    payload: WorkItemUpdate,
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    """Send label-keyed edits from the case side to the remote work item."""
    sent = await components.work_items.push_local_changes(remote_id, payload.fields)
    return {"remote_id": remote_id, "fields_sent": sent}
