"""Local store adapter for work items and case links."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casebridge.core.errors import PersistenceError, StorePermissionError
from casebridge.core.mapping_registry import MappingRegistry
from casebridge.models import CaseWorkItemLink, WorkItem


logger = logging.getLogger(__name__)

# SQLSTATE for insufficient_privilege
_PG_INSUFFICIENT_PRIVILEGE = "42501"


@dataclass(frozen=True)
class StoreAccess:
    """What the current caller may do to the local store."""
    can_create: bool = True
    can_update: bool = True


@dataclass
class WorkItemRecord:
    """Detached view of a local work item, keyed by mappable slot name."""
    id: Optional[int]
    remote_id: Optional[str]
    last_modified: Optional[datetime]
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: WorkItem) -> "WorkItemRecord":
        return cls(
            id=row.id,
            remote_id=row.remote_id,
            last_modified=row.last_modified,
            fields=row.mapped_fields(),
        )


def _is_permission_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _PG_INSUFFICIENT_PRIVILEGE:
        return True
    message = str(orig or exc).lower()
    return "readonly database" in message or "permission denied" in message


def _translate(exc: SQLAlchemyError, action: str) -> Exception:
    if isinstance(exc, DBAPIError) and _is_permission_failure(exc):
        return StorePermissionError(f"Not permitted to {action}")
    return PersistenceError(f"Failed to {action}: {type(exc).__name__}", exc)


class LocalStore:
    """Reads and writes WorkItem and CaseWorkItemLink rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: MappingRegistry,
        *,
        access: StoreAccess = StoreAccess(),
        max_batch_size: int = 200,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._access = access
        self.max_batch_size = max_batch_size

    async def _apply_mapped_fields(self, item: WorkItem, fields: Dict[str, Any]) -> int:
        assigned = 0
        mappings = await self._registry.active_field_mappings()
        for label, mapping in mappings.items():
            if not mapping.local_field or label not in fields:
                continue
            if item.set_field(mapping.local_field, fields[label]):
                assigned += 1
        return assigned

    async def upsert_from_mapping(self, fields: Dict[str, Any], remote_id: str) -> int:
        """
        Create or update the work item for ``remote_id`` from label-keyed values.

        Only slots reached through an active mapping are written; everything else
        on the record is left as it was.
        """
        remote_id = str(remote_id)
        async with self._session_factory() as db:
            try:
                item = (await db.execute(
                    select(WorkItem).where(WorkItem.remote_id == remote_id)
                )).scalar_one_or_none()

                if item is None:
                    if not self._access.can_create:
                        raise StorePermissionError("Not permitted to create work items")
                    item = WorkItem(remote_id=remote_id)
                    db.add(item)
                elif not self._access.can_update:
                    raise StorePermissionError("Not permitted to update work items")

                await self._apply_mapped_fields(item, fields)
                item.last_modified = datetime.utcnow()
                await db.commit()
                await db.refresh(item)
            except SQLAlchemyError as e:
                await db.rollback()
                raise _translate(e, f"save work item for remote id {remote_id}") from e

        logger.info(f"Saved work item {item.id} for remote id {remote_id}")
        return item.id

    async def find_by_remote_id(self, remote_id: str) -> Optional[WorkItemRecord]:
        async with self._session_factory() as db:
            row = (await db.execute(
                select(WorkItem).where(WorkItem.remote_id == str(remote_id))
            )).scalar_one_or_none()
            return WorkItemRecord.from_row(row) if row else None

    async def find_by_remote_ids(self, remote_ids: Iterable[str]) -> Dict[str, WorkItemRecord]:
        ids = [str(i) for i in remote_ids]
        if not ids:
            return {}
        async with self._session_factory() as db:
            rows = (await db.execute(
                select(WorkItem).where(WorkItem.remote_id.in_(ids))
            )).scalars().all()
            return {row.remote_id: WorkItemRecord.from_row(row) for row in rows}

    async def list_linked_remote_ids(self) -> List[str]:
        """Remote ids of every work item that exists remotely, in id order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(WorkItem.remote_id)
                .where(WorkItem.remote_id.is_not(None), WorkItem.remote_id != "")
                .order_by(WorkItem.id)
            )
            return [remote_id for remote_id in result.scalars().all()]

    async def link_case_to_work_item(self, case_id: str, local_id: int) -> bool:
        """Link a case to a work item. Returns False when the link already existed."""
        case_id = str(case_id)
        async with self._session_factory() as db:
            existing = (await db.execute(
                select(CaseWorkItemLink).where(
                    CaseWorkItemLink.case_id == case_id,
                    CaseWorkItemLink.work_item_id == local_id,
                )
            )).scalar_one_or_none()
            if existing:
                logger.debug(f"Case {case_id} is already linked to work item {local_id}")
                return False

            if not self._access.can_create:
                raise StorePermissionError("Not permitted to create case links")

            db.add(CaseWorkItemLink(case_id=case_id, work_item_id=local_id))
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race with a concurrent insert of the same pair
                await db.rollback()
                return False
            except SQLAlchemyError as e:
                await db.rollback()
                raise _translate(e, f"link case {case_id} to work item {local_id}") from e

        logger.info(f"Linked case {case_id} to work item {local_id}")
        return True

    async def batch_update(self, records: List[WorkItemRecord]) -> int:
        """
        Write the mapped fields of every record in a single transaction.

        Either all records are committed or none are. Returns the number of rows written.
        """
        if not records:
            return 0
        if len(records) > self.max_batch_size:
            raise ValueError(f"batch_update accepts at most {self.max_batch_size} records, got {len(records)}")
        if not self._access.can_update:
            raise StorePermissionError("Not permitted to update work items")

        ids = [r.id for r in records]
        now = datetime.utcnow()
        async with self._session_factory() as db:
            try:
                rows = {
                    row.id: row
                    for row in (await db.execute(
                        select(WorkItem).where(WorkItem.id.in_(ids))
                    )).scalars().all()
                }
                missing = [i for i in ids if i not in rows]
                if missing:
                    raise PersistenceError(f"Work items not found: {missing}")

                for record in records:
                    row = rows[record.id]
                    for name, value in record.fields.items():
                        if row.get_field(name) != value:
                            row.set_field(name, value)
                    row.last_modified = now
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise _translate(e, f"update {len(records)} work items") from e
            except PersistenceError:
                await db.rollback()
                raise

        return len(records)
