"""
Read-through cache of the declarative field-mapping configuration.

Mappings are loaded once per process on first use and never refreshed
afterwards; edits to the configuration tables take effect on restart.
The registry is built once and handed to each component that needs it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casebridge.core.errors import ConfigurationError
from casebridge.models import MAPPABLE_FIELDS, FieldMapping as FieldMappingRow, PicklistMapping as PicklistMappingRow


logger = logging.getLogger(__name__)

SYSTEM_INFO_LABEL = "SystemInfo"
TYPE_OF_LABEL = "TypeOf"


def strip_remote_path(remote_path: str) -> str:
    """Reduce a JSON-Patch style path ("/fields/System.Title") to its bare field key."""
    return (remote_path or "").strip().rsplit("/", 1)[-1]


@dataclass(frozen=True)
class FieldMapping:
    label: str
    local_field: Optional[str]
    remote_path: Optional[str]
    active: bool = True

    @property
    def remote_key(self) -> str:
        return strip_remote_path(self.remote_path or "")

    @property
    def is_syncable(self) -> bool:
        """Active and both sides set."""
        return bool(self.active and self.local_field and self.remote_path and self.remote_key)


@dataclass(frozen=True)
class PicklistMapping:
    label: str
    remote_list_id: str


class MappingRegistry:
    """Process-lifetime cache of field and picklist mappings."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]],
        *,
        read_allowed: bool = True,
    ):
        self._session_factory = session_factory
        self._read_allowed = read_allowed
        self._fields: Optional[Dict[str, FieldMapping]] = None
        self._picklists: Optional[Dict[str, PicklistMapping]] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_mappings(
        cls,
        fields: Iterable[FieldMapping],
        picklists: Iterable[PicklistMapping] = (),
    ) -> "MappingRegistry":
        """Build an already-loaded registry (no database access)."""
        registry = cls(None)
        registry._fields = {m.label: m for m in fields if m.active}
        registry._picklists = {p.label: p for p in picklists}
        return registry

    @property
    def loaded(self) -> bool:
        return self._fields is not None

    async def _ensure_loaded(self) -> None:
        if self._fields is not None:
            return
        async with self._lock:
            if self._fields is not None:
                return
            await self._load()

    async def _load(self) -> None:
        if not self._read_allowed:
            raise ConfigurationError("Insufficient access to read field mapping configuration")
        if self._session_factory is None:
            raise ConfigurationError("Mapping registry has no configuration store")

        try:
            async with self._session_factory() as db:
                field_rows = (await db.execute(
                    select(FieldMappingRow)
                    .where(FieldMappingRow.active == True)
                    .order_by(FieldMappingRow.label, FieldMappingRow.id)
                )).scalars().all()
                picklist_rows = (await db.execute(
                    select(PicklistMappingRow).order_by(PicklistMappingRow.label)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Failed to read field mapping configuration: {type(e).__name__}") from e

        fields: Dict[str, FieldMapping] = {}
        for row in field_rows:
            mapping = FieldMapping(
                label=row.label,
                local_field=(row.local_field or "").strip() or None,
                remote_path=(row.remote_path or "").strip() or None,
                active=bool(row.active),
            )
            if not mapping.is_syncable:
                logger.warning(
                    f"Active field mapping '{mapping.label}' is missing its local field or remote path; "
                    f"it will be skipped"
                )
            elif mapping.local_field not in MAPPABLE_FIELDS:
                logger.warning(
                    f"Field mapping '{mapping.label}' targets unknown local field '{mapping.local_field}'"
                )
            fields[mapping.label] = mapping

        self._fields = fields
        self._picklists = {
            row.label: PicklistMapping(label=row.label, remote_list_id=row.remote_list_id)
            for row in picklist_rows
        }
        logger.info(f"Loaded {len(self._fields)} active field mappings and {len(self._picklists)} picklist mappings")

    async def active_field_mappings(self) -> Dict[str, FieldMapping]:
        await self._ensure_loaded()
        return dict(self._fields)

    async def mapping_by_label(self, label: str) -> Optional[FieldMapping]:
        await self._ensure_loaded()
        return self._fields.get(label)

    async def picklist_by_label(self, label: str) -> Optional[PicklistMapping]:
        await self._ensure_loaded()
        return self._picklists.get(label)

    async def require(self, label: str) -> FieldMapping:
        """Like mapping_by_label, but a missing label is a configuration error."""
        mapping = await self.mapping_by_label(label)
        if mapping is None:
            raise ConfigurationError(f"Required field mapping '{label}' is not configured")
        return mapping
