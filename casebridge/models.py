import logging
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import String, Boolean, Integer, DateTime, Text, JSON, UniqueConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


logger = logging.getLogger(__name__)


# Local work-item columns that a field mapping may target.
MAPPABLE_FIELDS = (
    "title",
    "description",
    "state",
    "reason",
    "priority",
    "severity",
    "assigned_to",
    "area_path",
    "iteration_path",
    "work_item_type",
    "tags",
    "system_info",
    "repro_steps",
    "acceptance_criteria",
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class FieldMapping(Base):
    """Declarative link between a local work-item column and a remote field path."""
    __tablename__ = "field_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    local_field: Mapped[Optional[str]] = mapped_column(String(100))
    # e.g. "/fields/System.Title"
    remote_path: Mapped[Optional[str]] = mapped_column(String(255))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PicklistMapping(Base):
    """Remote enumeration-list identifier keyed by a human label."""
    __tablename__ = "picklist_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    remote_list_id: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkItem(Base):
    """Local copy of a remote work item."""
    __tablename__ = "work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Remote work-item id; NULL until the item exists remotely
    remote_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True, index=True)
    last_modified: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    title: Mapped[Optional[str]] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[Optional[str]] = mapped_column(String(100))
    reason: Mapped[Optional[str]] = mapped_column(String(255))
    priority: Mapped[Optional[str]] = mapped_column(String(50))
    severity: Mapped[Optional[str]] = mapped_column(String(100))
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255))
    area_path: Mapped[Optional[str]] = mapped_column(String(500))
    iteration_path: Mapped[Optional[str]] = mapped_column(String(500))
    work_item_type: Mapped[Optional[str]] = mapped_column(String(100))
    tags: Mapped[Optional[str]] = mapped_column(Text)
    system_info: Mapped[Optional[str]] = mapped_column(Text)
    repro_steps: Mapped[Optional[str]] = mapped_column(Text)
    acceptance_criteria: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def get_field(self, name: str) -> Any:
        """Read a mappable slot; unknown names read as absent."""
        if name not in MAPPABLE_FIELDS:
            return None
        return getattr(self, name)

    def set_field(self, name: str, value: Any) -> bool:
        """Write a mappable slot. Returns False (and writes nothing) for unknown names."""
        if name not in MAPPABLE_FIELDS:
            logger.warning(f"Ignoring write to unknown work item field '{name}'")
            return False
        setattr(self, name, value)
        return True

    def mapped_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in MAPPABLE_FIELDS}


class CaseWorkItemLink(Base):
    """Link between a support case and a local work item."""
    __tablename__ = "case_work_item_links"
    __table_args__ = (
        UniqueConstraint('case_id', 'work_item_id', name='uq_case_work_item'),
        Index('idx_link_work_item', 'work_item_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    work_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SyncJob(Base):
    """One submitted chunk of a scheduled sync run."""
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index('idx_sync_job_status', 'status'),
        Index('idx_sync_job_run', 'run_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(32), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    remote_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending, running, completed, failed

    ids_received: Mapped[int] = mapped_column(Integer, default=0)
    ids_valid: Mapped[int] = mapped_column(Integer, default=0)
    records_fetched: Mapped[int] = mapped_column(Integer, default=0)
    records_matched: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
