"""Worker that reconciles one chunk of remote ids against the local store."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from casebridge.config import REMOTE_BATCH_LIMIT
from casebridge.core.change_detector import diff, should_sync
from casebridge.core.devops_client import CHANGED_DATE_FIELD, ID_FIELD, AzureDevOpsClient
from casebridge.core.errors import ConfigurationError, PersistenceError, RemoteApiError, StorePermissionError
from casebridge.core.local_store import LocalStore, WorkItemRecord
from casebridge.core.logging_utils import sanitize_for_logging
from casebridge.core.mapping_registry import FieldMapping, MappingRegistry


logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    status: str = "completed"  # completed, failed
    ids_received: int = 0
    ids_valid: int = 0
    dropped_ids: List[str] = field(default_factory=list)
    records_fetched: int = 0
    records_matched: int = 0
    records_updated: int = 0
    orphaned_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def as_error_details(self) -> Optional[Dict[str, Any]]:
        details: Dict[str, Any] = {}
        if self.error:
            details["error"] = self.error
        if self.dropped_ids:
            details["dropped_ids"] = self.dropped_ids
        if self.orphaned_ids:
            details["orphaned_ids"] = self.orphaned_ids
        return details or None


def required_field_paths(mappings: Mapping[str, FieldMapping]) -> List[str]:
    """Identity and change-date fields, then every mapped remote field, without repeats."""
    paths = [ID_FIELD, CHANGED_DATE_FIELD]
    for mapping in mappings.values():
        if not mapping.is_syncable:
            continue
        key = mapping.remote_key
        if key not in paths:
            paths.append(key)
    return paths


def _to_remote_id(value: Any) -> Optional[int]:
    try:
        remote_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return remote_id if remote_id > 0 else None


class CalloutWorker:
    """
    Processes one chunk: one batched remote read, change detection, one batched write.

    Never raises; failures are logged and reported through the returned ChunkResult.
    """

    def __init__(self, client: AzureDevOpsClient, store: LocalStore, registry: MappingRegistry):
        self.client = client
        self.store = store
        self.registry = registry

    async def process_chunk(self, remote_ids: List[str]) -> ChunkResult:
        result = ChunkResult(ids_received=len(remote_ids))

        valid_ids: List[int] = []
        for raw in remote_ids:
            remote_id = _to_remote_id(raw)
            if remote_id is None:
                logger.warning(f"Dropping malformed remote id: {sanitize_for_logging(raw, 64)}")
                result.dropped_ids.append(str(raw))
                continue
            if remote_id not in valid_ids:
                valid_ids.append(remote_id)
        result.ids_valid = len(valid_ids)

        if not valid_ids:
            logger.info(f"Chunk of {result.ids_received} ids has no valid ids; nothing to fetch")
            return result
        if len(valid_ids) > REMOTE_BATCH_LIMIT:
            return self._fail(
                result,
                f"Chunk has {len(valid_ids)} valid ids; the remote batch limit is {REMOTE_BATCH_LIMIT}"
            )

        try:
            mappings = await self.registry.active_field_mappings()
        except ConfigurationError as e:
            return self._fail(result, f"Configuration error: {e}")

        try:
            snapshots = await self.client.fetch_batch(valid_ids, required_field_paths(mappings))
        except RemoteApiError as e:
            return self._fail(result, f"Remote batch fetch failed (HTTP {e.status_code}): {sanitize_for_logging(e.body, 300)}")
        except ValueError as e:
            return self._fail(result, f"Remote batch fetch rejected: {e}")
        result.records_fetched = len(snapshots)

        try:
            local_records = await self.store.find_by_remote_ids(s.remote_id for s in snapshots)
        except Exception as e:
            logger.error(f"Failed to load local records for chunk: {e}", exc_info=True)
            return self._fail(result, f"Local lookup failed: {type(e).__name__}")

        pending: List[WorkItemRecord] = []
        for snapshot in snapshots:
            local = local_records.get(snapshot.remote_id)
            if local is None:
                logger.info(f"No local work item for remote id {snapshot.remote_id}; skipping")
                result.orphaned_ids.append(snapshot.remote_id)
                continue
            result.records_matched += 1

            if not should_sync(snapshot, local):
                continue
            changes = diff(snapshot, local, mappings)
            if changes:
                pending.append(WorkItemRecord(
                    id=local.id,
                    remote_id=local.remote_id,
                    last_modified=local.last_modified,
                    fields=changes,
                ))

        try:
            result.records_updated = await self.store.batch_update(pending)
        except (PersistenceError, StorePermissionError, ValueError) as e:
            logger.error(f"Batch update of {len(pending)} work items failed: {e}", exc_info=True)
            return self._fail(result, f"Batch update failed: {e}")

        logger.info(
            f"Chunk processed: {result.ids_received} received, {result.ids_valid} valid, "
            f"{result.records_fetched} fetched, {result.records_matched} matched, "
            f"{result.records_updated} updated, {len(result.orphaned_ids)} orphaned"
        )
        return result

    @staticmethod
    def _fail(result: ChunkResult, message: str) -> ChunkResult:
        result.status = "failed"
        result.error = message
        result.records_updated = 0
        logger.error(
            f"Chunk failed after {result.ids_received} received, {result.ids_valid} valid, "
            f"{result.records_matched} matched: {message}"
        )
        return result
