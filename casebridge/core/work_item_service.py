"""Entry points used by the interactive case flow (create and link)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from casebridge.core.change_detector import normalize_value
from casebridge.core.devops_client import AzureDevOpsClient, build_patch_document
from casebridge.core.local_store import LocalStore
from casebridge.core.mapping_registry import SYSTEM_INFO_LABEL, TYPE_OF_LABEL, MappingRegistry


logger = logging.getLogger(__name__)


@dataclass
class WorkItemForm:
    """An already-validated create request: label-keyed values for one case."""
    case_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


class WorkItemService:
    def __init__(
        self,
        client: AzureDevOpsClient,
        store: LocalStore,
        registry: MappingRegistry,
        *,
        default_work_item_type: str = "Bug",
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.default_work_item_type = default_work_item_type

    async def _patch_ops(self, fields: Dict[str, Any], *, op: str, skip_labels=()) -> List[Dict[str, Any]]:
        mappings = await self.registry.active_field_mappings()
        values_by_path = {}
        for label, mapping in mappings.items():
            if label in skip_labels or not mapping.is_syncable or label not in fields:
                continue
            value = fields[label]
            if normalize_value(value) is None:
                continue
            values_by_path[f"/fields/{mapping.remote_key}"] = value
        return build_patch_document(values_by_path, op=op)

    async def create_remote_and_local_record(self, form: WorkItemForm) -> int:
        """Create the remote work item, mirror it locally and link it to the case."""
        await self.registry.require(SYSTEM_INFO_LABEL)
        await self.registry.require(TYPE_OF_LABEL)

        work_item_type = normalize_value(form.fields.get(TYPE_OF_LABEL)) or self.default_work_item_type
        ops = await self._patch_ops(form.fields, op="add", skip_labels=(TYPE_OF_LABEL,))
        remote_id = await self.client.create(work_item_type, ops)

        fields = {label: normalize_value(value) for label, value in form.fields.items()}
        fields[TYPE_OF_LABEL] = work_item_type
        local_id = await self.store.upsert_from_mapping(fields, remote_id)
        await self.store.link_case_to_work_item(form.case_id, local_id)
        logger.info(f"Case {form.case_id}: created remote work item #{remote_id} (local {local_id})")
        return local_id

    async def link_existing_remote_record(self, remote_id: str, case_id: str) -> int:
        """Fetch an existing remote work item, mirror it locally and link it to the case."""
        snapshot = await self.client.fetch_by_id(remote_id)
        mappings = await self.registry.active_field_mappings()
        fields = {
            label: normalize_value(snapshot.fields.get(mapping.remote_key))
            for label, mapping in mappings.items()
            if mapping.is_syncable
        }
        local_id = await self.store.upsert_from_mapping(fields, snapshot.remote_id)
        await self.store.link_case_to_work_item(case_id, local_id)
        logger.info(f"Case {case_id}: linked remote work item #{snapshot.remote_id} (local {local_id})")
        return local_id

    async def push_local_changes(self, remote_id: str, fields: Dict[str, Any]) -> int:
        """Send label-keyed edits made on the case side to the remote work item."""
        ops = await self._patch_ops(fields, op="replace", skip_labels=(TYPE_OF_LABEL,))
        if not ops:
            return 0
        await self.client.update(remote_id, ops)
        return len(ops)
