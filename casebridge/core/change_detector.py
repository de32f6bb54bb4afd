"""
Change detection between a remote snapshot and the last-known local record.

``should_sync`` is a cheap timestamp pre-filter; ``diff`` does the per-field
comparison only for records that passed it. When a field changed on both
sides the remote value wins.
"""

from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Mapping

from casebridge.core.devops_client import RemoteSnapshot
from casebridge.core.local_store import WorkItemRecord
from casebridge.core.mapping_registry import FieldMapping, strip_remote_path


def normalize_value(value: Any) -> Any:
    """
    Bring a field value into the text form stored locally.

    Blank strings become None, identity references collapse to their display
    name, lists are joined, other scalars are rendered with str().
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, dict):
        for key in ("displayName", "uniqueName", "name"):
            if value.get(key):
                return normalize_value(value[key])
        return None
    if isinstance(value, (list, tuple)):
        parts = [p for p in (normalize_value(v) for v in value) if p is not None]
        return "; ".join(parts) if parts else None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def should_sync(remote: RemoteSnapshot, local: WorkItemRecord) -> bool:
    """True when the remote record changed after the local one was last written."""
    if remote.changed_at is None:
        return False
    if local.last_modified is None:
        return True
    return remote.changed_at > local.last_modified


def diff(
    remote: RemoteSnapshot,
    local: WorkItemRecord,
    mappings: Mapping[str, FieldMapping],
) -> Dict[str, Any]:
    """Return {local_field: new_value} for every mapped field whose values differ."""
    changes: Dict[str, Any] = {}
    for mapping in mappings.values():
        if not (mapping.active and mapping.local_field and mapping.remote_path):
            continue
        key = strip_remote_path(mapping.remote_path)
        remote_value = normalize_value(remote.fields.get(key))
        local_value = normalize_value(local.fields.get(mapping.local_field))
        if remote_value != local_value:
            changes[mapping.local_field] = remote_value
    return changes


def apply_diff(local: WorkItemRecord, changes: Mapping[str, Any]) -> WorkItemRecord:
    """Return a copy of ``local`` with ``changes`` applied."""
    fields = dict(local.fields)
    fields.update(changes)
    return replace(local, fields=fields)
