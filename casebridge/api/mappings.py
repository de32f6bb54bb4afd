"""Read-only views of the cached field-mapping configuration."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from casebridge.core.auth import verify_credentials
from casebridge.core.components import SyncComponents, get_components


router = APIRouter(prefix="/api/mappings", tags=["mappings"])


class FieldMappingResponse(BaseModel):
    label: str
    local_field: Optional[str] = None
    remote_path: Optional[str] = None
    remote_key: str
    syncable: bool


class PicklistMappingResponse(BaseModel):
    label: str
    remote_list_id: str


@router.get("/fields", response_model=List[FieldMappingResponse])
async def list_field_mappings(
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    mappings = await components.registry.active_field_mappings()
    return [
        FieldMappingResponse(
            label=m.label,
            local_field=m.local_field,
            remote_path=m.remote_path,
            remote_key=m.remote_key,
            syncable=m.is_syncable,
        )
        for m in sorted(mappings.values(), key=lambda m: m.label)
    ]


@router.get("/picklists/{label}", response_model=PicklistMappingResponse)
async def get_picklist_mapping(
    label: str,
    components: SyncComponents = Depends(get_components),
    _: str = Depends(verify_credentials),
):
    picklist = await components.registry.picklist_by_label(label)
    if picklist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No picklist mapping for '{label}'")
    return PicklistMappingResponse(label=picklist.label, remote_list_id=picklist.remote_list_id)
