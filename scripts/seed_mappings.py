#!/usr/bin/env python3
"""
Seed the mapping tables with a default Azure DevOps field mapping set.

Existing labels are left untouched, so the script can be re-run safely.
"""
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from casebridge.database import AsyncSessionLocal, init_db
from casebridge.models import FieldMapping, PicklistMapping


# label, local slot, remote JSON-Patch path
DEFAULT_FIELD_MAPPINGS = [
    ("Title", "title", "/fields/System.Title"),
    ("Description", "description", "/fields/System.Description"),
    ("State", "state", "/fields/System.State"),
    ("Reason", "reason", "/fields/System.Reason"),
    ("Priority", "priority", "/fields/Microsoft.VSTS.Common.Priority"),
    ("Severity", "severity", "/fields/Microsoft.VSTS.Common.Severity"),
    ("AssignedTo", "assigned_to", "/fields/System.AssignedTo"),
    ("AreaPath", "area_path", "/fields/System.AreaPath"),
    ("IterationPath", "iteration_path", "/fields/System.IterationPath"),
    ("TypeOf", "work_item_type", "/fields/System.WorkItemType"),
    ("Tags", "tags", "/fields/System.Tags"),
    ("SystemInfo", "system_info", "/fields/Microsoft.VSTS.TCM.SystemInfo"),
    ("ReproSteps", "repro_steps", "/fields/Microsoft.VSTS.TCM.ReproSteps"),
    ("AcceptanceCriteria", "acceptance_criteria", "/fields/Microsoft.VSTS.Common.AcceptanceCriteria"),
]

DEFAULT_PICKLISTS = [
    ("Priority", "priority-values"),
    ("Severity", "severity-values"),
]


async def seed_mappings():
    """Insert any default mapping that is not configured yet."""
    print("Initializing database...")
    await init_db()

    async with AsyncSessionLocal() as session:
        existing = set((await session.execute(select(FieldMapping.label))).scalars().all())
        created = 0
        for label, local_field, remote_path in DEFAULT_FIELD_MAPPINGS:
            if label in existing:
                continue
            session.add(FieldMapping(label=label, local_field=local_field, remote_path=remote_path, active=True))
            created += 1

        existing_picklists = set((await session.execute(select(PicklistMapping.label))).scalars().all())
        created_picklists = 0
        for label, list_id in DEFAULT_PICKLISTS:
            if label in existing_picklists:
                continue
            session.add(PicklistMapping(label=label, remote_list_id=list_id))
            created_picklists += 1

        await session.commit()

    print("\nSummary:")
    print(f"  - {created} field mappings created ({len(existing)} already present)")
    print(f"  - {created_picklists} picklist mappings created")
    print("\nRestart the application to load the new mappings.")


if __name__ == "__main__":
    asyncio.run(seed_mappings())
