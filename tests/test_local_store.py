"""Tests for the local store adapter."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from casebridge.core.errors import PersistenceError, StorePermissionError
from casebridge.core.local_store import LocalStore, StoreAccess, WorkItemRecord
from casebridge.models import CaseWorkItemLink, WorkItem


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_by_remote_id(store, db_session):
    local_id = await store.upsert_from_mapping({"Title": "Crash on save", "State": "New"}, "101")
    again = await store.upsert_from_mapping({"State": "Active"}, "101")

    assert again == local_id
    record = await store.find_by_remote_id("101")
    assert record.fields["title"] == "Crash on save"
    assert record.fields["state"] == "Active"

    rows = (await db_session.execute(select(WorkItem))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_upsert_ignores_unmapped_labels(store):
    await store.upsert_from_mapping({"Title": "x", "NotMapped": "y"}, "102")
    record = await store.find_by_remote_id("102")
    assert record.fields["title"] == "x"
    assert "NotMapped" not in record.fields


@pytest.mark.asyncio
async def test_upsert_respects_access(session_maker, registry):
    no_create = LocalStore(session_maker, registry, access=StoreAccess(can_create=False))
    with pytest.raises(StorePermissionError):
        await no_create.upsert_from_mapping({"Title": "x"}, "1")

    writer = LocalStore(session_maker, registry)
    await writer.upsert_from_mapping({"Title": "x"}, "1")

    no_update = LocalStore(session_maker, registry, access=StoreAccess(can_update=False))
    with pytest.raises(StorePermissionError) as exc_info:
        await no_update.upsert_from_mapping({"Title": "y"}, "1")
    assert isinstance(exc_info.value, PermissionError)


@pytest.mark.asyncio
async def test_find_by_remote_ids_returns_only_known(store):
    await store.upsert_from_mapping({"Title": "a"}, "1")
    await store.upsert_from_mapping({"Title": "b"}, "2")

    found = await store.find_by_remote_ids(["1", "2", "3"])
    assert set(found) == {"1", "2"}
    assert await store.find_by_remote_ids([]) == {}


@pytest.mark.asyncio
async def test_list_linked_remote_ids_skips_local_only_items(store, db_session):
    await store.upsert_from_mapping({"Title": "a"}, "11")
    db_session.add(WorkItem(remote_id=None, title="draft"))
    db_session.add(WorkItem(remote_id="", title="draft"))
    await db_session.commit()
    await store.upsert_from_mapping({"Title": "b"}, "12")

    assert await store.list_linked_remote_ids() == ["11", "12"]


@pytest.mark.asyncio
async def test_link_case_is_idempotent(store, db_session):
    local_id = await store.upsert_from_mapping({"Title": "a"}, "1")

    assert await store.link_case_to_work_item("CASE-1", local_id) is True
    assert await store.link_case_to_work_item("CASE-1", local_id) is False
    assert await store.link_case_to_work_item("CASE-2", local_id) is True

    links = (await db_session.execute(select(CaseWorkItemLink))).scalars().all()
    assert sorted(l.case_id for l in links) == ["CASE-1", "CASE-2"]


@pytest.mark.asyncio
async def test_batch_update_writes_only_given_fields_and_stamps(store):
    id1 = await store.upsert_from_mapping({"Title": "one", "State": "New"}, "1")
    id2 = await store.upsert_from_mapping({"Title": "two", "State": "New"}, "2")
    old = datetime.utcnow() - timedelta(days=1)

    written = await store.batch_update([
        WorkItemRecord(id=id1, remote_id="1", last_modified=old, fields={"state": "Active"}),
        WorkItemRecord(id=id2, remote_id="2", last_modified=old, fields={"title": "two (edited)"}),
    ])

    assert written == 2
    r1 = await store.find_by_remote_id("1")
    r2 = await store.find_by_remote_id("2")
    assert (r1.fields["title"], r1.fields["state"]) == ("one", "Active")
    assert (r2.fields["title"], r2.fields["state"]) == ("two (edited)", "New")
    assert r1.last_modified > old


@pytest.mark.asyncio
async def test_batch_update_is_all_or_nothing(store):
    id1 = await store.upsert_from_mapping({"State": "New"}, "1")

    with pytest.raises(PersistenceError):
        await store.batch_update([
            WorkItemRecord(id=id1, remote_id="1", last_modified=None, fields={"state": "Active"}),
            WorkItemRecord(id=9999, remote_id="x", last_modified=None, fields={"state": "Active"}),
        ])

    assert (await store.find_by_remote_id("1")).fields["state"] == "New"


@pytest.mark.asyncio
async def test_batch_update_limits(session_maker, registry):
    store = LocalStore(session_maker, registry, max_batch_size=2)
    assert await store.batch_update([]) == 0

    records = [WorkItemRecord(id=i, remote_id=str(i), last_modified=None) for i in range(3)]
    with pytest.raises(ValueError):
        await store.batch_update(records)

    read_only = LocalStore(session_maker, registry, access=StoreAccess(can_update=False))
    with pytest.raises(StorePermissionError):
        await read_only.batch_update(records[:1])
