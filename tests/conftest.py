import json
import re

import httpx
import pytest

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from casebridge.core.auth import verify_credentials
from casebridge.core.devops_client import AzureDevOpsClient
from casebridge.core.local_store import LocalStore, StoreAccess
from casebridge.core.mapping_registry import MappingRegistry
from casebridge.database import get_db
from casebridge.models import Base, FieldMapping, PicklistMapping


ORG_URL = "https://dev.azure.com/contoso"
PROJECT = "Support"

DEFAULT_MAPPINGS = [
    ("Title", "title", "/fields/System.Title"),
    ("State", "state", "/fields/System.State"),
    ("Priority", "priority", "/fields/Microsoft.VSTS.Common.Priority"),
    ("AssignedTo", "assigned_to", "/fields/System.AssignedTo"),
    ("SystemInfo", "system_info", "/fields/Microsoft.VSTS.TCM.SystemInfo"),
    ("TypeOf", "work_item_type", "/fields/System.WorkItemType"),
]


class FakeDevOps:
    """
    In-memory stand-in for the work-item REST endpoints, served through httpx.MockTransport.

    ``items`` maps remote id -> fields dict. ``requests`` records (method, path, body).
    """

    def __init__(self):
        self.items = {}
        self.requests = []
        self.next_id = 1000
        self.fail_with = None  # (status_code, body) to fail every request

    def add(self, remote_id, **fields):
        self.items[int(remote_id)] = dict(fields)

    def _item_payload(self, remote_id, field_paths=None):
        fields = {"System.Id": remote_id, **self.items[remote_id]}
        if field_paths is not None:
            fields = {k: v for k, v in fields.items() if k in field_paths}
        return {"id": remote_id, "rev": 1, "fields": fields}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))

        if self.fail_with is not None:
            status_code, text = self.fail_with
            return httpx.Response(status_code, text=text)

        path = request.url.path
        if request.method == "POST" and path.endswith("/_apis/wit/workitemsbatch"):
            value = [
                self._item_payload(i, body.get("fields"))
                for i in body["ids"]
                if i in self.items
            ]
            return httpx.Response(200, json={"count": len(value), "value": value})

        m = re.search(r"/_apis/wit/workitems/\$(?P<type>[^/]+)$", path)
        if request.method == "POST" and m:
            remote_id = self.next_id
            self.next_id += 1
            fields = {op["path"].rsplit("/", 1)[-1]: op["value"] for op in body}
            fields["System.WorkItemType"] = m.group("type")
            self.items[remote_id] = fields
            return httpx.Response(200, json=self._item_payload(remote_id))

        m = re.search(r"/_apis/wit/workitems/(?P<id>\d+)$", path)
        if m:
            remote_id = int(m.group("id"))
            if remote_id not in self.items:
                return httpx.Response(404, json={"message": f"TF401232: Work item {remote_id} does not exist"})
            if request.method == "PATCH":
                for op in body:
                    self.items[remote_id][op["path"].rsplit("/", 1)[-1]] = op["value"]
            return httpx.Response(200, json=self._item_payload(remote_id))

        return httpx.Response(404, text="not found")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
async def engine(tmp_path):
    db_file = tmp_path / "test.db"
    eng = create_async_engine(f"sqlite+aiosqlite:///{db_file}", future=True)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
async def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(engine, session_maker: async_sessionmaker[AsyncSession]):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        yield session


@pytest.fixture()
async def seeded_mappings(db_session):
    """Insert the default field mappings plus one picklist."""
    for label, local_field, remote_path in DEFAULT_MAPPINGS:
        db_session.add(FieldMapping(label=label, local_field=local_field, remote_path=remote_path, active=True))
    db_session.add(PicklistMapping(label="Priority", remote_list_id="priority-values"))
    await db_session.commit()
    return DEFAULT_MAPPINGS


@pytest.fixture()
async def registry(session_maker, seeded_mappings) -> MappingRegistry:
    return MappingRegistry(session_maker)


@pytest.fixture()
async def store(session_maker, registry) -> LocalStore:
    return LocalStore(session_maker, registry, access=StoreAccess())


@pytest.fixture()
def fake_devops() -> FakeDevOps:
    return FakeDevOps()


@pytest.fixture()
async def devops_client(fake_devops):
    client = AzureDevOpsClient(ORG_URL, PROJECT, "test-pat", transport=fake_devops.transport)
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture()
async def app(engine, session_maker: async_sessionmaker[AsyncSession], seeded_mappings, fake_devops):
    """
    FastAPI app with:
    - DB dependency overridden to use a per-test SQLite DB
    - Auth dependency overridden to bypass HTTP basic
    - Components built against the per-test DB and the fake remote
    """
    from casebridge.config import settings
    from casebridge.core.components import build_components
    from casebridge.main import app as fastapi_app

    components = build_components(settings, session_maker, transport=fake_devops.transport)
    fastapi_app.state.components = components

    async def override_get_db():
        async with session_maker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[verify_credentials] = lambda: "test-user"

    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.clear()
        await components.orchestrator.wait_for_jobs(timeout=5)
        await components.aclose()
        fastapi_app.state.components = None


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
