"""Builds the reconciliation components once and wires them together."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casebridge.config import Settings
from casebridge.core.callout_worker import CalloutWorker
from casebridge.core.devops_client import AzureDevOpsClient
from casebridge.core.local_store import LocalStore, StoreAccess
from casebridge.core.logging_utils import redact_token, sanitize_url_for_logging
from casebridge.core.mapping_registry import MappingRegistry
from casebridge.core.sync_orchestrator import SyncOrchestrator
from casebridge.core.work_item_service import WorkItemService


logger = logging.getLogger(__name__)


@dataclass
class SyncComponents:
    registry: MappingRegistry
    client: AzureDevOpsClient
    store: LocalStore
    worker: CalloutWorker
    orchestrator: SyncOrchestrator
    work_items: WorkItemService

    async def aclose(self) -> None:
        await self.client.aclose()


def build_components(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    registry: Optional[MappingRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncComponents:
    """Create every component from settings. ``registry`` and ``transport`` are injectable for tests."""
    if registry is None:
        registry = MappingRegistry(session_factory, read_allowed=settings.config_read_allowed)

    if not settings.devops_pat:
        logger.warning("DEVOPS_PAT is not set; remote calls will be rejected")
    else:
        logger.info(
            f"Using Azure DevOps at {sanitize_url_for_logging(settings.devops_organization_url)} "
            f"project '{settings.devops_project}' (token {redact_token(settings.devops_pat)})"
        )

    client = AzureDevOpsClient(
        settings.devops_organization_url,
        settings.devops_project,
        settings.devops_pat,
        api_version=settings.devops_api_version,
        timeout=settings.devops_timeout_seconds,
        transport=transport,
    )
    store = LocalStore(
        session_factory,
        registry,
        access=StoreAccess(
            can_create=settings.store_allow_create,
            can_update=settings.store_allow_update,
        ),
        max_batch_size=settings.max_batch_update_size,
    )
    worker = CalloutWorker(client, store, registry)
    orchestrator = SyncOrchestrator(
        session_factory,
        store,
        worker,
        chunk_size=settings.sync_chunk_size,
        max_outstanding_jobs=settings.max_outstanding_jobs,
    )
    work_items = WorkItemService(
        client,
        store,
        registry,
        default_work_item_type=settings.default_work_item_type,
    )
    return SyncComponents(
        registry=registry,
        client=client,
        store=store,
        worker=worker,
        orchestrator=orchestrator,
        work_items=work_items,
    )


def get_components(request: Request) -> SyncComponents:
    """FastAPI dependency returning the components built at startup."""
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise RuntimeError("Sync components are not initialised")
    return components
