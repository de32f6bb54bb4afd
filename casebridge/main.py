from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI, Depends, Request, status
from fastapi.responses import JSONResponse

from casebridge.config import settings
from casebridge.database import init_db, AsyncSessionLocal
from casebridge.api import mappings, sync, work_items
from casebridge.core.auth import verify_credentials
from casebridge.core.components import build_components
from casebridge.core.errors import ConfigurationError, PersistenceError, RemoteApiError, StorePermissionError
from casebridge.core.logging_utils import sanitize_for_logging
from casebridge.core.sync_scheduler import scheduler


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events for the application."""
    # Startup
    await init_db()

    components = build_components(settings, AsyncSessionLocal)
    app.state.components = components

    try:
        await scheduler.start(components.orchestrator, AsyncSessionLocal)
    except Exception as e:
        logger.error(f"Failed to start sync scheduler: {e}", exc_info=True)

    yield

    # Shutdown
    await scheduler.stop()
    await work_items.wait_for_work_item_tasks()
    await components.aclose()


app = FastAPI(
    title=settings.app_title,
    description=settings.app_description,
    version="0.1.0",
    lifespan=lifespan
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)},
    )


@app.exception_handler(RemoteApiError)
async def remote_api_error_handler(request: Request, exc: RemoteApiError):
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "detail": str(exc),
            "remote_status": exc.status_code,
            "remote_body": sanitize_for_logging(exc.body, 500),
        },
    )


@app.exception_handler(StorePermissionError)
async def store_permission_error_handler(request: Request, exc: StorePermissionError):
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc)},
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"Persistence failure on {request.url.path}: {exc}", exc_info=exc.cause)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


# Include API routers
app.include_router(sync.router)
app.include_router(mappings.router)
app.include_router(work_items.router)


@app.get("/health")
async def health():
    """Liveness check; does not touch the database or the remote service."""
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


@app.get("/api/about")
async def about(_: str = Depends(verify_credentials)):
    """Return application version and connection target."""
    return {
        "name": settings.app_title,
        "version": app.version,
        "description": settings.app_description,
        "devops_project": settings.devops_project,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "casebridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
