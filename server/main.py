import logging
from contextlib import asynccontextmanager

from core.logging_setup import setup_logging

setup_logging()

from core.config import settings

logger = logging.getLogger(__name__)

logger.info(f"Configuration loaded. Log level set to: {settings.LOGGING_LEVEL}")

from api.integrations import create_integrations_router
from core import db, http_client
from fastapi import FastAPI
from integrations.registry import build_registry
from services.credential_store import SqlCredentialStore
from services.integration_service import IntegrationOrchestrator
from services.token_refresh_job import TokenRefreshJob

credential_store = SqlCredentialStore()
registry = build_registry(settings, credential_store)
orchestrator = IntegrationOrchestrator(registry, credential_store)
refresh_job = TokenRefreshJob(
    orchestrator,
    interval_seconds=settings.TOKEN_REFRESH_INTERVAL_SECONDS,
    window_seconds=settings.TOKEN_REFRESH_WINDOW_SECONDS,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On application startup, initialize the database and start the refresh job.
    Everything is torn down in reverse order on shutdown.
    """
    await db.init_db()
    await http_client.init_http_client()
    refresh_job.start()
    yield
    await refresh_job.stop()
    await http_client.close_http_client()
    await db.close_db()


app = FastAPI(
    title="Social Publisher Integrations API",
    description="Connects social media accounts over OAuth and publishes on their behalf.",
    lifespan=lifespan,
)

integrations_router = create_integrations_router(orchestrator=orchestrator)
app.include_router(integrations_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "providers": registry.identifiers}
