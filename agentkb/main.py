# =============================================================================
# FastAPI Application
# =============================================================================
#
# Run the API:
#   uvicorn agentkb.main:app --reload
#
# Run a worker:
#   celery -A agentkb.workers.celery_app worker --loglevel=info
# =============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agentkb.api import agents, ask, train
from agentkb.config import settings
from agentkb.db.engine import create_schema
from agentkb.models.responses import CredentialPoolStatus, HealthResponse
from agentkb.services.provider import NoCredentialsError, get_provider_client

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.create_schema_on_startup:
        logger.info("Creating database schema")
        await asyncio.to_thread(create_schema)
    yield


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Per-agent knowledge base: train agents on text, documents, media, "
        "websites and YouTube videos, then ask questions answered with "
        "hybrid retrieval-augmented generation."
    ),
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(train.router)
app.include_router(ask.router)
app.include_router(agents.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness plus credential pool size and cursor."""
    try:
        credentials = CredentialPoolStatus(**get_provider_client().pool.status())
    except NoCredentialsError:
        credentials = None
    return HealthResponse(
        version=settings.app_version,
        service=settings.app_name,
        knowledge_store=settings.knowledge_store_type,
        credentials=credentials,
    )
