import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from episodarr.api.routes_api import router as api_router
from episodarr.core.config import get_settings
from episodarr.core.database import create_db_engine
from episodarr.core.storage import SQLKeyValueStore
from episodarr.services.discovery import EpisodeDiscoveryService

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """Build the discovery service, run its worker, and tear it down."""
    settings = get_settings()
    store = SQLKeyValueStore(create_db_engine(settings))
    service = EpisodeDiscoveryService(settings, store)
    app.state.discovery = service
    await service.start()
    try:
        yield
    finally:
        await service.stop()
        logger.info("Discovery service stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Episodarr",
        description="Episode discovery and caching for a personal media catalog",
        version="0.1.0",
        lifespan=app_lifespan,
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
