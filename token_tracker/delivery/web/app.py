import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from token_tracker.config import settings
from token_tracker.delivery.web.routes import router
from token_tracker.storage.database import engine, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # main.py runs init_db too; create_all is idempotent
    await init_db()
    if not settings.upstream_api_key:
        logger.warning("UPSTREAM_API_KEY not set; sync triggers will record a ConfigError")
    yield
    await engine.dispose()


def create_app() -> FastAPI:
    """Token Tracker JSON API. Also servable on its own with ``uvicorn --factory``."""
    app = FastAPI(title="Token Tracker", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app
