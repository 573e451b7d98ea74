"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rcs_auth.config import settings
from rcs_auth.database.engine import dispose_db, init_db
from rcs_auth.services.maintenance import SessionSweeper
from rcs_auth.webhook.handler import get_services
from rcs_auth.webhook.handler import router as webhook_router

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, run the session sweep in the background, dispose on exit."""
    logger.info("Starting %s …", settings.app_name)
    await init_db()
    logger.info("Database initialised")

    sweeper = SessionSweeper(get_services().manager, settings.sweep_interval_minutes * 60)
    sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        logger.info("Shutting down %s …", settings.app_name)
        await sweeper.stop()
        await dispose_db()


app = FastAPI(
    title=settings.app_name,
    description="Phone-number authentication over RCS with SMS downgrade detection",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(webhook_router)


@app.get("/health")
async def health_check():
    """Simple liveness probe."""
    return {"status": "healthy", "app": settings.app_name}
