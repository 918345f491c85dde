from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from app.api.webhooks.rook import router as rook_webhooks_router
from app.config.settings import settings
from app.core.logger import setup_logger
from app.db.models import Base
from app.db.session import get_engine
from app.webhooks.configuration import log_webhook_configuration


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Set up logging, make sure tables exist and report webhook configuration."""
    setup_logger(level=settings.log_level)

    logger.info("Ensuring database tables exist")
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables verified")

    log_webhook_configuration(settings)
    yield


app = FastAPI(title="Wearable Ingest", lifespan=lifespan)
app.include_router(rook_webhooks_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
