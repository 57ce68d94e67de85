from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailsync.api.middleware import LoggingMiddleware
from mailsync.api.routes import api_router
from mailsync.config import settings
from mailsync.db.database import check_database_health, engine
from mailsync.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger("main")


def log_push_configuration():
    """Say which providers can push; the others are served by polling alone."""
    gmail_push = bool(settings.gmail_pubsub_topic)
    graph_push = bool(settings.graph_notification_url)
    logger.info(f"Push channels: gmail={'on' if gmail_push else 'off'}, outlook={'on' if graph_push else 'off'}")
    if gmail_push and not settings.gmail_push_verification_token:
        logger.warning("GMAIL_PUSH_VERIFICATION_TOKEN is empty; only per-watch secrets guard the Gmail endpoint")
    if settings.secret_key == "change-me":
        logger.warning("SECRET_KEY is the default; stored credentials are not safely encrypted")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start without a database; release pooled connections on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    try:
        if not await check_database_health():
            logger.error("Database health check failed")
            raise RuntimeError("Database connection failed")
        app.state.db_engine = engine
        log_push_configuration()
        yield
    finally:
        if hasattr(app.state, "db_engine"):
            await app.state.db_engine.dispose()
            logger.info("Database connections disposed")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Mailbox synchronization engine for Gmail, Outlook and IMAP",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(LoggingMiddleware)
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "app_name": settings.app_name,
        "version": settings.app_version,
        "api": "/api/v1",
        "webhooks": ["/api/v1/webhooks/gmail", "/api/v1/webhooks/outlook"],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
