from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from mailsync.api.dependencies import verify_api_key
from mailsync.config import settings
from mailsync.db.database import check_database_health
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.metrics import registry

router = APIRouter()


@router.get("/health", summary="Health Check")
async def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "timestamp": utc_now().isoformat(),
    }


@router.get("/ready", summary="Readiness Check")
async def readiness_check():
    if await check_database_health():
        return {"status": "ready"}
    return JSONResponse(status_code=503, content={"status": "not ready", "error": "database unavailable"})


@router.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(verify_api_key)])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
