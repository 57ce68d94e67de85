import time
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("middleware")

# Probed every few seconds by orchestrators and scrapers
QUIET_PATHS = {"/api/v1/health", "/api/v1/ready", "/api/v1/metrics"}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request log line plus the per-route request counter."""

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        response: Response = await call_next(request)
        elapsed = time.monotonic() - started

        # Path only: webhook and OAuth query strings carry secrets
        line = f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s)"
        if request.url.path in QUIET_PATHS:
            logger.debug(line)
        elif response.status_code >= 500:
            logger.error(line)
        else:
            logger.info(line)

        route = request.scope.get("route")
        MetricsCollector.increment_api_requests(
            method=request.method,
            endpoint=getattr(route, "path", "unmatched"),
            status_code=response.status_code,
        )
        return response
