from fastapi import APIRouter
from .health import router as health_router
from .sync import router as sync_router
from .webhooks import router as webhooks_router
from .oauth import router as oauth_router
from .accounts import router as accounts_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(sync_router, tags=["sync"])
api_router.include_router(webhooks_router, tags=["webhooks"])
api_router.include_router(oauth_router, tags=["oauth"])
api_router.include_router(accounts_router, tags=["accounts"])

__all__ = ["api_router"]
