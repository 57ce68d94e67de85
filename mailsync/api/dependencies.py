import hmac
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from mailsync.config import settings
from mailsync.services.account_service import AccountService
from mailsync.services.webhook_ingestion import WebhookIngestion

security = HTTPBearer(auto_error=False)


async def verify_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> bool:
    """Verify API key if configured."""
    if not settings.api_key:
        return True  # No API key required

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def get_account_service() -> AccountService:
    return AccountService()


def get_webhook_ingestion() -> WebhookIngestion:
    return WebhookIngestion()


def get_sync_enqueuer() -> Callable[..., str]:
    """The callable that puts a sync run on the task queue."""
    from mailsync.tasks.sync_tasks import enqueue_sync
    return enqueue_sync
