from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from mailsync.api.dependencies import get_account_service, verify_api_key
from mailsync.services.account_service import AccountService, OAuthStateError
from mailsync.services.providers import OAUTH_PROVIDERS
from mailsync.services.providers.base import AuthError, ProviderError
from mailsync.utils.logging import get_logger

logger = get_logger("oauth_api")
router = APIRouter()


class OAuthInitiateRequest(BaseModel):
    tenant_id: str = Field(..., description="Owner of the mailbox being connected")


class OAuthInitiateResponse(BaseModel):
    account_id: UUID
    authorization_url: str


@router.post("/oauth/{provider}/initiate", response_model=OAuthInitiateResponse,
             dependencies=[Depends(verify_api_key)])
async def initiate_oauth(provider: str, request: OAuthInitiateRequest,
                         accounts: AccountService = Depends(get_account_service)):
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown OAuth provider {provider}")
    account_id, url = await accounts.begin_oauth(request.tenant_id, provider)
    return OAuthInitiateResponse(account_id=account_id, authorization_url=url)


@router.get("/oauth/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    accounts: AccountService = Depends(get_account_service),
):
    """Redirect target registered with the provider; the state value authenticates the call."""
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown OAuth provider {provider}")
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Authorization denied: {error}")
    if not code or not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or state")

    try:
        account = await accounts.complete_oauth(provider, code, state)
    except OAuthStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthError as e:
        logger.warning(f"{provider} code exchange rejected: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authorization code rejected")
    except ProviderError as e:
        logger.error(f"{provider} code exchange failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Provider unavailable")

    return {
        "status": "connected",
        "account_id": str(account.id),
        "provider": account.provider,
        "email_address": account.email_address,
    }
