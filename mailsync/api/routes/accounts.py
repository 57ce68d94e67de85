from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from mailsync.api.dependencies import get_account_service, verify_api_key
from mailsync.services.account_service import AccountService
from mailsync.services.providers.base import AuthError, ProviderError
from mailsync.utils.logging import get_logger

logger = get_logger("accounts_api")
router = APIRouter(dependencies=[Depends(verify_api_key)])


class ImapAccountRequest(BaseModel):
    """IMAP connection form."""
    tenant_id: str = Field(..., description="Owner of the mailbox")
    host: str = Field(..., description="IMAP server host")
    port: int = Field(993, description="IMAP server port")
    username: str = Field(..., description="Login name")
    password: str = Field(..., description="Login password or app password")
    use_ssl: bool = Field(True, description="Connect over implicit TLS")
    folder: str = Field("INBOX", description="Folder to synchronize")
    email_address: Optional[str] = Field(None, description="Mailbox address if it differs from the login")


@router.post("/accounts/imap", status_code=status.HTTP_201_CREATED)
async def connect_imap(request: ImapAccountRequest, accounts: AccountService = Depends(get_account_service)):
    try:
        account = await accounts.connect_imap(
            request.tenant_id, request.host, request.port, request.username, request.password,
            use_ssl=request.use_ssl, folder=request.folder, email_address=request.email_address,
        )
    except AuthError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="IMAP login failed")
    except ProviderError as e:
        logger.warning(f"IMAP connection to {request.host} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Cannot reach IMAP server: {e}")

    return {
        "status": "connected",
        "account_id": str(account.id),
        "provider": account.provider,
        "email_address": account.email_address,
    }


@router.get("/accounts")
async def list_accounts(tenant_id: Optional[str] = None, accounts: AccountService = Depends(get_account_service)):
    account_ids = await accounts.list_account_ids(tenant_id)
    return {"account_ids": [str(a) for a in account_ids]}


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_account(account_id: UUID, accounts: AccountService = Depends(get_account_service)):
    """Cancel the provider watch and delete the account with all of its messages."""
    if not await accounts.disconnect(account_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
