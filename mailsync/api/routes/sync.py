"""
Sync trigger and progress endpoints.

``POST /sync`` only enqueues; the run itself happens on a worker. A run
that cannot start because another one holds the account lease is a
no-op, so enqueueing twice is harmless.
"""

from typing import Callable, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from mailsync.api.dependencies import get_account_service, get_sync_enqueuer, verify_api_key
from mailsync.services.account_service import AccountService
from mailsync.utils.logging import get_logger

logger = get_logger("sync_api")
router = APIRouter()


class SyncRequest(BaseModel):
    """Request for a manual sync."""
    account_id: Optional[UUID] = Field(None, description="Account to sync (None = all active accounts)")
    tenant_id: Optional[str] = Field(None, description="Restrict an all-accounts sync to one tenant")


class SyncResponse(BaseModel):
    status: str
    account_ids: List[UUID]
    task_ids: List[str]


@router.post("/sync", response_model=SyncResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(verify_api_key)])
async def trigger_sync(
    request: SyncRequest,
    accounts: AccountService = Depends(get_account_service),
    enqueue: Callable[..., str] = Depends(get_sync_enqueuer),
):
    if request.account_id is not None:
        if await accounts.get_progress(request.account_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
        account_ids = [request.account_id]
    else:
        account_ids = await accounts.list_account_ids(request.tenant_id)

    task_ids = [enqueue(account_id, trigger="manual", priority="high") for account_id in account_ids]
    logger.info(f"Manual sync enqueued for {len(account_ids)} account(s)")
    return SyncResponse(status="queued", account_ids=account_ids, task_ids=task_ids)


@router.get("/sync-progress/{account_id}", dependencies=[Depends(verify_api_key)])
async def get_sync_progress(account_id: UUID, accounts: AccountService = Depends(get_account_service)):
    """Progress snapshot for UI polling. ``total`` is null while unknown."""
    progress = await accounts.get_progress(account_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return progress
