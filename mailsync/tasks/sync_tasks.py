"""
Mail Synchronization Celery Tasks

Background sync runs, the periodic poll scheduler and push-channel upkeep.

Each task runs its coroutine in an isolated event loop with its own engine,
so pooled connections never outlive the loop they were opened on.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from uuid import UUID

from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailsync.celery_app import celery_app
from mailsync.config import settings
from mailsync.db.database import create_optimized_async_engine
from mailsync.utils.logging import get_logger

logger = get_logger("sync_tasks")

# Countdown before each Celery-level retry of a retryable failed run
RETRY_COUNTDOWNS = (60, 300, 600)


class SyncTask(Task):
    """Base class for sync tasks with error handling."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Called when task fails."""
        logger.error(f"Sync task {task_id} failed: {exc}")

    def on_success(self, retval, task_id, args, kwargs):
        """Called when task succeeds."""
        logger.debug(f"Sync task {task_id} completed")


def run_async(work: Callable[[async_sessionmaker], Awaitable[Any]]) -> Any:
    """Run ``work(session_factory)`` in a fresh event loop and dispose of everything after."""

    async def _runner():
        engine = create_optimized_async_engine()
        factory = async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
        try:
            return await work(factory)
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_runner())
    finally:
        # Properly clean up pending tasks before closing
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
        asyncio.set_event_loop(None)


def retry_countdown(retries: int) -> int:
    return RETRY_COUNTDOWNS[min(retries, len(RETRY_COUNTDOWNS) - 1)]


# -- enqueue helpers ------------------------------------------------------------

def enqueue_sync(account_id: Union[UUID, str], trigger: str = "manual", priority: str = "normal") -> str:
    """Queue a sync run. ``priority="high"`` routes to the webhook/user queue."""
    queue = settings.sync_queue_high if priority == "high" else settings.sync_queue_normal
    result = sync_account.apply_async(args=[str(account_id), trigger], queue=queue)
    logger.debug(f"Enqueued {trigger} sync for {account_id} on {queue}: {result.id}")
    return result.id


def enqueue_watch_renewal(account_id: Union[UUID, str]) -> str:
    result = renew_watch.apply_async(args=[str(account_id)], queue=settings.sync_queue_high)
    return result.id


# -- sync -----------------------------------------------------------------------

async def _sync_account(session_factory, account_id: str, trigger: str) -> Dict[str, Any]:
    from mailsync.services.sync_orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator(session_factory)
    outcome = await orchestrator.run(UUID(account_id), trigger=trigger)
    return outcome.to_dict()


@celery_app.task(base=SyncTask, bind=True, max_retries=settings.sync_task_max_retries)
def sync_account(self, account_id: str, trigger: str = "manual"):
    """
    Run one sync for an account.

    A run that fails with a retryable error is retried with growing
    countdowns; ``already_syncing`` is a normal, successful no-op.
    """
    result = run_async(lambda factory: _sync_account(factory, account_id, trigger))

    if result["status"] == "failed" and result.get("retryable"):
        if self.request.retries < self.max_retries:
            countdown = retry_countdown(self.request.retries)
            logger.info(
                f"Retrying sync for {account_id} in {countdown}s, attempt {self.request.retries + 1}: "
                f"{result.get('error')}"
            )
            raise self.retry(countdown=countdown, args=[account_id, "retry"])
        logger.error(f"Sync for {account_id} gave up after {self.request.retries} retries: {result.get('error')}")

    return result


async def _schedule_due(session_factory) -> Dict[str, Any]:
    from mailsync.services.account_service import AccountService

    due = await AccountService(session_factory).due_for_poll()
    for account_id in due:
        enqueue_sync(account_id, trigger="poll", priority="normal")
    return {"status": "success", "scheduled_count": len(due)}


@celery_app.task(base=SyncTask, bind=True)
def periodic_sync_scheduler(self):
    """Enqueue a normal-priority sync for every account whose poll interval elapsed."""
    result = run_async(_schedule_due)
    if result["scheduled_count"]:
        logger.info(f"Scheduled {result['scheduled_count']} polling sync(s)")
    return result


# -- watches --------------------------------------------------------------------

async def _renew_watch(session_factory, account_id: str) -> Optional[Dict[str, Any]]:
    from mailsync.services.watch_manager import WatchManager

    subscription = await WatchManager(session_factory).renew(UUID(account_id))
    return subscription.to_dict() if subscription else None


@celery_app.task(base=SyncTask, bind=True, max_retries=2, default_retry_delay=300)
def renew_watch(self, account_id: str):
    from mailsync.services.errors import NeedsReauth
    from mailsync.services.providers.base import ProviderError

    try:
        return run_async(lambda factory: _renew_watch(factory, account_id))
    except NeedsReauth as exc:
        logger.warning(f"Cannot renew watch for {account_id}: {exc}")
        return None
    except ProviderError as exc:
        if exc.retryable and self.request.retries < self.max_retries:
            raise self.retry(countdown=300, exc=exc)
        raise


async def _due_watches(session_factory):
    from mailsync.services.watch_manager import WatchManager

    return await WatchManager(session_factory).due_for_renewal()


@celery_app.task(base=SyncTask, bind=True)
def renew_expiring_watches(self):
    due = run_async(_due_watches)
    for account_id in due:
        enqueue_watch_renewal(account_id)
    logger.info(f"Queued renewal for {len(due)} expiring watch(es)")
    return {"status": "success", "renewals": len(due)}


# -- maintenance ----------------------------------------------------------------

async def _recover(session_factory) -> int:
    from mailsync.services.sync_orchestrator import SyncOrchestrator

    return await SyncOrchestrator(session_factory).recover_stale_leases()


@celery_app.task(base=SyncTask, bind=True)
def recover_stale_leases(self):
    return {"status": "success", "recovered": run_async(_recover)}


async def _purge(session_factory, days: Optional[int]) -> Dict[str, int]:
    from mailsync.services.account_service import AccountService
    from mailsync.services.ingestion import IngestionPipeline

    purged = await IngestionPipeline(session_factory).purge_deleted(days)
    pending = await AccountService(session_factory).purge_stale_pending()
    return {"messages": purged, "pending_accounts": pending}


@celery_app.task(base=SyncTask, bind=True, max_retries=2, default_retry_delay=600)
def purge_deleted_messages(self, days_threshold: Optional[int] = None):
    """
    Permanently remove soft-deleted messages past the retention window.

    Also clears OAuth placeholder accounts whose state expired unused.
    """
    result = run_async(lambda factory: _purge(factory, days_threshold))
    logger.info(f"Purge finished: {result}")
    return {"status": "success", **result}
