"""
Sync Orchestrator

Drives one sync run for one account through the state machine
``idle -> syncing -> completed | failed``.

Single-flight is enforced by a lease on the account row: acquiring it is a
single conditional UPDATE that only matches when no live lease exists, so of
any number of concurrent triggers exactly one proceeds and the others get
``AlreadySyncing``. Every later write of the run (progress, checkpoint,
completion) is guarded by the lease owner and extends the lease, so a worker
that lost its lease can never overwrite the state of the run that replaced it.

The provider cursor is only written after the records it covers are
committed; a run killed at any point resumes from the last durable cursor
and ingestion deduplicates whatever it sees again.
"""

import os
import socket
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import or_, update

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import EmailAccount, EmailSyncHistory
from mailsync.services.change_discovery import BoundedResyncPolicy, ChangeDiscovery
from mailsync.services.errors import (
    AccountNotFound,
    AlreadySyncing,
    LeaseLost,
    NeedsReauth,
    RetryBudgetExhausted,
    SyncRunError,
)
from mailsync.services.ingestion import IngestionPipeline
from mailsync.services.providers import build_provider_client
from mailsync.services.providers.base import AuthError, Credential, ProviderClient, ProviderError
from mailsync.services.retry import RetryPolicy
from mailsync.services.token_manager import TokenLifecycleManager
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("sync_orchestrator")

STATUS_SYNCING = "syncing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

OUTCOME_ALREADY_SYNCING = "already_syncing"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_INACTIVE = "inactive"


@dataclass
class SyncOutcome:
    account_id: UUID
    status: str
    trigger: str = "manual"
    mode: Optional[str] = None
    processed: int = 0
    total: Optional[int] = None
    counts: Dict[str, int] = field(default_factory=lambda: {"added": 0, "updated": 0, "deleted": 0, "skipped": 0})
    attachment_failures: int = 0
    cursor_expired: bool = False
    error: Optional[str] = None
    retryable: bool = False

    def to_dict(self):
        return {
            "account_id": str(self.account_id),
            "status": self.status,
            "trigger": self.trigger,
            "mode": self.mode,
            "processed": self.processed,
            "total": self.total,
            "counts": dict(self.counts),
            "attachment_failures": self.attachment_failures,
            "cursor_expired": self.cursor_expired,
            "error": self.error,
            "retryable": self.retryable,
        }


class ReauthenticatingClient:
    """
    Wraps a provider client so an AuthError mid-run forces one token refresh.

    A second AuthError after that refresh escalates to NeedsReauth instead of
    refreshing again.
    """

    def __init__(self, client: ProviderClient, account_id: UUID, token_manager: TokenLifecycleManager):
        self._client = client
        self._account_id = account_id
        self._token_manager = token_manager
        self._refreshed = False
        self.provider = client.provider

    async def _guarded(self, call):
        try:
            return await call()
        except AuthError as e:
            if self._refreshed:
                await self._token_manager.mark_needs_reauth(self._account_id, str(e))
                raise NeedsReauth(f"provider rejected refreshed credential: {e}") from e
            logger.info(f"{self.provider} rejected credential for {self._account_id}; forcing refresh")
            self._refreshed = True
            credential = await self._token_manager.ensure_valid(self._account_id, force_refresh=True)
            self._client.update_credential(credential)
            try:
                return await call()
            except AuthError as retry_error:
                await self._token_manager.mark_needs_reauth(self._account_id, str(retry_error))
                raise NeedsReauth(f"provider rejected refreshed credential: {retry_error}") from retry_error

    async def list_changes(self, cursor, page_token=None, since=None, limit=None):
        return await self._guarded(lambda: self._client.list_changes(cursor, page_token=page_token, since=since, limit=limit))

    async def fetch_message(self, native_id):
        return await self._guarded(lambda: self._client.fetch_message(native_id))

    async def fetch_attachment(self, native_id, attachment_id):
        return await self._guarded(lambda: self._client.fetch_attachment(native_id, attachment_id))


class SyncOrchestrator:
    def __init__(
        self,
        session_factory=None,
        token_manager: Optional[TokenLifecycleManager] = None,
        ingestion: Optional[IngestionPipeline] = None,
        client_factory: Callable[[str, Credential], ProviderClient] = build_provider_client,
        retry: Optional[RetryPolicy] = None,
        policy: Optional[BoundedResyncPolicy] = None,
        lease_ttl_seconds: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory or database.session_factory
        self.token_manager = token_manager or TokenLifecycleManager(self.session_factory)
        self.ingestion = ingestion or IngestionPipeline(self.session_factory)
        self.client_factory = client_factory
        self.retry = retry or RetryPolicy()
        self.policy = policy or BoundedResyncPolicy.from_settings()
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds or settings.sync_lease_ttl_seconds)
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

    async def run(self, account_id: UUID, trigger: str = "manual") -> SyncOutcome:
        """Run one sync for ``account_id``. Never raises for expected outcomes."""
        owner = f"{self.worker_id}:{uuid4().hex[:8]}"
        try:
            provider = await self.acquire_lease(account_id, owner)
        except AlreadySyncing:
            logger.info(f"Account {account_id} already syncing; {trigger} trigger dropped")
            return SyncOutcome(account_id=account_id, status=OUTCOME_ALREADY_SYNCING, trigger=trigger)
        except AccountNotFound:
            logger.warning(f"Sync requested for unknown account {account_id}")
            return SyncOutcome(account_id=account_id, status=OUTCOME_NOT_FOUND, trigger=trigger)

        if provider is None:
            return SyncOutcome(account_id=account_id, status=OUTCOME_INACTIVE, trigger=trigger)

        outcome = SyncOutcome(account_id=account_id, status=STATUS_SYNCING, trigger=trigger)
        history_id = await self._start_history(account_id, trigger)
        started = time.monotonic()
        MetricsCollector.increment_active_syncs(provider)
        logger.info(f"Sync started for account {account_id} ({provider}, trigger={trigger})")

        client = None
        try:
            credential = await self.token_manager.ensure_valid(account_id)
            client = self.client_factory(provider, credential)
            await self._drive(account_id, owner, client, provider, outcome)
        except LeaseLost as e:
            outcome.status, outcome.error, outcome.retryable = STATUS_FAILED, str(e), True
            logger.error(f"Sync for account {account_id} lost its lease; stopping without writing state")
        except (NeedsReauth, RetryBudgetExhausted, ProviderError, SyncRunError) as e:
            outcome.status = STATUS_FAILED
            outcome.error = self._describe(e)
            outcome.retryable = bool(getattr(e, "retryable", False))
            logger.error(f"Sync failed for account {account_id}: {outcome.error} (retryable={outcome.retryable})")
            await self._fail(account_id, owner, outcome)
        except Exception as e:
            # Outside the taxonomy: the account must still leave ``syncing``
            outcome.status, outcome.retryable = STATUS_FAILED, False
            outcome.error = f"Unexpected error: {type(e).__name__}: {e}"
            logger.exception(f"Sync for account {account_id} crashed")
            await self._fail(account_id, owner, outcome)
        finally:
            if client is not None:
                await client.close()
            MetricsCollector.increment_active_syncs(provider, -1)

        duration = time.monotonic() - started
        MetricsCollector.increment_sync_runs(provider, outcome.status)
        if outcome.status == STATUS_COMPLETED:
            MetricsCollector.record_sync_duration(duration, provider)
        await self._finish_history(history_id, outcome, duration)
        return outcome

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, NeedsReauth):
            return f"Re-authentication required: {error}"
        if isinstance(error, RetryBudgetExhausted):
            return f"Provider unavailable, will retry: {error.last_error or error}"
        return str(error) or type(error).__name__

    # -- lease --------------------------------------------------------------

    async def acquire_lease(self, account_id: UUID, owner: str) -> Optional[str]:
        """
        Atomically move the account into ``syncing`` under ``owner``.

        Returns the provider name, or None when the account is inactive.
        Raises AlreadySyncing if a live lease is held by someone else.
        """
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailAccount)
                .where(
                    EmailAccount.id == account_id,
                    EmailAccount.is_active.is_(True),
                    or_(
                        EmailAccount.sync_status != STATUS_SYNCING,
                        EmailAccount.lease_expires_at.is_(None),
                        EmailAccount.lease_expires_at < now,
                    ),
                )
                .values(
                    sync_status=STATUS_SYNCING,
                    sync_progress=0,
                    sync_total=None,
                    sync_error=None,
                    sync_error_retryable=None,
                    sync_started_at=now,
                    sync_completed_at=None,
                    lease_owner=owner,
                    lease_expires_at=now + self.lease_ttl,
                    version=EmailAccount.version + 1,
                )
            )
            await session.commit()

            account = await session.get(EmailAccount, account_id)
            if account is None:
                raise AccountNotFound(f"account {account_id} not found")
            if result.rowcount == 1:
                return account.provider
            if not account.is_active:
                return None
            raise AlreadySyncing(f"account {account_id} is leased by {account.lease_owner}")

    async def _guarded_update(self, account_id: UUID, owner: str, **values) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id, EmailAccount.lease_owner == owner)
                .values(version=EmailAccount.version + 1, **values)
            )
            await session.commit()
        if result.rowcount != 1:
            raise LeaseLost(f"lease {owner} on account {account_id} is no longer held")

    async def _heartbeat(self, account_id: UUID, owner: str, processed: int, total: Optional[int]) -> None:
        await self._guarded_update(
            account_id, owner,
            sync_progress=processed,
            sync_total=total,
            lease_expires_at=utc_now() + self.lease_ttl,
        )

    # -- run ----------------------------------------------------------------

    async def _drive(self, account_id: UUID, owner: str, client: ProviderClient, provider: str,
                     outcome: SyncOutcome) -> None:
        async with self.session_factory() as session:
            account = await session.get(EmailAccount, account_id)
            cursor = account.sync_cursor

        guarded = ReauthenticatingClient(client, account_id, self.token_manager)
        discovery = ChangeDiscovery(guarded, self.retry, self.policy)
        estimate = None
        discovered = 0
        final_cursor = cursor

        async for page in discovery.pages(cursor):
            outcome.mode = page.mode
            if page.cursor_expired and not outcome.cursor_expired:
                outcome.cursor_expired = True
                estimate = None
            if page.estimated_total is not None:
                estimate = page.estimated_total
            discovered += len(page.records)

            if estimate is not None:
                outcome.total = max(estimate, discovered)
            elif page.is_last:
                outcome.total = discovered

            if not page.records:
                await self._heartbeat(account_id, owner, outcome.processed, outcome.total)

            for record in page.records:
                result = await self.ingestion.ingest(account_id, guarded, record)
                outcome.counts[result.action] = outcome.counts.get(result.action, 0) + 1
                outcome.attachment_failures += len(result.attachment_failures)
                if result.attachment_failures:
                    MetricsCollector.increment_attachment_failures(provider, len(result.attachment_failures))
                MetricsCollector.increment_messages_ingested(provider, result.action)
                outcome.processed += 1
                await self._heartbeat(account_id, owner, outcome.processed, outcome.total)

            if page.checkpoint is not None:
                final_cursor = page.checkpoint
                if not page.is_last:
                    await self._guarded_update(account_id, owner, sync_cursor=page.checkpoint)

        now = utc_now()
        outcome.total = max(outcome.total or 0, outcome.processed)
        await self._guarded_update(
            account_id, owner,
            sync_status=STATUS_COMPLETED,
            sync_cursor=final_cursor,
            sync_progress=outcome.processed,
            sync_total=outcome.total,
            sync_error=None,
            sync_error_retryable=None,
            sync_completed_at=now,
            last_sync_at=now,
            lease_owner=None,
            lease_expires_at=None,
        )
        outcome.status = STATUS_COMPLETED
        logger.info(
            f"Sync completed for account {account_id}: {outcome.processed} records "
            f"({outcome.counts}), mode={outcome.mode}, attachment failures={outcome.attachment_failures}"
        )

    async def _fail(self, account_id: UUID, owner: str, outcome: SyncOutcome) -> None:
        try:
            await self._guarded_update(
                account_id, owner,
                sync_status=STATUS_FAILED,
                sync_error=outcome.error,
                sync_error_retryable=outcome.retryable,
                sync_completed_at=utc_now(),
                lease_owner=None,
                lease_expires_at=None,
            )
        except LeaseLost:
            logger.warning(f"Could not record failure for account {account_id}: lease already gone")

    # -- history ------------------------------------------------------------

    async def _start_history(self, account_id: UUID, trigger: str) -> UUID:
        async with self.session_factory() as session:
            entry = EmailSyncHistory(account_id=account_id, trigger=trigger, status="running", started_at=utc_now())
            session.add(entry)
            await session.commit()
            return entry.id

    async def _finish_history(self, history_id: UUID, outcome: SyncOutcome, duration: float) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(EmailSyncHistory)
                .where(EmailSyncHistory.id == history_id)
                .values(
                    status=outcome.status,
                    mode=outcome.mode,
                    completed_at=utc_now(),
                    records_processed=outcome.processed,
                    messages_added=outcome.counts.get("added", 0),
                    messages_updated=outcome.counts.get("updated", 0),
                    messages_deleted=outcome.counts.get("deleted", 0),
                    messages_skipped=outcome.counts.get("skipped", 0),
                    attachment_failures=outcome.attachment_failures,
                    cursor_expired=outcome.cursor_expired,
                    error_message=outcome.error,
                    duration_seconds=int(duration),
                )
            )
            await session.commit()

    # -- maintenance ----------------------------------------------------------

    async def recover_stale_leases(self, grace_seconds: Optional[int] = None) -> int:
        """
        Move accounts whose worker died mid-run from ``syncing`` to ``failed``.

        Acquisition already steals expired leases; this only makes the stuck
        state visible and retryable for accounts nobody triggers.
        """
        grace = settings.stale_lease_grace_seconds if grace_seconds is None else grace_seconds
        cutoff = utc_now() - timedelta(seconds=grace)
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailAccount)
                .where(
                    EmailAccount.sync_status == STATUS_SYNCING,
                    or_(EmailAccount.lease_expires_at.is_(None), EmailAccount.lease_expires_at < cutoff),
                )
                .values(
                    sync_status=STATUS_FAILED,
                    sync_error="Sync worker stopped before finishing (lease expired)",
                    sync_error_retryable=True,
                    sync_completed_at=utc_now(),
                    lease_owner=None,
                    lease_expires_at=None,
                    version=EmailAccount.version + 1,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} account(s) with expired sync leases")
        return result.rowcount
