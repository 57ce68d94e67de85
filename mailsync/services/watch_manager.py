"""
Registration, renewal and cancellation of provider push channels.
"""

from datetime import timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import delete, select

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import EmailAccount, WebhookSubscription
from mailsync.services.errors import NeedsReauth
from mailsync.services.providers import build_provider_client
from mailsync.services.providers.base import Credential, MessageNotFound, ProviderClient, ProviderError, WatchHandle
from mailsync.services.token_manager import TokenLifecycleManager
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("watch_manager")


def _handle_from_row(row: WebhookSubscription) -> WatchHandle:
    channel_id = row.resource if row.provider == "gmail" else row.subscription_id
    return WatchHandle(
        channel_id=channel_id,
        resource=row.resource,
        expires_at=row.expires_at,
        secret=row.verification_secret,
        metadata=dict(row.provider_metadata or {}),
    )


class WatchManager:
    def __init__(
        self,
        session_factory=None,
        token_manager: Optional[TokenLifecycleManager] = None,
        client_factory: Callable[[str, Credential], ProviderClient] = build_provider_client,
    ):
        self.session_factory = session_factory or database.session_factory
        self.token_manager = token_manager or TokenLifecycleManager(self.session_factory)
        self.client_factory = client_factory

    async def _client_for(self, account_id: UUID):
        async with self.session_factory() as session:
            account = await session.get(EmailAccount, account_id)
            if account is None:
                return None, None
            provider = account.provider
        credential = await self.token_manager.ensure_valid(account_id)
        return provider, self.client_factory(provider, credential)

    async def register(self, account_id: UUID) -> Optional[WebhookSubscription]:
        """Create (or replace) the push channel for an account. None for poll-only providers."""
        provider, client = await self._client_for(account_id)
        if client is None:
            return None
        try:
            handle = await client.register_watch()
        finally:
            await client.close()
        if handle is None:
            return None
        return await self._save(account_id, provider, handle)

    async def _save(self, account_id: UUID, provider: str, handle: WatchHandle) -> WebhookSubscription:
        subscription_id = f"gmail-watch:{account_id}" if provider == "gmail" else handle.channel_id
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.account_id == account_id,
                    WebhookSubscription.provider == provider,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = WebhookSubscription(account_id=account_id, provider=provider)
                session.add(row)
            row.subscription_id = subscription_id
            row.resource = (handle.resource or "").lower() if provider == "gmail" else handle.resource
            row.verification_secret = handle.secret or row.verification_secret
            row.expires_at = handle.expires_at
            row.provider_metadata = handle.metadata
            row.is_active = True
            row.renewed_at = utc_now()
            await session.commit()
            logger.info(f"Registered {provider} push channel for account {account_id}, expires {handle.expires_at}")
            return row

    async def renew(self, account_id: UUID) -> Optional[WebhookSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(WebhookSubscription.account_id == account_id)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return await self.register(account_id)

        provider, client = await self._client_for(account_id)
        if client is None:
            return None
        try:
            if provider == "outlook":
                try:
                    handle = await client.renew_watch(_handle_from_row(row))
                except MessageNotFound:
                    logger.info(f"Graph subscription for account {account_id} vanished; recreating")
                    handle = await client.register_watch()
            else:
                # Gmail renews by calling watch again
                handle = await client.register_watch()
        finally:
            await client.close()

        if handle is None:
            return None
        return await self._save(account_id, provider, handle)

    async def cancel(self, account_id: UUID) -> bool:
        """
        Stop provider pushes and drop the local subscription row.

        Provider-side failures are logged; the local row is removed either way
        so a dead account never keeps receiving notifications.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(WebhookSubscription.account_id == account_id)
            )
            rows = list(result.scalars())
        if not rows:
            return False

        try:
            _, client = await self._client_for(account_id)
        except (NeedsReauth, ProviderError) as e:
            logger.warning(f"Cannot reach provider to cancel watch for {account_id}: {e}")
            client = None

        if client is not None:
            try:
                for row in rows:
                    await client.cancel_watch(_handle_from_row(row))
            except ProviderError as e:
                logger.warning(f"Provider refused watch cancellation for {account_id}: {e}")
            finally:
                await client.close()

        async with self.session_factory() as session:
            await session.execute(delete(WebhookSubscription).where(WebhookSubscription.account_id == account_id))
            await session.commit()
        return True

    async def due_for_renewal(self, margin_minutes: Optional[int] = None) -> List[UUID]:
        margin = settings.watch_renewal_margin_minutes if margin_minutes is None else margin_minutes
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription.account_id).where(
                    WebhookSubscription.is_active.is_(True),
                    WebhookSubscription.expires_at < utc_now() + timedelta(minutes=margin),
                )
            )
            return list(result.scalars())
