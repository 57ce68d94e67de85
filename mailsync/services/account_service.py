"""
Mailbox connection lifecycle: OAuth connect, IMAP connect, disconnect.
"""

import secrets
from datetime import timedelta
from typing import Callable, Dict, Any, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, delete

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import EmailAccount
from mailsync.services.errors import NeedsReauth
from mailsync.services.oauth import OAuthClient, oauth_client
from mailsync.services.providers import OAUTH_PROVIDERS, build_provider_client
from mailsync.services.providers.base import Credential, ProviderClient, ProviderError
from mailsync.services.token_manager import TokenLifecycleManager
from mailsync.services.watch_manager import WatchManager
from mailsync.utils.datetime_utils import to_utc, utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("account_service")


class OAuthStateError(Exception):
    """Callback state is unknown, already used or expired."""


def _default_enqueue_initial(account_id: UUID) -> None:
    from mailsync.tasks.sync_tasks import enqueue_sync
    enqueue_sync(account_id, trigger="initial", priority="high")


class AccountService:
    def __init__(
        self,
        session_factory=None,
        oauth: Optional[OAuthClient] = None,
        token_manager: Optional[TokenLifecycleManager] = None,
        watch_manager: Optional[WatchManager] = None,
        client_factory: Callable[[str, Credential], ProviderClient] = build_provider_client,
        enqueue_initial_sync: Callable[[UUID], None] = _default_enqueue_initial,
    ):
        self.session_factory = session_factory or database.session_factory
        self.oauth = oauth or oauth_client
        self.token_manager = token_manager or TokenLifecycleManager(self.session_factory, oauth=self.oauth)
        self.client_factory = client_factory
        self.watch_manager = watch_manager or WatchManager(self.session_factory, self.token_manager, client_factory)
        self.enqueue_initial_sync = enqueue_initial_sync

    async def begin_oauth(self, tenant_id: str, provider: str) -> Tuple[UUID, str]:
        """Create a pending account bound to a fresh state value; return it with the consent URL."""
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Provider {provider} does not use OAuth")

        state = secrets.token_urlsafe(32)
        async with self.session_factory() as session:
            account = EmailAccount(
                tenant_id=tenant_id,
                provider=provider,
                is_active=False,
                oauth_state=state,
                oauth_state_expires_at=utc_now() + timedelta(seconds=settings.oauth_state_ttl_seconds),
                sync_interval_minutes=settings.default_sync_interval_minutes,
            )
            session.add(account)
            await session.commit()
            account_id = account.id

        return account_id, self.oauth.authorization_url(provider, state)

    async def complete_oauth(self, provider: str, code: str, state: str) -> EmailAccount:
        """
        Finish the connection started by ``begin_oauth``.

        The state must match exactly one pending row of the same provider and
        is consumed here, so a callback can only be redeemed once.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailAccount).where(
                    EmailAccount.oauth_state == state,
                    EmailAccount.provider == provider,
                    EmailAccount.is_active.is_(False),
                )
            )
            pending = result.scalar_one_or_none()
            if pending is None:
                raise OAuthStateError("unknown or already used state")
            if to_utc(pending.oauth_state_expires_at) < utc_now():
                await session.delete(pending)
                await session.commit()
                raise OAuthStateError("state expired")
            pending.oauth_state = None
            pending.oauth_state_expires_at = None
            await session.commit()
            pending_id, tenant_id = pending.id, pending.tenant_id

        try:
            credential = await self.oauth.exchange_code(provider, code)
            client = self.client_factory(provider, credential)
            try:
                await client.authenticate()
                email_address = (client.profile_email or "").lower() or None
            finally:
                await client.close()
        except Exception:
            # The state is spent, so the placeholder can never be completed
            async with self.session_factory() as session:
                await session.execute(delete(EmailAccount).where(EmailAccount.id == pending_id))
                await session.commit()
            raise

        async with self.session_factory() as session:
            account = await self._existing_account(session, tenant_id, provider, email_address)
            if account is not None:
                # Reconnecting a known mailbox keeps its cursor and history
                await session.execute(delete(EmailAccount).where(EmailAccount.id == pending_id))
            else:
                account = await session.get(EmailAccount, pending_id)
            account.email_address = email_address
            account.is_active = True
            self.token_manager.store_credential(account, credential)
            await session.commit()
            account_id = account.id

        logger.info(f"Connected {provider} account {account_id}")
        await self._after_connect(account_id)
        async with self.session_factory() as session:
            return await session.get(EmailAccount, account_id)

    async def connect_imap(self, tenant_id: str, host: str, port: int, username: str, password: str,
                           use_ssl: bool = True, folder: str = "INBOX",
                           email_address: Optional[str] = None) -> EmailAccount:
        """Validate IMAP settings by logging in, then store the account."""
        credential = Credential(kind="password", extra={
            "host": host, "port": port, "username": username, "password": password,
            "use_ssl": use_ssl, "folder": folder,
        })
        client = self.client_factory("imap", credential)
        try:
            await client.authenticate()
        finally:
            await client.close()

        address = (email_address or username).lower()
        async with self.session_factory() as session:
            account = await self._existing_account(session, tenant_id, "imap", address)
            if account is None:
                account = EmailAccount(
                    tenant_id=tenant_id,
                    provider="imap",
                    sync_interval_minutes=settings.default_sync_interval_minutes,
                )
                session.add(account)
            account.email_address = address
            account.display_name = host
            account.is_active = True
            self.token_manager.store_credential(account, credential)
            await session.commit()
            account_id = account.id

        logger.info(f"Connected IMAP account {account_id} on {host}")
        await self._after_connect(account_id)
        async with self.session_factory() as session:
            return await session.get(EmailAccount, account_id)

    async def _existing_account(self, session, tenant_id: str, provider: str,
                                email_address: Optional[str]) -> Optional[EmailAccount]:
        if not email_address:
            return None
        result = await session.execute(
            select(EmailAccount).where(
                EmailAccount.tenant_id == tenant_id,
                EmailAccount.provider == provider,
                EmailAccount.email_address == email_address,
                EmailAccount.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def _after_connect(self, account_id: UUID) -> None:
        try:
            await self.watch_manager.register(account_id)
        except (ProviderError, NeedsReauth) as e:
            # Polling still covers the account
            logger.warning(f"Could not register push channel for {account_id}: {e}")
        self.enqueue_initial_sync(account_id)

    async def disconnect(self, account_id: UUID) -> bool:
        """Cancel the provider watch, then delete the account and everything it owns."""
        async with self.session_factory() as session:
            account = await session.get(EmailAccount, account_id)
            if account is None:
                return False

        await self.watch_manager.cancel(account_id)

        async with self.session_factory() as session:
            await session.execute(delete(EmailAccount).where(EmailAccount.id == account_id))
            await session.commit()
        logger.info(f"Disconnected account {account_id}")
        return True

    async def get_progress(self, account_id: UUID) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            account = await session.get(EmailAccount, account_id)
            return account.progress_dict() if account else None

    async def list_account_ids(self, tenant_id: Optional[str] = None) -> List[UUID]:
        async with self.session_factory() as session:
            query = select(EmailAccount.id).where(EmailAccount.is_active.is_(True))
            if tenant_id:
                query = query.where(EmailAccount.tenant_id == tenant_id)
            result = await session.execute(query)
            return list(result.scalars())

    async def due_for_poll(self) -> List[UUID]:
        """Active, auto-synced accounts whose interval has elapsed."""
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailAccount.id, EmailAccount.last_sync_at, EmailAccount.sync_interval_minutes).where(
                    EmailAccount.is_active.is_(True),
                    EmailAccount.auto_sync_enabled.is_(True),
                    EmailAccount.needs_reauthentication.is_(False),
                    EmailAccount.sync_status != "syncing",
                )
            )
            due = []
            for account_id, last_sync_at, interval in result.all():
                if last_sync_at is None or to_utc(last_sync_at) + timedelta(minutes=interval or 15) <= now:
                    due.append(account_id)
            return due

    async def purge_stale_pending(self) -> int:
        """Delete OAuth placeholders whose state expired without a callback."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(EmailAccount).where(
                    EmailAccount.is_active.is_(False),
                    EmailAccount.oauth_state_expires_at < utc_now(),
                )
            )
            await session.commit()
            return result.rowcount
