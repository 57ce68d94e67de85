"""
OAuth credential lifecycle per account.

``ensure_valid`` returns a usable credential, refreshing it at most once per
call. Refreshes are serialized per account through a short-lived claim on
the account row: the worker holding the claim calls the provider and always
persists what it gets back, everyone else waits for the stored credential
to change and uses that. A provider that rotates refresh tokens therefore
never sees two refreshes racing for the same account.
"""

import asyncio
import time
from datetime import timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy import or_, update

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import EmailAccount
from mailsync.services.encryption_service import CredentialDecryptionError, EncryptionService, encryption_service
from mailsync.services.errors import AccountNotFound, NeedsReauth
from mailsync.services.oauth import OAuthClient, oauth_client
from mailsync.services.providers.base import AuthError, Credential, TransientNetwork
from mailsync.utils.datetime_utils import is_expired, utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("token_manager")


class TokenLifecycleManager:
    """Owns expiry checks, refresh and re-authentication signalling."""

    def __init__(
        self,
        session_factory=None,
        oauth: Optional[OAuthClient] = None,
        encryption: Optional[EncryptionService] = None,
        margin_seconds: Optional[int] = None,
        claim_seconds: Optional[int] = None,
        wait_seconds: Optional[float] = None,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory or database.session_factory
        self.oauth = oauth or oauth_client
        self.encryption = encryption or encryption_service
        self.margin_seconds = settings.token_refresh_margin_seconds if margin_seconds is None else margin_seconds
        self.claim_ttl = timedelta(
            seconds=settings.token_refresh_claim_seconds if claim_seconds is None else claim_seconds
        )
        self.wait_seconds = settings.token_refresh_wait_seconds if wait_seconds is None else wait_seconds
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def ensure_valid(self, account_id: UUID, force_refresh: bool = False) -> Credential:
        """
        Return a credential that is valid for at least the safety margin.

        Raises:
            NeedsReauth: the account must be reconnected by the user.
            TransientNetwork / RateLimited: refresh could not be attempted
                right now, or another worker's refresh did not finish in
                time; the account is left untouched.
        """
        async with self.session_factory() as session:
            account = await session.get(EmailAccount, account_id)
            if account is None:
                raise AccountNotFound(f"account {account_id} not found")
            provider = account.provider
            version = account.credentials_version
            needs_reauth = account.needs_reauthentication
            encrypted = account.encrypted_credentials

        if needs_reauth:
            raise NeedsReauth("account requires re-authentication")

        credential = await self._decrypt(account_id, encrypted)
        if credential.kind != "oauth2":
            return credential

        if not force_refresh and credential.access_token and not is_expired(credential.expires_at, self.margin_seconds):
            return credential

        if not credential.refresh_token:
            await self.mark_needs_reauth(account_id, "no refresh token stored")
            raise NeedsReauth("no refresh token stored")

        owner = uuid4().hex
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if await self._claim_refresh(account_id, version, owner):
                return await self._refresh_claimed(account_id, provider, credential, owner)

            async with self.session_factory() as session:
                account = await session.get(EmailAccount, account_id)
                current_version = account.credentials_version
                needs_reauth = account.needs_reauthentication
                encrypted = account.encrypted_credentials

            if needs_reauth:
                raise NeedsReauth("account requires re-authentication")
            if current_version != version:
                logger.info(f"Token for account {account_id} was refreshed by another worker; using it")
                return await self._decrypt(account_id, encrypted)
            if time.monotonic() >= deadline:
                raise TransientNetwork(f"token refresh for account {account_id} is held by another worker", provider)
            await self._sleep(self.poll_interval)

    async def _decrypt(self, account_id: UUID, encrypted: Optional[str]) -> Credential:
        try:
            return Credential.from_dict(self.encryption.decrypt_json(encrypted or ""))
        except CredentialDecryptionError as e:
            await self.mark_needs_reauth(account_id, "stored credential unreadable")
            raise NeedsReauth("stored credential unreadable") from e

    async def _claim_refresh(self, account_id: UUID, version: int, owner: str) -> bool:
        """Take the refresh claim if the credential is still at ``version`` and nobody holds it."""
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailAccount)
                .where(
                    EmailAccount.id == account_id,
                    EmailAccount.credentials_version == version,
                    or_(
                        EmailAccount.token_refresh_owner.is_(None),
                        EmailAccount.token_refresh_expires_at.is_(None),
                        EmailAccount.token_refresh_expires_at < now,
                    ),
                )
                .values(token_refresh_owner=owner, token_refresh_expires_at=now + self.claim_ttl)
            )
            await session.commit()
            return result.rowcount == 1

    async def _refresh_claimed(self, account_id: UUID, provider: str, credential: Credential,
                               owner: str) -> Credential:
        logger.info(f"Refreshing access token for account {account_id}")
        try:
            refreshed = await self.oauth.refresh(provider, credential.refresh_token)
        except AuthError as e:
            await self._release_claim(account_id, owner)
            await self.mark_needs_reauth(account_id, str(e))
            raise NeedsReauth(f"token refresh rejected: {e}") from e
        except Exception:
            await self._release_claim(account_id, owner)
            raise

        refreshed.extra = credential.extra
        await self._store_refreshed(account_id, owner, refreshed)
        return refreshed

    async def _store_refreshed(self, account_id: UUID, owner: str, credential: Credential) -> None:
        # The provider already issued this token; it is persisted even if the claim timed out
        async with self.session_factory() as session:
            await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id)
                .values(
                    encrypted_credentials=self.encryption.encrypt_json(credential.to_dict()),
                    token_expires_at=credential.expires_at,
                    credentials_version=EmailAccount.credentials_version + 1,
                    needs_reauthentication=False,
                )
            )
            await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id, EmailAccount.token_refresh_owner == owner)
                .values(token_refresh_owner=None, token_refresh_expires_at=None)
            )
            await session.commit()

    async def _release_claim(self, account_id: UUID, owner: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id, EmailAccount.token_refresh_owner == owner)
                .values(token_refresh_owner=None, token_refresh_expires_at=None)
            )
            await session.commit()

    def store_credential(self, account: EmailAccount, credential: Credential) -> None:
        """Write a new credential onto ``account`` within the caller's transaction."""
        account.encrypted_credentials = self.encryption.encrypt_json(credential.to_dict())
        account.token_expires_at = credential.expires_at
        account.credentials_version = (account.credentials_version or 0) + 1
        account.needs_reauthentication = False

    async def mark_needs_reauth(self, account_id: UUID, reason: str) -> None:
        logger.warning(f"Account {account_id} needs re-authentication: {reason}")
        async with self.session_factory() as session:
            await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id)
                .values(needs_reauthentication=True)
            )
            await session.commit()
