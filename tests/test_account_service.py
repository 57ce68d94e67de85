"""
Tests for AccountService and WatchManager: connect, disconnect, watches, polling.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select, update

from mailsync.db.models import EmailAccount, EmailMessage, WebhookSubscription
from mailsync.services.account_service import AccountService, OAuthStateError
from mailsync.services.encryption_service import encryption_service
from mailsync.services.oauth import OAuthClient
from mailsync.services.providers.base import AuthError, MessageNotFound, WatchHandle
from mailsync.services.token_manager import TokenLifecycleManager
from mailsync.services.watch_manager import WatchManager
from mailsync.utils.datetime_utils import utc_now

from conftest import FakeProviderClient, load_account, oauth_credential


@pytest.fixture
def oauth():
    client = OAuthClient()
    client.exchange_code = AsyncMock(return_value=oauth_credential(access_token="fresh"))
    client.refresh = AsyncMock()
    return client


@pytest.fixture
def provider_client():
    client = FakeProviderClient()
    client.profile_email = "Person@Gmail.com"
    return client


@pytest.fixture
def enqueue_initial_sync():
    return MagicMock()


@pytest.fixture
def service(session_factory, oauth, provider_client, enqueue_initial_sync):
    token_manager = TokenLifecycleManager(session_factory, oauth=oauth)
    factory = lambda provider, credential: provider_client  # noqa: E731
    watch_manager = WatchManager(session_factory, token_manager, factory)
    return AccountService(
        session_factory,
        oauth=oauth,
        token_manager=token_manager,
        watch_manager=watch_manager,
        client_factory=factory,
        enqueue_initial_sync=enqueue_initial_sync,
    )


async def count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count(model.id)))).scalar()


class TestOAuthConnect:
    """Test cases for the OAuth connection flow."""

    @pytest.mark.asyncio
    async def test_begin_creates_pending_account_bound_to_state(self, session_factory, service):
        account_id, url = await service.begin_oauth("tenant-1", "gmail")

        state = parse_qs(urlparse(url).query)["state"][0]
        account = await load_account(session_factory, account_id)
        assert account.oauth_state == state
        assert account.is_active is False
        assert parse_qs(urlparse(url).query)["access_type"] == ["offline"]

    @pytest.mark.asyncio
    async def test_begin_rejects_non_oauth_provider(self, service):
        with pytest.raises(ValueError):
            await service.begin_oauth("tenant-1", "imap")

    @pytest.mark.asyncio
    async def test_complete_activates_account_and_enqueues_initial_sync(
        self, session_factory, service, oauth, enqueue_initial_sync
    ):
        account_id, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]

        account = await service.complete_oauth("gmail", "auth-code", state)

        assert account.id == account_id
        assert account.is_active
        assert account.email_address == "person@gmail.com"
        assert account.oauth_state is None
        oauth.exchange_code.assert_awaited_once_with("gmail", "auth-code")
        stored = encryption_service.decrypt_json(account.encrypted_credentials)
        assert stored["access_token"] == "fresh"
        enqueue_initial_sync.assert_called_once_with(account_id)

    @pytest.mark.asyncio
    async def test_state_can_only_be_redeemed_once(self, service):
        _, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]
        await service.complete_oauth("gmail", "code", state)

        with pytest.raises(OAuthStateError):
            await service.complete_oauth("gmail", "code", state)

    @pytest.mark.asyncio
    async def test_expired_state_is_rejected(self, session_factory, service, oauth):
        account_id, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]
        async with session_factory() as session:
            await session.execute(
                update(EmailAccount).where(EmailAccount.id == account_id)
                .values(oauth_state_expires_at=utc_now() - timedelta(minutes=1))
            )
            await session.commit()

        with pytest.raises(OAuthStateError):
            await service.complete_oauth("gmail", "code", state)
        oauth.exchange_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_exchange_removes_pending_account(self, session_factory, service, oauth):
        _, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]
        oauth.exchange_code.side_effect = AuthError("invalid_grant", "gmail")

        with pytest.raises(AuthError):
            await service.complete_oauth("gmail", "code", state)
        assert await count(session_factory, EmailAccount) == 0

    @pytest.mark.asyncio
    async def test_failed_profile_lookup_removes_pending_account(
        self, session_factory, service, provider_client, enqueue_initial_sync
    ):
        _, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]
        provider_client.authenticate = AsyncMock(side_effect=AuthError("token rejected", "gmail"))

        with pytest.raises(AuthError):
            await service.complete_oauth("gmail", "code", state)
        assert await count(session_factory, EmailAccount) == 0
        assert provider_client.closed
        enqueue_initial_sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_merges_into_existing_account(self, session_factory, service, make_account):
        existing = await make_account(email_address="person@gmail.com", sync_cursor="h-55")
        _, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]

        account = await service.complete_oauth("gmail", "code", state)

        assert account.id == existing
        assert account.sync_cursor == "h-55"
        assert await count(session_factory, EmailAccount) == 1

    @pytest.mark.asyncio
    async def test_watch_is_registered_when_provider_supports_push(self, session_factory, service, provider_client):
        provider_client.watch = WatchHandle(
            channel_id="person@gmail.com", resource="Person@Gmail.com",
            expires_at=utc_now() + timedelta(days=7), secret="push-secret",
        )
        _, url = await service.begin_oauth("tenant-1", "gmail")
        state = parse_qs(urlparse(url).query)["state"][0]

        account = await service.complete_oauth("gmail", "code", state)

        async with session_factory() as session:
            subscription = (await session.execute(select(WebhookSubscription))).scalar_one()
        assert subscription.subscription_id == f"gmail-watch:{account.id}"
        assert subscription.resource == "person@gmail.com"
        assert subscription.verification_secret == "push-secret"


class TestImapConnect:

    @pytest.mark.asyncio
    async def test_connect_stores_password_credential(self, session_factory, service, enqueue_initial_sync):
        account = await service.connect_imap("tenant-1", "imap.example.com", 993, "Me@Example.com", "pw")

        assert account.provider == "imap"
        assert account.email_address == "me@example.com"
        stored = encryption_service.decrypt_json(account.encrypted_credentials)
        assert stored["kind"] == "password"
        assert stored["extra"]["host"] == "imap.example.com"
        enqueue_initial_sync.assert_called_once_with(account.id)

    @pytest.mark.asyncio
    async def test_login_failure_stores_nothing(self, session_factory, service, provider_client):
        provider_client.authenticate = AsyncMock(side_effect=AuthError("LOGIN failed", "imap"))

        with pytest.raises(AuthError):
            await service.connect_imap("tenant-1", "imap.example.com", 993, "me", "wrong")
        assert await count(session_factory, EmailAccount) == 0


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_cancels_watch_and_deletes_everything(
        self, session_factory, service, make_account, provider_client
    ):
        account_id = await make_account()
        async with session_factory() as session:
            session.add(WebhookSubscription(account_id=account_id, provider="gmail",
                                            subscription_id=f"gmail-watch:{account_id}",
                                            resource="user@gmail.example.com", verification_secret="s"))
            session.add(EmailMessage(account_id=account_id, provider_message_id="m1", content_hash="h"))
            await session.commit()

        assert await service.disconnect(account_id) is True

        assert len(provider_client.cancelled) == 1
        assert await count(session_factory, EmailAccount) == 0
        assert await count(session_factory, WebhookSubscription) == 0
        assert await count(session_factory, EmailMessage) == 0

    @pytest.mark.asyncio
    async def test_disconnect_unknown_account(self, service):
        from uuid import uuid4

        assert await service.disconnect(uuid4()) is False


class TestPollingAndRenewal:

    @pytest.mark.asyncio
    async def test_due_for_poll(self, service, make_account):
        never = await make_account(email_address="never@example.com")
        recent = await make_account(email_address="recent@example.com", last_sync_at=utc_now())
        stale = await make_account(email_address="stale@example.com",
                                   last_sync_at=utc_now() - timedelta(minutes=30))
        await make_account(email_address="manual@example.com", auto_sync_enabled=False)
        await make_account(email_address="reauth@example.com", needs_reauthentication=True)

        due = await service.due_for_poll()

        assert set(due) == {never, stale}
        assert recent not in due

    @pytest.mark.asyncio
    async def test_graph_renewal_recreates_vanished_subscription(self, session_factory, make_account):
        account_id = await make_account(provider="outlook")
        async with session_factory() as session:
            session.add(WebhookSubscription(account_id=account_id, provider="outlook", subscription_id="old-sub",
                                            resource="me/mailFolders('inbox')/messages",
                                            verification_secret="s", expires_at=utc_now()))
            await session.commit()
        client = FakeProviderClient(provider="outlook")
        client.renew_watch = AsyncMock(side_effect=MessageNotFound("gone", "outlook"))
        client.watch = WatchHandle(channel_id="new-sub", resource="me/mailFolders('inbox')/messages",
                                   expires_at=utc_now() + timedelta(days=2), secret="s2")
        manager = WatchManager(session_factory, TokenLifecycleManager(session_factory), lambda p, c: client)

        subscription = await manager.renew(account_id)

        assert subscription.subscription_id == "new-sub"
        assert subscription.verification_secret == "s2"

    @pytest.mark.asyncio
    async def test_due_for_renewal(self, session_factory, make_account):
        soon = await make_account(provider="outlook")
        later = await make_account(provider="outlook", email_address="later@example.com")
        async with session_factory() as session:
            session.add(WebhookSubscription(account_id=soon, provider="outlook", subscription_id="a",
                                            verification_secret="s", expires_at=utc_now() + timedelta(hours=1)))
            session.add(WebhookSubscription(account_id=later, provider="outlook", subscription_id="b",
                                            verification_secret="s", expires_at=utc_now() + timedelta(days=2)))
            await session.commit()
        manager = WatchManager(session_factory, TokenLifecycleManager(session_factory))

        assert await manager.due_for_renewal(margin_minutes=120) == [soon]
