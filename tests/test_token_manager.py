"""
Tests for TokenLifecycleManager.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from mailsync.services.encryption_service import encryption_service
from mailsync.services.errors import AccountNotFound, NeedsReauth
from mailsync.services.oauth import InvalidGrant
from mailsync.services.providers.base import Credential, TransientNetwork
from mailsync.services.token_manager import TokenLifecycleManager
from mailsync.utils.datetime_utils import utc_now

from conftest import load_account, oauth_credential


@pytest.fixture
def oauth():
    client = MagicMock()
    client.refresh = AsyncMock()
    return client


def stored_credential(account):
    return Credential.from_dict(encryption_service.decrypt_json(account.encrypted_credentials))


class TestTokenLifecycleManager:
    """Test cases for TokenLifecycleManager."""

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_refresh(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=3600))
        manager = TokenLifecycleManager(session_factory, oauth=oauth, margin_seconds=300)

        credential = await manager.ensure_valid(account_id)

        assert credential.access_token == "access-1"
        oauth.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed_and_persisted(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=60))
        oauth.refresh.return_value = oauth_credential(access_token="access-2", refresh_token="refresh-2")
        manager = TokenLifecycleManager(session_factory, oauth=oauth, margin_seconds=300)

        credential = await manager.ensure_valid(account_id)

        assert credential.access_token == "access-2"
        oauth.refresh.assert_awaited_once_with("gmail", "refresh-1")
        account = await load_account(session_factory, account_id)
        assert account.credentials_version == 2
        assert stored_credential(account).refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_marks_account(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=-10))
        oauth.refresh.side_effect = InvalidGrant("revoked", "gmail")
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        with pytest.raises(NeedsReauth):
            await manager.ensure_valid(account_id)

        account = await load_account(session_factory, account_id)
        assert account.needs_reauthentication is True
        assert oauth.refresh.await_count == 1
        assert account.token_refresh_owner is None

        # Later calls escalate immediately instead of spinning on refresh
        with pytest.raises(NeedsReauth):
            await manager.ensure_valid(account_id)
        assert oauth.refresh.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_needs_reauth(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=-10, refresh_token=None))
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        with pytest.raises(NeedsReauth):
            await manager.ensure_valid(account_id)
        oauth.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_leaves_account_usable(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=-10))
        oauth.refresh.side_effect = TransientNetwork("timeout", "gmail")
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        with pytest.raises(TransientNetwork):
            await manager.ensure_valid(account_id)

        account = await load_account(session_factory, account_id)
        assert account.needs_reauthentication is False
        assert account.token_refresh_owner is None

        # The released claim lets the next attempt refresh straight away
        oauth.refresh.side_effect = None
        oauth.refresh.return_value = oauth_credential(access_token="access-2")
        assert (await manager.ensure_valid(account_id)).access_token == "access-2"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_reach_the_provider_once(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=-10))
        manager = TokenLifecycleManager(session_factory, oauth=oauth, poll_interval=0.01)
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_refresh(provider, refresh_token):
            started.set()
            await release.wait()
            return oauth_credential(access_token="fresh", refresh_token="refresh-2")

        oauth.refresh.side_effect = slow_refresh

        first = asyncio.create_task(manager.ensure_valid(account_id))
        await started.wait()
        second = asyncio.create_task(manager.ensure_valid(account_id))
        await asyncio.sleep(0.05)
        release.set()
        results = await asyncio.gather(first, second)

        assert [c.access_token for c in results] == ["fresh", "fresh"]
        assert oauth.refresh.await_count == 1
        account = await load_account(session_factory, account_id)
        assert account.credentials_version == 2
        assert stored_credential(account).refresh_token == "refresh-2"
        assert account.token_refresh_owner is None

    @pytest.mark.asyncio
    async def test_waiting_for_a_held_refresh_times_out_as_transient(self, session_factory, make_account, oauth):
        account_id = await make_account(
            credential=oauth_credential(expires_in_seconds=-10),
            token_refresh_owner="other-worker",
            token_refresh_expires_at=utc_now() + timedelta(minutes=1),
        )
        manager = TokenLifecycleManager(session_factory, oauth=oauth, wait_seconds=0, sleep=AsyncMock())

        with pytest.raises(TransientNetwork):
            await manager.ensure_valid(account_id)

        oauth.refresh.assert_not_awaited()
        account = await load_account(session_factory, account_id)
        assert account.token_refresh_owner == "other-worker"
        assert account.needs_reauthentication is False

    @pytest.mark.asyncio
    async def test_abandoned_refresh_claim_is_taken_over(self, session_factory, make_account, oauth):
        account_id = await make_account(
            credential=oauth_credential(expires_in_seconds=-10),
            token_refresh_owner="dead-worker",
            token_refresh_expires_at=utc_now() - timedelta(seconds=1),
        )
        oauth.refresh.return_value = oauth_credential(access_token="access-2")
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        credential = await manager.ensure_valid(account_id)

        assert credential.access_token == "access-2"
        account = await load_account(session_factory, account_id)
        assert account.token_refresh_owner is None
        assert account.credentials_version == 2

    @pytest.mark.asyncio
    async def test_password_credentials_are_returned_as_is(self, session_factory, make_account, oauth):
        credential = Credential(kind="password", extra={"host": "imap.example.com", "password": "pw"})
        account_id = await make_account(provider="imap", credential=credential)
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        result = await manager.ensure_valid(account_id)

        assert result.extra["password"] == "pw"
        oauth.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_refresh(self, session_factory, make_account, oauth):
        account_id = await make_account(credential=oauth_credential(expires_in_seconds=3600))
        oauth.refresh.return_value = oauth_credential(access_token="forced")
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        credential = await manager.ensure_valid(account_id, force_refresh=True)

        assert credential.access_token == "forced"

    @pytest.mark.asyncio
    async def test_unknown_account(self, session_factory, oauth):
        manager = TokenLifecycleManager(session_factory, oauth=oauth)

        with pytest.raises(AccountNotFound):
            await manager.ensure_valid(uuid4())
