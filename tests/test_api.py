"""
Tests for the HTTP surface.
"""
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from mailsync.api.dependencies import get_account_service, get_sync_enqueuer, get_webhook_ingestion
from mailsync.main import app
from mailsync.services.account_service import AccountService
from mailsync.services.providers.base import AuthError
from mailsync.services.webhook_ingestion import WebhookIngestion, WebhookResult


@pytest.fixture
def enqueue():
    return MagicMock(return_value="task-1")


@pytest.fixture
def accounts(session_factory):
    return AccountService(session_factory, enqueue_initial_sync=MagicMock())


@pytest.fixture
def ingestion():
    mock = MagicMock(spec=WebhookIngestion)
    mock.handle_gmail = AsyncMock(return_value=WebhookResult(status_code=200, body={"status": "accepted"}))
    mock.handle_graph = AsyncMock(return_value=WebhookResult(status_code=202, body={"status": "accepted"}))
    return mock


@pytest_asyncio.fixture
async def client(accounts, enqueue, ingestion):
    app.dependency_overrides[get_account_service] = lambda: accounts
    app.dependency_overrides[get_sync_enqueuer] = lambda: enqueue
    app.dependency_overrides[get_webhook_ingestion] = lambda: ingestion
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/api/v1/ready")

        assert response.status_code == 200


class TestSyncEndpoints:
    """Test cases for manual sync and progress."""

    @pytest.mark.asyncio
    async def test_sync_single_account(self, client, make_account, enqueue):
        account_id = await make_account()

        response = await client.post("/api/v1/sync", json={"account_id": str(account_id)})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["task_ids"] == ["task-1"]
        enqueue.assert_called_once_with(account_id, trigger="manual", priority="high")

    @pytest.mark.asyncio
    async def test_sync_all_accounts_of_tenant(self, client, make_account, enqueue):
        await make_account(email_address="a@example.com")
        await make_account(email_address="b@example.com")
        await make_account(email_address="c@example.com", tenant_id="tenant-2")

        response = await client.post("/api/v1/sync", json={"tenant_id": "tenant-1"})

        assert response.status_code == 202
        assert len(response.json()["account_ids"]) == 2
        assert enqueue.call_count == 2

    @pytest.mark.asyncio
    async def test_sync_unknown_account(self, client, enqueue):
        response = await client.post("/api/v1/sync", json={"account_id": str(uuid4())})

        assert response.status_code == 404
        enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_progress(self, client, make_account):
        account_id = await make_account()

        response = await client.get(f"/api/v1/sync-progress/{account_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "idle"
        assert body["total"] is None

    @pytest.mark.asyncio
    async def test_progress_unknown_account(self, client):
        response = await client.get(f"/api/v1/sync-progress/{uuid4()}")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_api_key_is_enforced_when_configured(self, client, make_account):
        account_id = await make_account()

        with patch("mailsync.api.dependencies.settings") as settings:
            settings.api_key = "secret"
            missing = await client.get(f"/api/v1/sync-progress/{account_id}")
            wrong = await client.get(f"/api/v1/sync-progress/{account_id}",
                                     headers={"Authorization": "Bearer nope"})
            right = await client.get(f"/api/v1/sync-progress/{account_id}",
                                     headers={"Authorization": "Bearer secret"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200


class TestWebhookEndpoints:

    @pytest.mark.asyncio
    async def test_gmail_push_passes_token_and_payload(self, client, ingestion):
        response = await client.post("/api/v1/webhooks/gmail?token=abc", json={"message": {"data": "x"}})

        assert response.status_code == 200
        ingestion.handle_gmail.assert_awaited_once_with({"message": {"data": "x"}}, "abc")

    @pytest.mark.asyncio
    async def test_gmail_push_with_invalid_json(self, client, ingestion):
        await client.post("/api/v1/webhooks/gmail?token=abc", content=b"{not json")

        ingestion.handle_gmail.assert_awaited_once_with(None, "abc")

    @pytest.mark.asyncio
    async def test_graph_validation_is_plain_text(self, client, ingestion):
        ingestion.handle_graph.return_value = WebhookResult(
            status_code=200, body="token value", media_type="text/plain"
        )

        response = await client.post("/api/v1/webhooks/outlook?validationToken=token%20value")

        assert response.status_code == 200
        assert response.text == "token value"
        assert response.headers["content-type"].startswith("text/plain")
        ingestion.handle_graph.assert_awaited_once_with(None, "token value")

    @pytest.mark.asyncio
    async def test_graph_notification(self, client, ingestion):
        response = await client.post("/api/v1/webhooks/outlook", json={"value": []})

        assert response.status_code == 202
        ingestion.handle_graph.assert_awaited_once_with({"value": []}, None)


class TestAccountEndpoints:

    @pytest.mark.asyncio
    async def test_oauth_initiate(self, client):
        response = await client.post("/api/v1/oauth/gmail/initiate", json={"tenant_id": "tenant-1"})

        assert response.status_code == 200
        body = response.json()
        assert "state=" in body["authorization_url"]
        assert body["account_id"]

    @pytest.mark.asyncio
    async def test_oauth_initiate_unknown_provider(self, client):
        response = await client.post("/api/v1/oauth/yahoo/initiate", json={"tenant_id": "tenant-1"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_oauth_callback_with_bad_state(self, client):
        response = await client.get("/api/v1/oauth/callback/gmail?code=c&state=forged")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_oauth_callback_with_provider_error(self, client):
        response = await client.get("/api/v1/oauth/callback/gmail?error=access_denied")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_imap_login_failure(self, client, accounts):
        accounts.connect_imap = AsyncMock(side_effect=AuthError("LOGIN failed", "imap"))

        response = await client.post("/api/v1/accounts/imap", json={
            "tenant_id": "tenant-1", "host": "imap.example.com", "username": "me", "password": "bad",
        })

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_and_delete(self, client, make_account):
        account_id = await make_account()

        listed = await client.get("/api/v1/accounts", params={"tenant_id": "tenant-1"})
        deleted = await client.delete(f"/api/v1/accounts/{account_id}")
        again = await client.delete(f"/api/v1/accounts/{account_id}")

        assert listed.json()["account_ids"] == [str(account_id)]
        assert deleted.status_code == 204
        assert again.status_code == 404
