"""
Tests for ChangeDiscovery and the bounded resync policy.
"""
from datetime import datetime, timedelta, timezone

import pytest

from mailsync.services.change_discovery import (
    MODE_BOUNDED_RESYNC,
    MODE_INCREMENTAL,
    BoundedResyncPolicy,
    ChangeDiscovery,
)
from mailsync.services.errors import RetryBudgetExhausted
from mailsync.services.providers.base import ChangePage, ChangeRecord, CursorExpired, RateLimited

from conftest import FakeProviderClient


def records(*ids):
    return [ChangeRecord(native_id=i, change_type="created") for i in ids]


async def collect(discovery, cursor):
    return [page async for page in discovery.pages(cursor)]


class TestBoundedResyncPolicy:

    def test_defaults(self):
        policy = BoundedResyncPolicy()

        assert policy.window_days == 7
        assert policy.max_messages == 500

    def test_since_is_window_before_now(self):
        now = datetime(2024, 5, 10, tzinfo=timezone.utc)

        assert BoundedResyncPolicy(window_days=3).since(now) == now - timedelta(days=3)


class TestChangeDiscovery:
    """Test cases for ChangeDiscovery."""

    @pytest.mark.asyncio
    async def test_incremental_pages_until_last(self, fast_retry):
        client = FakeProviderClient(pages=[
            ChangePage(records=records("a"), next_page_token="p2"),
            ChangePage(records=records("b"), new_cursor="200"),
        ])
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy())

        pages = await collect(discovery, "100")

        assert [p.mode for p in pages] == [MODE_INCREMENTAL, MODE_INCREMENTAL]
        assert [p.is_last for p in pages] == [False, True]
        assert pages[-1].checkpoint == "200"
        assert client.list_calls[1]["page_token"] == "p2"
        assert client.list_calls[0]["since"] is None and client.list_calls[0]["limit"] is None

    @pytest.mark.asyncio
    async def test_first_sync_is_bounded(self, fast_retry):
        client = FakeProviderClient(pages=[ChangePage(records=records("a"), new_cursor="50")])
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy(window_days=2, max_messages=10))

        pages = await collect(discovery, None)

        assert pages[0].mode == MODE_BOUNDED_RESYNC
        assert not pages[0].cursor_expired
        call = client.list_calls[0]
        assert call["cursor"] is None and call["limit"] == 10
        assert call["since"] is not None

    @pytest.mark.asyncio
    async def test_expired_cursor_falls_back_to_bounded_resync(self, fast_retry):
        client = FakeProviderClient(pages=[
            CursorExpired("too old", "gmail"),
            ChangePage(records=records("x", "y"), new_cursor="900", estimated_total=2),
        ])
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy(max_messages=20))

        pages = await collect(discovery, "100")

        assert len(pages) == 1
        assert pages[0].mode == MODE_BOUNDED_RESYNC
        assert pages[0].cursor_expired
        assert pages[0].checkpoint == "900"
        assert client.list_calls[1]["cursor"] is None
        assert client.list_calls[1]["limit"] == 20

    @pytest.mark.asyncio
    async def test_expiry_during_resync_is_not_retried_forever(self, fast_retry):
        client = FakeProviderClient(pages=[CursorExpired("old", "imap"), CursorExpired("again", "imap")])
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy())

        with pytest.raises(CursorExpired):
            await collect(discovery, "7:1")

    @pytest.mark.asyncio
    async def test_rate_limits_are_retried_then_exhausted(self, fast_retry):
        client = FakeProviderClient(pages=[RateLimited("slow down", "gmail", retry_after=1)] * 3)
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy())

        with pytest.raises(RetryBudgetExhausted):
            await collect(discovery, "100")
        assert len(client.list_calls) == 3
        assert fast_retry.sleep_mock.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, fast_retry):
        client = FakeProviderClient(pages=[
            RateLimited("slow down", "gmail"),
            ChangePage(records=records("a"), new_cursor="101"),
        ])
        discovery = ChangeDiscovery(client, fast_retry, BoundedResyncPolicy())

        pages = await collect(discovery, "100")

        assert [r.native_id for r in pages[0].records] == ["a"]
