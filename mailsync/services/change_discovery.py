"""
Turns a stored cursor into a lazy, restartable sequence of change pages.

With a cursor, discovery is incremental. Without one (first sync), or as
soon as the provider reports the cursor expired, it degrades to a bounded
resync: messages received within ``window_days``, at most ``max_messages``.
A bounded resync always ends with a fresh cursor, so the following run is
incremental again.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional

from mailsync.config import settings
from mailsync.services.providers.base import ChangeRecord, CursorExpired, ProviderClient
from mailsync.services.retry import RetryPolicy
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("change_discovery")

MODE_INCREMENTAL = "incremental"
MODE_BOUNDED_RESYNC = "bounded_resync"


@dataclass
class BoundedResyncPolicy:
    window_days: int = 7
    max_messages: int = 500

    @classmethod
    def from_settings(cls) -> "BoundedResyncPolicy":
        return cls(window_days=settings.resync_window_days, max_messages=settings.resync_max_messages)

    def since(self, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) - timedelta(days=self.window_days)


@dataclass
class DiscoveredPage:
    records: List[ChangeRecord]
    # Cursor that may be persisted once every record of this page is ingested
    checkpoint: Optional[str]
    is_last: bool
    estimated_total: Optional[int]
    mode: str
    cursor_expired: bool = False


class ChangeDiscovery:
    def __init__(self, client: ProviderClient, retry: Optional[RetryPolicy] = None,
                 policy: Optional[BoundedResyncPolicy] = None):
        self.client = client
        self.retry = retry or RetryPolicy()
        self.policy = policy or BoundedResyncPolicy.from_settings()

    async def pages(self, cursor: Optional[str]) -> AsyncIterator[DiscoveredPage]:
        """
        Yield pages until the provider reports the end of the change set.

        Provider calls are retried per page by the retry policy; exhausting
        it raises RetryBudgetExhausted out of the iteration.
        """
        mode = MODE_INCREMENTAL if cursor else MODE_BOUNDED_RESYNC
        since = None if cursor else self.policy.since()
        page_token = None
        expired = False

        while True:
            try:
                page = await self.retry.call(
                    self._fetcher(cursor, page_token, since),
                    description=f"{self.client.provider} list_changes",
                    provider=self.client.provider,
                )
            except CursorExpired:
                if cursor is None:
                    raise
                logger.warning(f"{self.client.provider} cursor expired; falling back to bounded resync")
                cursor, page_token, expired = None, None, True
                mode, since = MODE_BOUNDED_RESYNC, self.policy.since()
                continue

            is_last = page.next_page_token is None
            yield DiscoveredPage(
                records=page.records,
                checkpoint=page.new_cursor,
                is_last=is_last,
                estimated_total=page.estimated_total,
                mode=mode,
                cursor_expired=expired,
            )
            if is_last:
                return
            page_token = page.next_page_token

    def _fetcher(self, cursor, page_token, since):
        limit = None if cursor else self.policy.max_messages

        async def fetch():
            return await self.client.list_changes(cursor, page_token=page_token, since=since, limit=limit)
        return fetch
