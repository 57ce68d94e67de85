"""
Inbound push notifications.

Handlers validate, resolve the account from the stored subscription and
enqueue a high-priority sync. They never run the sync themselves and never
move the cursor: the notification only says "something changed", the next
run discovers what.

Structurally valid payloads are always acknowledged with 2xx, including
ones for unknown subscriptions, so providers do not retry them.
"""

import base64
import binascii
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Set
from uuid import UUID

from sqlalchemy import func, select

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import WebhookSubscription
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("webhook_ingestion")

GRAPH_RENEW_EVENTS = ("reauthorizationRequired", "subscriptionRemoved")


@dataclass
class WebhookResult:
    status_code: int
    body: Any = None
    media_type: str = "application/json"
    enqueued: List[UUID] = field(default_factory=list)


def constant_time_equals(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def _default_enqueue_sync(account_id: UUID) -> None:
    from mailsync.tasks.sync_tasks import enqueue_sync
    enqueue_sync(account_id, trigger="webhook", priority="high")


def _default_enqueue_renewal(account_id: UUID) -> None:
    from mailsync.tasks.sync_tasks import enqueue_watch_renewal
    enqueue_watch_renewal(account_id)


class WebhookIngestion:
    def __init__(
        self,
        session_factory=None,
        enqueue_sync: Callable[[UUID], None] = _default_enqueue_sync,
        enqueue_renewal: Callable[[UUID], None] = _default_enqueue_renewal,
    ):
        self.session_factory = session_factory or database.session_factory
        self.enqueue_sync = enqueue_sync
        self.enqueue_renewal = enqueue_renewal

    async def handle_gmail(self, payload: Any, token: Optional[str]) -> WebhookResult:
        """
        Gmail Pub/Sub push: ``{"message": {"data": base64(json), ...}}``.

        The decoded data carries ``emailAddress`` and ``historyId``; only the
        address is used, to find the watch registered for that mailbox.
        """
        if settings.gmail_push_verification_token and not constant_time_equals(
            token, settings.gmail_push_verification_token
        ):
            MetricsCollector.increment_webhook_notifications("gmail", "rejected")
            logger.warning("Gmail push rejected: verification token mismatch")
            return WebhookResult(403, {"status": "forbidden"})

        message = payload.get("message") if isinstance(payload, dict) else None
        if not isinstance(message, dict) or not isinstance(message.get("data"), str):
            MetricsCollector.increment_webhook_notifications("gmail", "malformed")
            return WebhookResult(400, {"status": "malformed"})

        try:
            data = json.loads(base64.b64decode(message["data"], validate=False))
            email_address = str(data["emailAddress"]).lower()
        except (binascii.Error, ValueError, KeyError, TypeError):
            MetricsCollector.increment_webhook_notifications("gmail", "malformed")
            return WebhookResult(400, {"status": "malformed"})

        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.provider == "gmail",
                    func.lower(WebhookSubscription.resource) == email_address,
                    WebhookSubscription.is_active.is_(True),
                )
            )
            subscriptions = list(result.scalars())

        if not subscriptions:
            MetricsCollector.increment_webhook_notifications("gmail", "unknown")
            logger.info("Gmail push for a mailbox without an active watch; acknowledged and dropped")
            return WebhookResult(200, {"status": "ignored"})

        matched = [s for s in subscriptions if constant_time_equals(token, s.verification_secret)]
        if not matched:
            MetricsCollector.increment_webhook_notifications("gmail", "rejected")
            logger.warning("Gmail push token does not match the stored watch secret")
            return WebhookResult(403, {"status": "forbidden"})

        enqueued = self._enqueue({s.account_id for s in matched})
        MetricsCollector.increment_webhook_notifications("gmail", "enqueued")
        logger.info(f"Gmail push (historyId={data.get('historyId')}) enqueued {len(enqueued)} sync(s)")
        return WebhookResult(200, {"status": "accepted"}, enqueued=enqueued)

    async def handle_graph(self, payload: Any, validation_token: Optional[str] = None) -> WebhookResult:
        """
        Graph change and lifecycle notifications: ``{"value": [...]}``.

        Subscription creation first sends ``?validationToken=``, which must be
        echoed back verbatim as plain text.
        """
        if validation_token is not None:
            return WebhookResult(200, validation_token, media_type="text/plain")

        items = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(items, list) or not all(
            isinstance(item, dict) and isinstance(item.get("subscriptionId"), str) for item in items
        ):
            MetricsCollector.increment_webhook_notifications("outlook", "malformed")
            return WebhookResult(400, {"status": "malformed"})

        subscription_ids = {item["subscriptionId"] for item in items}
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.provider == "outlook",
                    WebhookSubscription.subscription_id.in_(subscription_ids),
                    WebhookSubscription.is_active.is_(True),
                )
            )
            known = {s.subscription_id: s for s in result.scalars()}

        to_sync: Set[UUID] = set()
        to_renew: Set[UUID] = set()
        for item in items:
            subscription = known.get(item["subscriptionId"])
            if subscription is None:
                MetricsCollector.increment_webhook_notifications("outlook", "unknown")
                continue
            if not constant_time_equals(item.get("clientState"), subscription.verification_secret):
                MetricsCollector.increment_webhook_notifications("outlook", "rejected")
                logger.warning(f"Graph notification with wrong clientState for {item['subscriptionId']}")
                continue

            lifecycle_event = item.get("lifecycleEvent")
            if lifecycle_event in GRAPH_RENEW_EVENTS:
                to_renew.add(subscription.account_id)
            elif lifecycle_event == "missed":
                to_sync.add(subscription.account_id)
            elif lifecycle_event is None:
                to_sync.add(subscription.account_id)

        for account_id in to_renew:
            self.enqueue_renewal(account_id)
        enqueued = self._enqueue(to_sync)
        if enqueued or to_renew:
            MetricsCollector.increment_webhook_notifications("outlook", "enqueued")
        return WebhookResult(200, {"status": "accepted"}, enqueued=enqueued)

    def _enqueue(self, account_ids: Set[UUID]) -> List[UUID]:
        enqueued = []
        for account_id in sorted(account_ids, key=str):
            self.enqueue_sync(account_id)
            enqueued.append(account_id)
        return enqueued
