"""
Ingestion of discovered changes into the local message store.

(account_id, provider_message_id) is the idempotency key. A second pass over
the same change set inserts nothing; it only refreshes mutable state such as
flags, labels and folder. Attachments are stored after their message row is
committed, each independently, and a failure is recorded on the attachment
row instead of undoing the message.
"""

import hashlib
import json
from datetime import timedelta
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from mailsync.config import settings
from mailsync.db import database
from mailsync.db.models import EmailAttachment, EmailMessage
from mailsync.services.attachment_storage import AttachmentTooLarge, BlobStore, blob_store
from mailsync.services.errors import RetryBudgetExhausted
from mailsync.services.providers.base import (
    AttachmentRef,
    ChangeRecord,
    MessageNotFound,
    ProviderClient,
    ProviderError,
    RawMessage,
    CHANGE_DELETED,
)
from mailsync.services.retry import RetryConfig, RetryPolicy
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("ingestion")

ACTION_ADDED = "added"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted"
ACTION_SKIPPED = "skipped"


@dataclass
class PartialAttachmentFailure:
    """One attachment of an otherwise ingested message could not be stored."""
    attachment_id: str
    filename: Optional[str]
    error: str


@dataclass
class IngestResult:
    action: str
    message_id: Optional[UUID] = None
    duplicate_of_id: Optional[UUID] = None
    attachments_stored: int = 0
    attachment_failures: List[PartialAttachmentFailure] = field(default_factory=list)


def compute_content_hash(raw: RawMessage) -> str:
    """
    Hash of the message content, independent of any provider identifier.

    Two deliveries of the same mail through different paths share a hash.
    """
    body = raw.body_text or raw.body_html or ""
    payload = {
        "from": (raw.sender_email or "").lower(),
        "to": sorted(r["email"] for r in raw.to),
        "cc": sorted(r["email"] for r in raw.cc),
        "subject": (raw.subject or "").strip(),
        "date": raw.sent_at.isoformat() if raw.sent_at else None,
        "body": " ".join(body.split()),
        "attachments": sorted((a.filename or "", a.size or 0) for a in raw.attachments),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def _mutable_fields(raw: RawMessage, existing: Optional[EmailMessage] = None) -> Dict[str, Any]:
    deleted_at = None
    if raw.is_deleted:
        # Trash time is set once; re-syncing a trashed message must not delay its purge
        deleted_at = existing.deleted_at if existing is not None and existing.deleted_at else utc_now()
    return {
        "labels": list(raw.labels),
        "folder": raw.folder,
        "is_read": raw.is_read,
        "is_starred": raw.is_starred,
        "is_archived": raw.is_archived,
        "is_spam": raw.is_spam,
        "is_deleted": raw.is_deleted,
        "deleted_at": deleted_at,
    }


class IngestionPipeline:
    def __init__(self, session_factory=None, store: Optional[BlobStore] = None,
                 retry: Optional[RetryPolicy] = None, attachment_retry: Optional[RetryPolicy] = None):
        self.session_factory = session_factory or database.session_factory
        self.store = store or blob_store
        self.retry = retry or RetryPolicy()
        self.attachment_retry = attachment_retry or RetryPolicy(RetryConfig(
            max_attempts=settings.attachment_retry_attempts, initial_delay=0.5, max_delay=10.0,
        ))

    async def ingest(self, account_id: UUID, client: ProviderClient, record: ChangeRecord) -> IngestResult:
        if record.change_type == CHANGE_DELETED:
            return await self.soft_delete(account_id, record.native_id)

        try:
            raw = await self.retry.call(
                lambda: client.fetch_message(record.native_id),
                description=f"{client.provider} fetch_message",
                provider=client.provider,
            )
        except MessageNotFound:
            logger.debug(f"Message {record.native_id} vanished before fetch; treating as deleted")
            return await self.soft_delete(account_id, record.native_id)

        return await self.store_message(account_id, client, raw)

    async def store_message(self, account_id: UUID, client: ProviderClient, raw: RawMessage) -> IngestResult:
        content_hash = compute_content_hash(raw)

        async with self.session_factory() as session:
            existing = await self._find(session, account_id, raw.native_id)
            if existing is None:
                duplicate_of = await self._find_duplicate(session, account_id, raw.native_id, content_hash)
                message = EmailMessage(
                    account_id=account_id,
                    provider_message_id=raw.native_id,
                    thread_id=raw.thread_id,
                    message_id_header=raw.message_id_header,
                    in_reply_to=raw.in_reply_to,
                    subject=raw.subject,
                    sender_email=raw.sender_email,
                    sender_name=raw.sender_name,
                    to_recipients=raw.to,
                    cc_recipients=raw.cc,
                    bcc_recipients=raw.bcc,
                    body_text=raw.body_text,
                    body_html=raw.body_html,
                    snippet=raw.snippet,
                    content_hash=content_hash,
                    size_bytes=raw.size_bytes,
                    received_at=raw.received_at,
                    sent_at=raw.sent_at,
                    has_attachments=bool(raw.attachments),
                    duplicate_of_id=duplicate_of,
                    **_mutable_fields(raw),
                )
                session.add(message)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost an insert race for the same key; fall through to the update path
                    await session.rollback()
                    existing = await self._find(session, account_id, raw.native_id)
                    if existing is None:
                        raise
                else:
                    if duplicate_of:
                        logger.info(f"Message {raw.native_id} duplicates {duplicate_of}")
                    result = IngestResult(action=ACTION_ADDED, message_id=message.id, duplicate_of_id=duplicate_of)
                    await self._ingest_attachments(session, message, raw, client, result)
                    return result

            await session.execute(
                update(EmailMessage)
                .where(EmailMessage.id == existing.id)
                .values(**_mutable_fields(raw, existing))
            )
            await session.commit()
            result = IngestResult(action=ACTION_UPDATED, message_id=existing.id)
            if raw.attachments:
                await self._ingest_attachments(session, existing, raw, client, result)
            return result

    async def soft_delete(self, account_id: UUID, native_id: str) -> IngestResult:
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailMessage)
                .where(
                    EmailMessage.account_id == account_id,
                    EmailMessage.provider_message_id == native_id,
                    EmailMessage.is_deleted.is_(False),
                )
                .values(is_deleted=True, deleted_at=utc_now())
            )
            await session.commit()
        return IngestResult(action=ACTION_DELETED if result.rowcount else ACTION_SKIPPED)

    async def _find(self, session, account_id: UUID, native_id: str) -> Optional[EmailMessage]:
        result = await session.execute(
            select(EmailMessage).where(
                EmailMessage.account_id == account_id,
                EmailMessage.provider_message_id == native_id,
            )
        )
        return result.scalar_one_or_none()

    async def _find_duplicate(self, session, account_id: UUID, native_id: str, content_hash: str) -> Optional[UUID]:
        result = await session.execute(
            select(EmailMessage.id)
            .where(
                EmailMessage.account_id == account_id,
                EmailMessage.content_hash == content_hash,
                EmailMessage.provider_message_id != native_id,
                EmailMessage.duplicate_of_id.is_(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _ingest_attachments(self, session, message: EmailMessage, raw: RawMessage,
                                  client: ProviderClient, result: IngestResult) -> None:
        if not raw.attachments:
            return

        rows = await session.execute(select(EmailAttachment).where(EmailAttachment.message_id == message.id))
        existing = {row.provider_attachment_id: row for row in rows.scalars()}

        for ref in raw.attachments:
            row = existing.get(ref.attachment_id)
            if row is not None and row.status == "stored":
                continue
            if row is None:
                row = EmailAttachment(
                    message_id=message.id,
                    provider_attachment_id=ref.attachment_id,
                    filename=ref.filename,
                    content_type=ref.content_type,
                    content_id=ref.content_id,
                    is_inline=ref.is_inline,
                    size_bytes=ref.size,
                    attempts=0,
                )
                session.add(row)

            row.attempts = (row.attempts or 0) + 1
            try:
                data = await self._attachment_bytes(raw.native_id, ref, client)
                row.storage_path, row.content_hash = await self.store.put(data)
                row.size_bytes = len(data)
                row.status, row.error = "stored", None
                result.attachments_stored += 1
            except (ProviderError, RetryBudgetExhausted, AttachmentTooLarge, OSError) as e:
                row.status, row.error = "failed", str(e)[:1000]
                result.attachment_failures.append(
                    PartialAttachmentFailure(ref.attachment_id, ref.filename, str(e))
                )
                logger.warning(f"Attachment {ref.filename or ref.attachment_id} of {raw.native_id} failed: {e}")

            # Each attachment outcome is durable on its own
            await session.commit()

        counts = await session.execute(select(EmailAttachment.status).where(EmailAttachment.message_id == message.id))
        statuses = list(counts.scalars())
        await session.execute(
            update(EmailMessage)
            .where(EmailMessage.id == message.id)
            .values(
                has_attachments=bool(statuses),
                attachment_count=statuses.count("stored"),
                attachment_failures=statuses.count("failed"),
            )
        )
        await session.commit()

    async def _attachment_bytes(self, native_id: str, ref: AttachmentRef, client: ProviderClient) -> bytes:
        if ref.data is not None:
            return ref.data
        return await self.attachment_retry.call(
            lambda: client.fetch_attachment(native_id, ref.attachment_id),
            description=f"{client.provider} fetch_attachment",
            provider=client.provider,
        )

    async def purge_deleted(self, older_than_days: Optional[int] = None) -> int:
        """Permanently remove messages soft-deleted more than ``older_than_days`` ago."""
        days = settings.purge_deleted_after_days if older_than_days is None else older_than_days
        cutoff = utc_now() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(EmailMessage).where(
                    EmailMessage.is_deleted.is_(True),
                    EmailMessage.deleted_at < cutoff,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} soft-deleted message(s)")
        return result.rowcount
