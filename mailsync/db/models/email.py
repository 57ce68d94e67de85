"""
Mailbox synchronization models.

- Email accounts (one connected mailbox, its credential, cursor and sync state)
- Email messages (normalized provider messages, unique per account + native id)
- Email attachments (pointers into the blob store)
- Email sync history (one row per sync run)
"""

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, TIMESTAMP, ForeignKey, UniqueConstraint, Index, Uuid
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailsync.db.database import Base
from mailsync.db.models.types import JSONType
import uuid


class EmailAccount(Base):
    """A connected mailbox and the state of its synchronization."""

    __tablename__ = "email_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(100), nullable=False, index=True)

    provider = Column(String(20), nullable=False)  # gmail, outlook, imap
    email_address = Column(String(255))
    display_name = Column(String(255))
    is_active = Column(Boolean, default=False, nullable=False)

    # Credential (Fernet-encrypted JSON); the version is bumped on every write
    encrypted_credentials = Column(Text)
    credentials_version = Column(Integer, default=0, nullable=False)
    token_expires_at = Column(TIMESTAMP(timezone=True))
    needs_reauthentication = Column(Boolean, default=False, nullable=False)
    # Worker currently refreshing the OAuth token; one refresh per account at a time
    token_refresh_owner = Column(String(100))
    token_refresh_expires_at = Column(TIMESTAMP(timezone=True))

    # Pending OAuth connection
    oauth_state = Column(String(128), unique=True)
    oauth_state_expires_at = Column(TIMESTAMP(timezone=True))

    # Opaque provider position: historyId, delta link, or "uidvalidity:uid"
    sync_cursor = Column(Text)

    # Sync state machine: idle -> syncing -> completed | failed
    sync_status = Column(String(20), default="idle", nullable=False)
    sync_progress = Column(Integer, default=0, nullable=False)
    sync_total = Column(Integer)
    sync_error = Column(Text)
    sync_error_retryable = Column(Boolean)
    sync_started_at = Column(TIMESTAMP(timezone=True))
    sync_completed_at = Column(TIMESTAMP(timezone=True))

    # Lease held by the worker running the current sync
    lease_owner = Column(String(100))
    lease_expires_at = Column(TIMESTAMP(timezone=True))
    version = Column(Integer, default=0, nullable=False)

    # Scheduling
    auto_sync_enabled = Column(Boolean, default=True, nullable=False)
    sync_interval_minutes = Column(Integer, default=15, nullable=False)
    last_sync_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship("EmailMessage", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)
    subscriptions = relationship("WebhookSubscription", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)
    sync_history = relationship("EmailSyncHistory", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)

    def progress_dict(self):
        return {
            "account_id": str(self.id),
            "status": self.sync_status,
            "processed": self.sync_progress or 0,
            "total": self.sync_total,
            "error": self.sync_error,
            "retryable": self.sync_error_retryable,
            "needs_reauthentication": self.needs_reauthentication,
            "startedAt": self.sync_started_at.isoformat() if self.sync_started_at else None,
            "completedAt": self.sync_completed_at.isoformat() if self.sync_completed_at else None,
        }


class EmailMessage(Base):
    """Normalized mail item. (account_id, provider_message_id) is the ingestion key."""

    __tablename__ = "email_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)

    provider_message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255))
    message_id_header = Column(String(998))
    in_reply_to = Column(String(998))

    subject = Column(Text)
    sender_email = Column(String(320))
    sender_name = Column(String(255))
    to_recipients = Column(JSONType, default=list)
    cc_recipients = Column(JSONType, default=list)
    bcc_recipients = Column(JSONType, default=list)
    body_text = Column(Text)
    body_html = Column(Text)
    snippet = Column(Text)
    content_hash = Column(String(64), nullable=False)
    size_bytes = Column(Integer)

    received_at = Column(TIMESTAMP(timezone=True))
    sent_at = Column(TIMESTAMP(timezone=True))

    labels = Column(JSONType, default=list)
    folder = Column(String(255))
    is_read = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    is_spam = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(TIMESTAMP(timezone=True))

    has_attachments = Column(Boolean, default=False, nullable=False)
    attachment_count = Column(Integer, default=0, nullable=False)
    attachment_failures = Column(Integer, default=0, nullable=False)

    # Earlier message of this account with identical content, if any
    duplicate_of_id = Column(Uuid, ForeignKey("email_messages.id", ondelete="SET NULL"))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("EmailAccount", back_populates="messages")
    attachments = relationship("EmailAttachment", back_populates="message", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_account_provider_message"),
        Index("ix_email_messages_account_hash", "account_id", "content_hash"),
        Index("ix_email_messages_account_received", "account_id", "received_at"),
    )


class EmailAttachment(Base):
    """Attachment metadata; the bytes live in the blob store at ``storage_path``."""

    __tablename__ = "email_attachments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False)

    provider_attachment_id = Column(String(512), nullable=False)
    filename = Column(String(500))
    content_type = Column(String(200))
    content_id = Column(String(255))  # For inline attachments
    is_inline = Column(Boolean, default=False, nullable=False)
    size_bytes = Column(Integer)

    storage_path = Column(Text)
    content_hash = Column(String(64))

    status = Column(String(20), default="stored", nullable=False)  # stored, failed
    error = Column(Text)
    attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    message = relationship("EmailMessage", back_populates="attachments")

    __table_args__ = (
        UniqueConstraint("message_id", "provider_attachment_id", name="uq_message_attachment"),
    )


class EmailSyncHistory(Base):
    """Audit log of sync runs."""

    __tablename__ = "email_sync_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)

    trigger = Column(String(20), nullable=False)  # scheduled, webhook, manual, initial
    mode = Column(String(20))  # incremental, bounded_resync
    status = Column(String(20), nullable=False)  # running, completed, failed
    started_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    completed_at = Column(TIMESTAMP(timezone=True))

    records_processed = Column(Integer, default=0)
    messages_added = Column(Integer, default=0)
    messages_updated = Column(Integer, default=0)
    messages_deleted = Column(Integer, default=0)
    messages_skipped = Column(Integer, default=0)
    attachment_failures = Column(Integer, default=0)
    cursor_expired = Column(Boolean, default=False)

    error_message = Column(Text)
    duration_seconds = Column(Integer)

    account = relationship("EmailAccount", back_populates="sync_history")
