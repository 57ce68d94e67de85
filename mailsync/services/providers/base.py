"""
Provider client contract.

Every mailbox provider (Gmail, Outlook/Graph, IMAP) is reached through an
object satisfying ``ProviderClient``. Implementations share no base class;
they share the capability set below and the error taxonomy, so callers never
branch on provider-specific error shapes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from email.header import decode_header, make_header
from email.utils import getaddresses
from typing import List, Dict, Any, Optional, Protocol, runtime_checkable

from mailsync.utils.datetime_utils import parse_iso


class ProviderError(Exception):
    """Base exception for provider failures, already translated from native shapes."""

    retryable = False

    def __init__(self, message: str = "", provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class AuthError(ProviderError):
    """Credential rejected or expired."""


class RateLimited(ProviderError):
    """Provider asked us to slow down."""

    retryable = True

    def __init__(self, message: str = "", provider: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class TransientNetwork(ProviderError):
    """Timeouts, connection resets and 5xx responses."""

    retryable = True


class CursorExpired(ProviderError):
    """Stored cursor is no longer accepted; discovery must fall back to a bounded resync."""


class MessageNotFound(ProviderError):
    """Message vanished between listing and fetch."""


CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_DELETED = "deleted"


@dataclass
class Credential:
    """Decrypted credential. ``kind`` is oauth2 or password."""
    kind: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    # IMAP settings (host, port, username, password, use_ssl, folder)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            kind=data.get("kind", "oauth2"),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_at=parse_iso(data.get("expires_at")),
            scope=data.get("scope"),
            extra=data.get("extra") or {},
        )


@dataclass
class ChangeRecord:
    native_id: str
    change_type: str  # created, updated, deleted


@dataclass
class ChangePage:
    """
    One page of discovered changes.

    ``new_cursor`` is only set when every change up to and including this
    page is covered by it, i.e. it is safe to persist once the page's records
    are durably ingested. ``next_page_token`` is None on the final page.
    """
    records: List[ChangeRecord]
    next_page_token: Optional[str] = None
    new_cursor: Optional[str] = None
    estimated_total: Optional[int] = None


@dataclass
class AttachmentRef:
    attachment_id: str
    filename: Optional[str]
    content_type: Optional[str]
    size: Optional[int] = None
    content_id: Optional[str] = None
    is_inline: bool = False
    # Set when the provider already delivered the bytes with the message
    data: Optional[bytes] = None


@dataclass
class RawMessage:
    """A provider message after transport decoding, before persistence."""
    native_id: str
    thread_id: Optional[str] = None
    message_id_header: Optional[str] = None
    in_reply_to: Optional[str] = None
    subject: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    to: List[Dict[str, str]] = field(default_factory=list)
    cc: List[Dict[str, str]] = field(default_factory=list)
    bcc: List[Dict[str, str]] = field(default_factory=list)
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    snippet: Optional[str] = None
    received_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    labels: List[str] = field(default_factory=list)
    folder: Optional[str] = None
    is_read: bool = False
    is_starred: bool = False
    is_archived: bool = False
    is_spam: bool = False
    is_deleted: bool = False
    size_bytes: Optional[int] = None
    attachments: List[AttachmentRef] = field(default_factory=list)


@dataclass
class WatchHandle:
    """Provider push registration as returned by ``register_watch``."""
    channel_id: str
    resource: Optional[str]
    expires_at: Optional[datetime]
    secret: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderClient(Protocol):
    """Capability set every mailbox provider implements."""

    provider: str

    async def authenticate(self) -> Credential:
        """Verify the credential against the provider; raises AuthError."""
        ...

    async def list_changes(
        self,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> ChangePage:
        """
        Return one page of changes after ``cursor``.

        A None cursor means a bounded scan of messages received after
        ``since``, capped at ``limit``. Raises CursorExpired when the
        provider no longer honours ``cursor``.
        """
        ...

    async def fetch_message(self, native_id: str) -> RawMessage:
        ...

    async def fetch_attachment(self, native_id: str, attachment_id: str) -> bytes:
        ...

    async def register_watch(self) -> Optional[WatchHandle]:
        """Register push notifications; None for providers without push."""
        ...

    async def cancel_watch(self, handle: WatchHandle) -> None:
        ...

    def update_credential(self, credential: Credential) -> None:
        ...

    async def close(self) -> None:
        ...


def decode_mime_header(value: Optional[str]) -> Optional[str]:
    """Decode RFC 2047 encoded words, e.g. ``=?utf-8?Q?...?=``."""
    if value is None:
        return None
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return value


def parse_address_list(value: Optional[str]) -> List[Dict[str, str]]:
    """Parse a header like ``"Ann" <a@x.org>, b@y.org`` into [{"email", "name"}]."""
    if not value:
        return []
    result = []
    for name, address in getaddresses([value]):
        if not address:
            continue
        result.append({"email": address.strip().lower(), "name": decode_mime_header(name) or ""})
    return result


def parse_single_address(value: Optional[str]):
    """Return (email, name) for a From-style header."""
    addresses = parse_address_list(value)
    if not addresses:
        return None, None
    return addresses[0]["email"], addresses[0]["name"] or None
