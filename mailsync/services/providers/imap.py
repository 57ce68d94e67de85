"""
Generic IMAP client.

IMAP has no change feed, so the cursor is the UID high-water mark of the
synced folder, qualified by its UIDVALIDITY: ``"<uidvalidity>:<last uid>"``.
Incremental discovery lists UIDs above the mark; a UIDVALIDITY change means
every stored UID is meaningless and is reported as an expired cursor.
Native ids carry the UIDVALIDITY as well so a renumbered mailbox can never
collide with previously ingested rows.

imaplib is blocking; every protocol exchange runs in a worker thread.
"""

import asyncio
import email
import imaplib
import re
import socket
from datetime import datetime
from email.message import Message
from typing import List, Optional, Tuple

from mailsync.config import settings
from mailsync.services.providers.base import (
    AuthError,
    AttachmentRef,
    ChangePage,
    ChangeRecord,
    Credential,
    CursorExpired,
    MessageNotFound,
    ProviderError,
    RawMessage,
    TransientNetwork,
    WatchHandle,
    CHANGE_CREATED,
    decode_mime_header,
    parse_address_list,
    parse_single_address,
)
from mailsync.utils.datetime_utils import parse_rfc2822, utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("imap_client")

STATUS_PATTERN = re.compile(r"(UIDVALIDITY|UIDNEXT|MESSAGES) (\d+)")
SIZE_PATTERN = re.compile(r"RFC822\.SIZE (\d+)")


def format_cursor(uidvalidity: int, uid: int) -> str:
    return f"{uidvalidity}:{uid}"


def parse_cursor(cursor: str) -> Tuple[int, int]:
    uidvalidity, uid = cursor.split(":", 1)
    return int(uidvalidity), int(uid)


def decode_part_text(payload: bytes, charset: Optional[str]) -> str:
    """Decode a text part; unknown or bogus charsets fall back to UTF-8."""
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.debug(f"Unknown charset {charset!r}; decoding as UTF-8")
        return payload.decode("utf-8", errors="replace")


def _quote_folder_name(folder: str) -> str:
    if folder.startswith('"'):
        return folder
    if " " in folder or "/" in folder:
        return '"' + folder.replace('"', '\\"') + '"'
    return folder


class ImapClient:
    """Password-authenticated IMAP mailbox; no push support."""

    provider = "imap"

    def __init__(self, credential: Credential, page_size: Optional[int] = None):
        self.credential = credential
        self.page_size = page_size or settings.sync_page_size
        self.folder = credential.extra.get("folder") or "INBOX"
        self.profile_email: Optional[str] = credential.extra.get("username")
        self._connection: Optional[imaplib.IMAP4] = None

    def update_credential(self, credential: Credential) -> None:
        self.credential = credential

    async def close(self) -> None:
        if self._connection is not None:
            connection, self._connection = self._connection, None
            try:
                await asyncio.to_thread(connection.logout)
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP logout failed: {e}")

    async def authenticate(self) -> Credential:
        await self._call(lambda conn: conn.noop())
        return self.credential

    # -- connection ---------------------------------------------------------

    def _connect(self) -> imaplib.IMAP4:
        extra = self.credential.extra
        host = extra["host"]
        port = int(extra.get("port") or (993 if extra.get("use_ssl", True) else 143))
        try:
            if extra.get("use_ssl", True):
                connection = imaplib.IMAP4_SSL(host, port, timeout=settings.http_timeout_seconds)
            else:
                connection = imaplib.IMAP4(host, port, timeout=settings.http_timeout_seconds)
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransientNetwork(f"IMAP connection to {host} failed: {e}", self.provider) from e

        try:
            connection.login(extra["username"], extra["password"])
        except imaplib.IMAP4.error as e:
            raise AuthError(f"IMAP login rejected: {e}", self.provider) from e
        return connection

    def _run(self, operation):
        """Run ``operation(connection)`` in the calling thread, translating errors."""
        try:
            if self._connection is None:
                self._connection = self._connect()
            return operation(self._connection)
        except ProviderError:
            raise
        except imaplib.IMAP4.abort as e:
            self._connection = None
            raise TransientNetwork(f"IMAP connection dropped: {e}", self.provider) from e
        except (socket.timeout, OSError) as e:
            self._connection = None
            raise TransientNetwork(f"IMAP network error: {e}", self.provider) from e
        except imaplib.IMAP4.error as e:
            raise ProviderError(f"IMAP command failed: {e}", self.provider) from e

    async def _call(self, operation):
        return await asyncio.to_thread(self._run, operation)

    def _select(self, conn: imaplib.IMAP4) -> Tuple[int, int]:
        """Select the folder read-only and return (uidvalidity, uidnext)."""
        folder = _quote_folder_name(self.folder)
        status, data = conn.select(folder, readonly=True)
        if status != "OK":
            raise ProviderError(f"Failed to select folder {self.folder}: {data}", self.provider)
        status, status_data = conn.status(folder, "(UIDVALIDITY UIDNEXT)")
        if status != "OK":
            raise ProviderError(f"Failed to get folder status: {status_data}", self.provider)
        raw = status_data[0].decode() if isinstance(status_data[0], bytes) else status_data[0]
        values = {key: int(value) for key, value in STATUS_PATTERN.findall(raw)}
        return values["UIDVALIDITY"], values.get("UIDNEXT", 1)

    @staticmethod
    def _search(conn: imaplib.IMAP4, criteria: str) -> List[int]:
        status, data = conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH {criteria} failed: {data}")
        if not data or not data[0]:
            return []
        raw = data[0].decode() if isinstance(data[0], bytes) else data[0]
        return sorted(int(uid) for uid in raw.split())

    # -- discovery ----------------------------------------------------------

    async def list_changes(
        self,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> ChangePage:
        if cursor is None:
            return await self._call(lambda conn: self._scan_page(conn, page_token, since, limit))
        return await self._call(lambda conn: self._range_page(conn, cursor, page_token))

    def _range_page(self, conn: imaplib.IMAP4, cursor: str, page_token: Optional[str]) -> ChangePage:
        stored_validity, last_uid = parse_cursor(cursor)
        uidvalidity, _ = self._select(conn)
        if uidvalidity != stored_validity:
            raise CursorExpired(
                f"UIDVALIDITY changed from {stored_validity} to {uidvalidity}", self.provider
            )

        floor = max(last_uid, int(page_token)) if page_token else last_uid
        # "n:*" always matches the highest UID, even when it is below n
        uids = [uid for uid in self._search(conn, f"UID {floor + 1}:*") if uid > floor]
        page = uids[:self.page_size]
        records = [ChangeRecord(native_id=format_cursor(uidvalidity, uid), change_type=CHANGE_CREATED)
                   for uid in page]
        high = page[-1] if page else floor
        more = len(uids) > len(page)
        return ChangePage(
            records=records,
            next_page_token=str(high) if more else None,
            # UIDs only grow, so each page is a safe checkpoint
            new_cursor=format_cursor(uidvalidity, high),
            estimated_total=len(uids) if not page_token else None,
        )

    def _scan_page(self, conn: imaplib.IMAP4, page_token: Optional[str],
                   since: Optional[datetime], limit: Optional[int]) -> ChangePage:
        uidvalidity, uidnext = self._select(conn)
        if page_token:
            token_validity, ceiling, floor = (int(v) for v in page_token.split(":"))
            if token_validity != uidvalidity:
                raise CursorExpired("UIDVALIDITY changed during initial scan", self.provider)
        else:
            ceiling, floor = uidnext, 0

        criteria = f"SINCE {since.strftime('%d-%b-%Y')}" if since else "ALL"
        candidates = [uid for uid in self._search(conn, criteria) if uid < ceiling]
        if limit is not None:
            candidates = candidates[-limit:]

        remaining = [uid for uid in candidates if uid > floor]
        page = remaining[:self.page_size]
        records = [ChangeRecord(native_id=format_cursor(uidvalidity, uid), change_type=CHANGE_CREATED)
                   for uid in page]

        if len(remaining) > len(page):
            return ChangePage(
                records=records,
                next_page_token=f"{uidvalidity}:{ceiling}:{page[-1]}",
                estimated_total=len(candidates) if not page_token else None,
            )
        return ChangePage(
            records=records,
            new_cursor=format_cursor(uidvalidity, ceiling - 1),
            estimated_total=len(candidates) if not page_token else None,
        )

    # -- messages -----------------------------------------------------------

    def _fetch_raw(self, conn: imaplib.IMAP4, native_id: str) -> Tuple[Message, str]:
        validity, uid = parse_cursor(native_id)
        current_validity, _ = self._select(conn)
        if current_validity != validity:
            raise MessageNotFound(f"message {native_id} belongs to an old UIDVALIDITY", self.provider)

        status, data = conn.uid("FETCH", str(uid), "(FLAGS RFC822.SIZE BODY.PEEK[])")
        if status != "OK" or not data or not isinstance(data[0], tuple):
            raise MessageNotFound(f"UID {uid} not found", self.provider)
        meta = data[0][0].decode() if isinstance(data[0][0], bytes) else str(data[0][0])
        return email.message_from_bytes(data[0][1]), meta

    async def fetch_message(self, native_id: str) -> RawMessage:
        message, meta = await self._call(lambda conn: self._fetch_raw(conn, native_id))
        return self._parse_message(native_id, message, meta)

    def _parse_message(self, native_id: str, message: Message, flags: str) -> RawMessage:
        size_match = SIZE_PATTERN.search(flags)
        sender_email, sender_name = parse_single_address(message.get("From"))
        body_text, body_html, attachments = None, None, []

        for index, part in enumerate(message.walk()):
            if part.is_multipart():
                continue
            disposition = (part.get("Content-Disposition") or "").lower()
            filename = decode_mime_header(part.get_filename())
            content_id = part.get("Content-ID")
            content_type = part.get_content_type()

            if filename or disposition.startswith("attachment") or (content_id and not content_type.startswith("text/")):
                payload = part.get_payload(decode=True) or b""
                attachments.append(AttachmentRef(
                    attachment_id=str(index),
                    filename=filename,
                    content_type=content_type,
                    size=len(payload),
                    content_id=content_id.strip("<>") if content_id else None,
                    is_inline=disposition.startswith("inline") or bool(content_id),
                    data=payload,
                ))
                continue

            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            text = decode_part_text(payload, part.get_content_charset())
            if content_type == "text/plain" and body_text is None:
                body_text = text
            elif content_type == "text/html" and body_html is None:
                body_html = text

        sent_at = parse_rfc2822(message.get("Date"))
        preview = body_text or ""
        return RawMessage(
            native_id=native_id,
            thread_id=(message.get("References") or "").split()[0] if message.get("References") else message.get("Message-ID"),
            message_id_header=message.get("Message-ID"),
            in_reply_to=message.get("In-Reply-To"),
            subject=decode_mime_header(message.get("Subject")),
            sender_email=sender_email,
            sender_name=sender_name,
            to=parse_address_list(message.get("To")),
            cc=parse_address_list(message.get("Cc")),
            bcc=parse_address_list(message.get("Bcc")),
            body_text=body_text,
            body_html=body_html,
            snippet=" ".join(preview.split())[:200] or None,
            received_at=sent_at or utc_now(),
            sent_at=sent_at,
            labels=[self.folder],
            folder=self.folder,
            is_read="\\Seen" in flags,
            is_starred="\\Flagged" in flags,
            is_deleted="\\Deleted" in flags,
            size_bytes=int(size_match.group(1)) if size_match else None,
            attachments=attachments,
        )

    async def fetch_attachment(self, native_id: str, attachment_id: str) -> bytes:
        message, _ = await self._call(lambda conn: self._fetch_raw(conn, native_id))
        for index, part in enumerate(message.walk()):
            if str(index) == attachment_id:
                return part.get_payload(decode=True) or b""
        raise MessageNotFound(f"attachment {attachment_id} not in {native_id}", self.provider)

    async def register_watch(self) -> Optional[WatchHandle]:
        return None

    async def cancel_watch(self, handle: WatchHandle) -> None:
        return None
