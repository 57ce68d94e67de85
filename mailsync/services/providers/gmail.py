"""
Gmail API client.

Incremental discovery walks ``users.history.list`` from the stored history
id. A bounded scan (initial sync, or after the history id expired) lists
recent messages with an ``after:`` query and hands back the history id
captured before the scan started as the new cursor.
"""

import asyncio
import base64
from datetime import datetime
from typing import List, Dict, Any, Optional

import aiohttp

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
    RateLimited,
    RawMessage,
    TransientNetwork,
    WatchHandle,
    CHANGE_CREATED,
    CHANGE_DELETED,
    CHANGE_UPDATED,
    decode_mime_header,
    parse_address_list,
    parse_single_address,
)
from mailsync.utils.datetime_utils import from_epoch_millis
from mailsync.utils.logging import get_logger

logger = get_logger("gmail_client")

SCAN_TOKEN_PREFIX = "gscan"
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class GmailClient:
    """Gmail API v1 over aiohttp."""

    provider = "gmail"
    base_url = "https://gmail.googleapis.com/gmail/v1"

    def __init__(self, credential: Credential, session: Optional[aiohttp.ClientSession] = None,
                 page_size: Optional[int] = None):
        self.credential = credential
        self.session = session
        self._owns_session = session is None
        self.page_size = page_size or settings.sync_page_size
        self.profile_email: Optional[str] = None

    def update_credential(self, credential: Credential) -> None:
        self.credential = credential

    async def close(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def authenticate(self) -> Credential:
        profile = await self._make_api_request("GET", "/users/me/profile")
        self.profile_email = profile.get("emailAddress")
        return self.credential

    async def list_changes(
        self,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> ChangePage:
        if cursor is None:
            return await self._scan_page(page_token, since, limit)
        return await self._history_page(cursor, page_token)

    async def _history_page(self, cursor: str, page_token: Optional[str]) -> ChangePage:
        params = [("startHistoryId", cursor), ("maxResults", self.page_size)]
        params += [("historyTypes", t) for t in HISTORY_TYPES]
        if page_token:
            params.append(("pageToken", page_token))

        try:
            response = await self._make_api_request("GET", "/users/me/history", params=params)
        except MessageNotFound as e:
            raise CursorExpired(f"history id {cursor} is no longer available", self.provider) from e

        records = self._records_from_history(response.get("history", []))
        next_token = response.get("nextPageToken")
        return ChangePage(
            records=records,
            next_page_token=next_token,
            new_cursor=None if next_token else str(response.get("historyId", cursor)),
        )

    def _records_from_history(self, history: List[Dict[str, Any]]) -> List[ChangeRecord]:
        # Collapse to the last change per message, keeping first-seen order
        latest: Dict[str, str] = {}
        for entry in history:
            for item in entry.get("messagesAdded", []):
                latest[item["message"]["id"]] = CHANGE_CREATED
            for key in ("labelsAdded", "labelsRemoved"):
                for item in entry.get(key, []):
                    message_id = item["message"]["id"]
                    if latest.get(message_id) != CHANGE_CREATED:
                        latest[message_id] = CHANGE_UPDATED
            for item in entry.get("messagesDeleted", []):
                latest[item["message"]["id"]] = CHANGE_DELETED
        return [ChangeRecord(native_id=k, change_type=v) for k, v in latest.items()]

    async def _scan_page(self, page_token: Optional[str], since: Optional[datetime],
                         limit: Optional[int]) -> ChangePage:
        estimated_total = None
        if page_token:
            _, start_history_id, yielded, native_token = page_token.split(":", 3)
            yielded = int(yielded)
        else:
            # Capture the position first so nothing arriving mid-scan is skipped later
            profile = await self._make_api_request("GET", "/users/me/profile")
            start_history_id = str(profile["historyId"])
            yielded, native_token = 0, ""

        remaining = None if limit is None else max(limit - yielded, 0)
        records: List[ChangeRecord] = []
        next_native = None

        if remaining != 0:
            params: Dict[str, Any] = {
                "maxResults": self.page_size if remaining is None else min(self.page_size, remaining),
                "includeSpamTrash": "false",
            }
            if since:
                params["q"] = f"after:{int(since.timestamp())}"
            if native_token:
                params["pageToken"] = native_token

            response = await self._make_api_request("GET", "/users/me/messages", params=params)
            records = [ChangeRecord(native_id=m["id"], change_type=CHANGE_CREATED)
                       for m in response.get("messages", [])]
            if remaining is not None:
                records = records[:remaining]
            next_native = response.get("nextPageToken")
            if not page_token:
                estimate = response.get("resultSizeEstimate")
                if estimate is not None:
                    estimated_total = estimate if limit is None else min(estimate, limit)

        yielded += len(records)
        more = next_native is not None and (limit is None or yielded < limit)
        if more:
            return ChangePage(
                records=records,
                next_page_token=f"{SCAN_TOKEN_PREFIX}:{start_history_id}:{yielded}:{next_native}",
                estimated_total=estimated_total,
            )
        return ChangePage(records=records, new_cursor=start_history_id, estimated_total=estimated_total)

    async def fetch_message(self, native_id: str) -> RawMessage:
        data = await self._make_api_request("GET", f"/users/me/messages/{native_id}", params={"format": "full"})
        return self._parse_message(data)

    def _parse_message(self, data: Dict[str, Any]) -> RawMessage:
        payload = data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        labels = data.get("labelIds", [])
        sender_email, sender_name = parse_single_address(headers.get("from"))

        body = {"text/plain": None, "text/html": None}
        attachments: List[AttachmentRef] = []
        self._walk_parts(payload, body, attachments)

        if "SPAM" in labels:
            folder = "SPAM"
        elif "TRASH" in labels:
            folder = "TRASH"
        elif "INBOX" in labels:
            folder = "INBOX"
        elif "SENT" in labels:
            folder = "SENT"
        else:
            folder = None

        return RawMessage(
            native_id=data["id"],
            thread_id=data.get("threadId"),
            message_id_header=headers.get("message-id"),
            in_reply_to=headers.get("in-reply-to"),
            subject=decode_mime_header(headers.get("subject")),
            sender_email=sender_email,
            sender_name=sender_name,
            to=parse_address_list(headers.get("to")),
            cc=parse_address_list(headers.get("cc")),
            bcc=parse_address_list(headers.get("bcc")),
            body_text=body["text/plain"],
            body_html=body["text/html"],
            snippet=data.get("snippet"),
            received_at=from_epoch_millis(data.get("internalDate")),
            labels=labels,
            folder=folder,
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            is_archived="INBOX" not in labels and "SENT" not in labels and "DRAFT" not in labels,
            is_spam="SPAM" in labels,
            is_deleted="TRASH" in labels,
            size_bytes=data.get("sizeEstimate"),
            attachments=attachments,
        )

    def _walk_parts(self, part: Dict[str, Any], body: Dict[str, Optional[str]],
                    attachments: List[AttachmentRef]) -> None:
        mime_type = part.get("mimeType", "")
        part_body = part.get("body", {})
        filename = part.get("filename")
        headers = {h["name"].lower(): h["value"] for h in part.get("headers", [])}
        content_id = headers.get("content-id")

        if filename or part_body.get("attachmentId"):
            disposition = headers.get("content-disposition", "")
            inline_data = part_body.get("data")
            attachments.append(AttachmentRef(
                # Small parts have no attachmentId; fall back to the MIME part id
                attachment_id=part_body.get("attachmentId") or f"part-{part.get('partId')}",
                filename=filename or None,
                content_type=mime_type or None,
                size=part_body.get("size"),
                content_id=content_id.strip("<>") if content_id else None,
                is_inline=disposition.lower().startswith("inline") or bool(content_id),
                data=_b64url_decode(inline_data) if inline_data else None,
            ))
            return

        if mime_type in body and body[mime_type] is None and part_body.get("data"):
            body[mime_type] = _b64url_decode(part_body["data"]).decode("utf-8", errors="replace")

        for child in part.get("parts", []) or []:
            self._walk_parts(child, body, attachments)

    async def fetch_attachment(self, native_id: str, attachment_id: str) -> bytes:
        if attachment_id.startswith("part-"):
            message = await self.fetch_message(native_id)
            for ref in message.attachments:
                if ref.attachment_id == attachment_id and ref.data is not None:
                    return ref.data
            raise MessageNotFound(f"attachment {attachment_id} not found", self.provider)

        data = await self._make_api_request(
            "GET", f"/users/me/messages/{native_id}/attachments/{attachment_id}"
        )
        return _b64url_decode(data.get("data", ""))

    async def register_watch(self) -> Optional[WatchHandle]:
        if not settings.gmail_pubsub_topic or not settings.gmail_push_verification_token:
            logger.info("Gmail push is not configured; account will be polled")
            return None

        response = await self._make_api_request("POST", "/users/me/watch", data={
            "topicName": settings.gmail_pubsub_topic,
            "labelIds": ["INBOX"],
            "labelFilterBehavior": "include",
        })
        if self.profile_email is None:
            await self.authenticate()
        return WatchHandle(
            channel_id=self.profile_email,
            resource=self.profile_email,
            expires_at=from_epoch_millis(response.get("expiration")),
            secret=settings.gmail_push_verification_token,
            metadata={"history_id": response.get("historyId"), "topic": settings.gmail_pubsub_topic},
        )

    async def cancel_watch(self, handle: WatchHandle) -> None:
        await self._make_api_request("POST", "/users/me/stop")

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        params: Any = None,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Make an authenticated request to the Gmail API."""
        if not self.credential.access_token:
            raise AuthError("No access token available", self.provider)
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
            )

        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self.credential.access_token}"}

        try:
            async with self.session.request(method, url, headers=headers, params=params, json=data) as response:
                return await self._handle_api_response(response)
        except aiohttp.ClientError as e:
            raise TransientNetwork(f"Gmail request failed: {e}", self.provider) from e
        except asyncio.TimeoutError as e:
            raise TransientNetwork("Gmail request timed out", self.provider) from e

    async def _handle_api_response(self, response) -> Dict[str, Any]:
        """Translate Gmail API status codes into provider errors."""
        if response.status < 400:
            if response.status == 204:
                return {}
            return await response.json()

        error_text = await response.text()
        retry_after = response.headers.get("Retry-After")
        if response.status == 401:
            raise AuthError("Gmail API authentication failed", self.provider)
        if response.status == 403:
            if "rateLimitExceeded" in error_text or "userRateLimitExceeded" in error_text:
                raise RateLimited("Gmail API quota exceeded", self.provider, _to_seconds(retry_after))
            raise AuthError("Gmail API access forbidden", self.provider)
        if response.status == 404:
            raise MessageNotFound("Gmail resource not found", self.provider)
        if response.status == 429:
            raise RateLimited("Gmail API rate limit exceeded", self.provider, _to_seconds(retry_after))
        if response.status >= 500:
            raise TransientNetwork(f"Gmail API error {response.status}", self.provider)
        raise ProviderError(f"Gmail API error {response.status}: {error_text[:200]}", self.provider)


def _to_seconds(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
