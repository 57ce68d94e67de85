"""
Microsoft Graph mail client.

Discovery uses the inbox ``messages/delta`` query. The cursor is the
``@odata.deltaLink`` returned on the last page of a round; intermediate
pages are linked through ``@odata.nextLink``. A delta round must be walked
to its end to obtain a delta link, so a bounded scan keeps paging after the
message cap is reached and simply stops yielding records.
"""

import asyncio
import secrets
from datetime import datetime, timedelta
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
)
from mailsync.utils.datetime_utils import parse_iso, utc_now
from mailsync.utils.logging import get_logger

logger = get_logger("graph_client")

INBOX_DELTA = "/me/mailFolders/inbox/messages/delta"
INBOX_RESOURCE = "me/mailFolders('inbox')/messages"
MESSAGE_FIELDS = (
    "id,conversationId,internetMessageId,subject,from,toRecipients,ccRecipients,bccRecipients,"
    "body,bodyPreview,receivedDateTime,sentDateTime,isRead,flag,parentFolderId,categories,"
    "hasAttachments,internetMessageHeaders"
)
SCAN_TOKEN_SEPARATOR = "|"


def _recipients(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    result = []
    for item in items or []:
        address = item.get("emailAddress", {})
        if address.get("address"):
            result.append({"email": address["address"].lower(), "name": address.get("name") or ""})
    return result


class GraphClient:
    """Outlook / Microsoft 365 mailbox over Graph v1.0."""

    provider = "outlook"
    base_url = "https://graph.microsoft.com/v1.0"

    def __init__(self, credential: Credential, session: Optional[aiohttp.ClientSession] = None,
                 page_size: Optional[int] = None):
        self.credential = credential
        self.session = session
        self._owns_session = session is None
        self.page_size = page_size or settings.sync_page_size
        self.profile_email: Optional[str] = None
        self._folder_names: Dict[str, str] = {}

    def update_credential(self, credential: Credential) -> None:
        self.credential = credential

    async def close(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def authenticate(self) -> Credential:
        profile = await self._make_api_request("GET", "/me", params={"$select": "mail,userPrincipalName"})
        self.profile_email = profile.get("mail") or profile.get("userPrincipalName")
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

        try:
            response = await self._make_api_request("GET", page_token or cursor)
        except MessageNotFound as e:
            raise CursorExpired("delta token no longer valid", self.provider) from e
        records = self._records_from_delta(response.get("value", []), CHANGE_UPDATED)
        return self._page_from_delta(response, records)

    async def _scan_page(self, page_token: Optional[str], since: Optional[datetime],
                         limit: Optional[int]) -> ChangePage:
        if page_token:
            yielded, url = page_token.split(SCAN_TOKEN_SEPARATOR, 1)
            yielded = int(yielded)
            response = await self._make_api_request("GET", url)
        else:
            yielded = 0
            params = {"$select": "id,receivedDateTime"}
            if since:
                params["$filter"] = f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}"
            response = await self._make_api_request(
                "GET", INBOX_DELTA, params=params,
                headers={"Prefer": f"odata.maxpagesize={self.page_size}"},
            )

        records = self._records_from_delta(response.get("value", []), CHANGE_CREATED)
        records = [r for r in records if r.change_type != CHANGE_DELETED]
        if limit is not None:
            records = records[:max(limit - yielded, 0)]
        yielded += len(records)

        page = self._page_from_delta(response, records)
        if page.next_page_token:
            page.next_page_token = f"{yielded}{SCAN_TOKEN_SEPARATOR}{page.next_page_token}"
        return page

    def _records_from_delta(self, items: List[Dict[str, Any]], default_type: str) -> List[ChangeRecord]:
        records = []
        for item in items:
            change_type = CHANGE_DELETED if "@removed" in item else default_type
            records.append(ChangeRecord(native_id=item["id"], change_type=change_type))
        return records

    def _page_from_delta(self, response: Dict[str, Any], records: List[ChangeRecord]) -> ChangePage:
        next_link = response.get("@odata.nextLink")
        if next_link:
            return ChangePage(records=records, next_page_token=next_link)
        delta_link = response.get("@odata.deltaLink")
        if not delta_link:
            raise ProviderError("Graph delta round ended without a delta link", self.provider)
        return ChangePage(records=records, new_cursor=delta_link)

    async def fetch_message(self, native_id: str) -> RawMessage:
        data = await self._make_api_request(
            "GET", f"/me/messages/{native_id}",
            params={"$select": MESSAGE_FIELDS},
            headers={"Prefer": 'outlook.body-content-type="html"'},
        )
        folder = await self._folder_name(data.get("parentFolderId"))
        message = self._parse_message(data, folder)
        if data.get("hasAttachments"):
            message.attachments = await self._list_attachments(native_id)
        return message

    def _parse_message(self, data: Dict[str, Any], folder: Optional[str]) -> RawMessage:
        sender = (data.get("from") or {}).get("emailAddress", {})
        headers = {h["name"].lower(): h["value"] for h in data.get("internetMessageHeaders") or []}
        body = data.get("body") or {}
        is_html = body.get("contentType", "").lower() == "html"
        folder_key = (folder or "").lower()

        return RawMessage(
            native_id=data["id"],
            thread_id=data.get("conversationId"),
            message_id_header=data.get("internetMessageId"),
            in_reply_to=headers.get("in-reply-to"),
            subject=data.get("subject"),
            sender_email=(sender.get("address") or "").lower() or None,
            sender_name=sender.get("name"),
            to=_recipients(data.get("toRecipients")),
            cc=_recipients(data.get("ccRecipients")),
            bcc=_recipients(data.get("bccRecipients")),
            body_text=None if is_html else body.get("content"),
            body_html=body.get("content") if is_html else None,
            snippet=data.get("bodyPreview"),
            received_at=parse_iso(data.get("receivedDateTime")),
            sent_at=parse_iso(data.get("sentDateTime")),
            labels=list(data.get("categories") or []),
            folder=folder,
            is_read=bool(data.get("isRead")),
            is_starred=(data.get("flag") or {}).get("flagStatus") == "flagged",
            is_archived=folder_key == "archive",
            is_spam=folder_key in ("junk email", "junkemail"),
            is_deleted=folder_key in ("deleted items", "deleteditems"),
            attachments=[],
        )

    async def _folder_name(self, folder_id: Optional[str]) -> Optional[str]:
        if not folder_id:
            return None
        if folder_id not in self._folder_names:
            folder = await self._make_api_request(
                "GET", f"/me/mailFolders/{folder_id}", params={"$select": "displayName"}
            )
            self._folder_names[folder_id] = folder.get("displayName")
        return self._folder_names[folder_id]

    async def _list_attachments(self, native_id: str) -> List[AttachmentRef]:
        response = await self._make_api_request(
            "GET", f"/me/messages/{native_id}/attachments",
            params={"$select": "id,name,contentType,size,isInline,contentId"},
        )
        return [
            AttachmentRef(
                attachment_id=item["id"],
                filename=item.get("name"),
                content_type=item.get("contentType"),
                size=item.get("size"),
                content_id=item.get("contentId"),
                is_inline=bool(item.get("isInline")),
            )
            for item in response.get("value", [])
        ]

    async def fetch_attachment(self, native_id: str, attachment_id: str) -> bytes:
        return await self._make_api_request(
            "GET", f"/me/messages/{native_id}/attachments/{attachment_id}/$value", raw=True
        )

    async def register_watch(self) -> Optional[WatchHandle]:
        if not settings.graph_notification_url:
            logger.info("No Graph notification URL configured; Outlook account will be polled")
            return None

        client_state = secrets.token_urlsafe(32)
        expires_at = utc_now() + timedelta(minutes=settings.graph_subscription_minutes)
        response = await self._make_api_request("POST", "/subscriptions", data={
            "changeType": "created,updated,deleted",
            "notificationUrl": settings.graph_notification_url,
            "lifecycleNotificationUrl": settings.graph_notification_url,
            "resource": INBOX_RESOURCE,
            "expirationDateTime": expires_at.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
            "clientState": client_state,
        })
        return WatchHandle(
            channel_id=response["id"],
            resource=response.get("resource", INBOX_RESOURCE),
            expires_at=parse_iso(response.get("expirationDateTime")) or expires_at,
            secret=client_state,
        )

    async def renew_watch(self, handle: WatchHandle) -> WatchHandle:
        """Extend a subscription; raises MessageNotFound when it no longer exists."""
        expires_at = utc_now() + timedelta(minutes=settings.graph_subscription_minutes)
        response = await self._make_api_request("PATCH", f"/subscriptions/{handle.channel_id}", data={
            "expirationDateTime": expires_at.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
        })
        handle.expires_at = parse_iso(response.get("expirationDateTime")) or expires_at
        return handle

    async def cancel_watch(self, handle: WatchHandle) -> None:
        try:
            await self._make_api_request("DELETE", f"/subscriptions/{handle.channel_id}")
        except MessageNotFound:
            logger.info(f"Graph subscription {handle.channel_id} already gone")

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        raw: bool = False,
    ):
        """Make an authenticated Graph request. ``endpoint`` may be an absolute next/delta link."""
        if not self.credential.access_token:
            raise AuthError("No access token available", self.provider)
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
            )

        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        request_headers = {"Authorization": f"Bearer {self.credential.access_token}"}
        request_headers.update(headers or {})

        try:
            async with self.session.request(method, url, headers=request_headers, params=params, json=data) as response:
                return await self._handle_api_response(response, raw)
        except aiohttp.ClientError as e:
            raise TransientNetwork(f"Graph request failed: {e}", self.provider) from e
        except asyncio.TimeoutError as e:
            raise TransientNetwork("Graph request timed out", self.provider) from e

    async def _handle_api_response(self, response, raw: bool = False):
        """Translate Graph status codes into provider errors."""
        if response.status < 400:
            if raw:
                return await response.read()
            if response.status == 204:
                return {}
            return await response.json()

        error_text = await response.text()
        retry_after = response.headers.get("Retry-After")
        if response.status == 401:
            raise AuthError("Graph authentication failed", self.provider)
        if response.status == 403:
            raise AuthError("Graph access forbidden", self.provider)
        if response.status in (404, 410):
            # 410 Gone is how Graph reports an expired delta token
            raise MessageNotFound(f"Graph resource gone ({response.status})", self.provider)
        if response.status == 429:
            raise RateLimited("Graph throttled the request", self.provider,
                              float(retry_after) if retry_after and retry_after.isdigit() else None)
        if response.status >= 500:
            raise TransientNetwork(f"Graph API error {response.status}", self.provider)
        if "syncStateNotFound" in error_text or "resyncRequired" in error_text:
            raise MessageNotFound("Graph delta state not found", self.provider)
        raise ProviderError(f"Graph API error {response.status}: {error_text[:200]}", self.provider)
