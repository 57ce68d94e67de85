"""
Shared fixtures.

Settings are read at import time, so the environment is prepared before
anything from ``mailsync`` is imported: a throwaway SQLite file and blob
directory, a fixed secret key, and no push configuration.
"""
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="mailsync-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ATTACHMENT_STORAGE_DIR"] = os.path.join(_TMP_DIR, "blobs")
os.environ["API_KEY"] = ""
os.environ["GMAIL_PUSH_VERIFICATION_TOKEN"] = ""
os.environ["GMAIL_PUBSUB_TOPIC"] = ""
os.environ["GRAPH_NOTIFICATION_URL"] = ""

from datetime import timedelta  # noqa: E402
from typing import Dict, List, Optional  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from mailsync.db import database  # noqa: E402
from mailsync.db.models import EmailAccount  # noqa: E402
from mailsync.services.attachment_storage import BlobStore  # noqa: E402
from mailsync.services.encryption_service import encryption_service  # noqa: E402
from mailsync.services.providers.base import (  # noqa: E402
    ChangePage,
    Credential,
    MessageNotFound,
    RawMessage,
    WatchHandle,
)
from mailsync.services.retry import RetryConfig, RetryPolicy  # noqa: E402
from mailsync.utils.datetime_utils import utc_now  # noqa: E402


class FakeProviderClient:
    """
    Scripted provider.

    ``pages`` is consumed in order by ``list_changes``; an entry that is an
    exception instance is raised instead of returned. Messages are looked up
    in ``messages``; unknown ids raise MessageNotFound.
    """

    def __init__(self, provider: str = "gmail", pages: Optional[List] = None,
                 messages: Optional[Dict[str, RawMessage]] = None):
        self.provider = provider
        self.pages = list(pages or [])
        self.messages = dict(messages or {})
        self.attachments: Dict[tuple, object] = {}
        self.fetch_errors: Dict[str, List[Exception]] = {}
        self.list_calls: List[dict] = []
        self.fetched: List[str] = []
        self.credential: Optional[Credential] = None
        self.profile_email: Optional[str] = None
        self.watch: Optional[WatchHandle] = None
        self.cancelled: List[WatchHandle] = []
        self.closed = False
        self.before_fetch = None

    def update_credential(self, credential: Credential) -> None:
        self.credential = credential

    async def authenticate(self) -> Credential:
        return self.credential

    async def list_changes(self, cursor, page_token=None, since=None, limit=None) -> ChangePage:
        self.list_calls.append({"cursor": cursor, "page_token": page_token, "since": since, "limit": limit})
        if not self.pages:
            return ChangePage(records=[], new_cursor=cursor)
        item = self.pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_message(self, native_id: str) -> RawMessage:
        if self.before_fetch is not None:
            await self.before_fetch(native_id)
        errors = self.fetch_errors.get(native_id)
        if errors:
            raise errors.pop(0)
        self.fetched.append(native_id)
        if native_id not in self.messages:
            raise MessageNotFound(f"{native_id} missing", self.provider)
        return self.messages[native_id]

    async def fetch_attachment(self, native_id: str, attachment_id: str) -> bytes:
        value = self.attachments.get((native_id, attachment_id))
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise MessageNotFound(f"attachment {attachment_id} missing", self.provider)
        return value

    async def register_watch(self):
        return self.watch

    async def cancel_watch(self, handle: WatchHandle) -> None:
        self.cancelled.append(handle)

    async def close(self) -> None:
        self.closed = True


def make_raw(native_id: str, subject: str = "Hello", body: str = "Body text", **kwargs) -> RawMessage:
    defaults = dict(
        native_id=native_id,
        thread_id=f"thread-{native_id}",
        subject=subject,
        sender_email="alice@example.com",
        sender_name="Alice",
        to=[{"email": "bob@example.com", "name": "Bob"}],
        body_text=body,
        received_at=utc_now(),
        sent_at=utc_now().replace(microsecond=0),
        labels=["INBOX"],
        folder="INBOX",
    )
    defaults.update(kwargs)
    return RawMessage(**defaults)


def oauth_credential(expires_in_seconds: int = 3600, refresh_token: Optional[str] = "refresh-1",
                     access_token: str = "access-1") -> Credential:
    return Credential(
        kind="oauth2",
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=utc_now() + timedelta(seconds=expires_in_seconds),
    )


@pytest_asyncio.fixture
async def session_factory():
    """Fresh schema for every test."""
    await database.drop_tables()
    await database.create_tables()
    yield database.session_factory


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(root=str(tmp_path / "blobs"))


@pytest.fixture
def fast_retry():
    """Retry policy that never actually sleeps."""
    sleep = AsyncMock()
    policy = RetryPolicy(RetryConfig(max_attempts=3, initial_delay=0.01, jitter=False), sleep=sleep)
    policy.sleep_mock = sleep
    return policy


@pytest.fixture
def make_account(session_factory):
    """Factory creating an active account with an encrypted credential."""

    async def _make(provider: str = "gmail", credential: Optional[Credential] = None, **fields):
        credential = credential or oauth_credential()
        async with session_factory() as session:
            account = EmailAccount(
                tenant_id=fields.pop("tenant_id", "tenant-1"),
                provider=provider,
                email_address=fields.pop("email_address", f"user@{provider}.example.com"),
                is_active=fields.pop("is_active", True),
                encrypted_credentials=encryption_service.encrypt_json(credential.to_dict()),
                credentials_version=1,
                token_expires_at=credential.expires_at,
                **fields,
            )
            session.add(account)
            await session.commit()
            return account.id

    return _make


async def load_account(session_factory, account_id) -> EmailAccount:
    async with session_factory() as session:
        return await session.get(EmailAccount, account_id)
