"""
Mailbox provider clients.

``build_provider_client`` is the only place that knows which concrete class
serves which provider name.
"""

from mailsync.services.providers.base import (
    AttachmentRef,
    AuthError,
    ChangePage,
    ChangeRecord,
    Credential,
    CursorExpired,
    MessageNotFound,
    ProviderClient,
    ProviderError,
    RateLimited,
    RawMessage,
    TransientNetwork,
    WatchHandle,
)
from mailsync.services.providers.gmail import GmailClient
from mailsync.services.providers.imap import ImapClient
from mailsync.services.providers.outlook import GraphClient

SUPPORTED_PROVIDERS = ("gmail", "outlook", "imap")
OAUTH_PROVIDERS = ("gmail", "outlook")


def build_provider_client(provider: str, credential: Credential) -> ProviderClient:
    """Create the client for ``provider`` using an already-decrypted credential."""
    if provider == "gmail":
        return GmailClient(credential)
    if provider == "outlook":
        return GraphClient(credential)
    if provider == "imap":
        return ImapClient(credential)
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "AttachmentRef",
    "AuthError",
    "ChangePage",
    "ChangeRecord",
    "Credential",
    "CursorExpired",
    "GmailClient",
    "GraphClient",
    "ImapClient",
    "MessageNotFound",
    "ProviderClient",
    "ProviderError",
    "RateLimited",
    "RawMessage",
    "TransientNetwork",
    "WatchHandle",
    "SUPPORTED_PROVIDERS",
    "OAUTH_PROVIDERS",
    "build_provider_client",
]
