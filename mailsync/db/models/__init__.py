from mailsync.db.models.email import EmailAccount, EmailMessage, EmailAttachment, EmailSyncHistory
from mailsync.db.models.webhook_subscription import WebhookSubscription

__all__ = [
    "EmailAccount",
    "EmailMessage",
    "EmailAttachment",
    "EmailSyncHistory",
    "WebhookSubscription",
]
