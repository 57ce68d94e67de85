"""
Provider push channel registered for an account.
"""

from sqlalchemy import Column, String, Boolean, TIMESTAMP, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from mailsync.db.database import Base
from mailsync.db.models.types import JSONType


class WebhookSubscription(Base):
    """Gmail watch or Graph subscription. One per account and provider."""
    __tablename__ = "webhook_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(20), nullable=False)

    # Graph subscription id; Gmail watches use "gmail-watch:<account id>"
    subscription_id = Column(String(255), nullable=False, unique=True)
    resource = Column(String(500))  # Graph resource path, or the watched Gmail address
    verification_secret = Column(String(128), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True))
    is_active = Column(Boolean, default=True, nullable=False)
    provider_metadata = Column(JSONType, default=dict)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    renewed_at = Column(TIMESTAMP(timezone=True))

    account = relationship("EmailAccount", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_account_provider_subscription"),
    )

    def to_dict(self):
        return {
            "id": str(self.id),
            "account_id": str(self.account_id),
            "provider": self.provider,
            "subscription_id": self.subscription_id,
            "resource": self.resource,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }
