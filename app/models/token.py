"""
MailToken model for stored OAuth credentials.

One row per linked Gmail account. Refreshed access tokens are written
back here while a sync is running, and is_active flips to False once
Google rejects the refresh token for good (revoked / invalid_grant).
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, Index
from sqlalchemy.sql import func
from app.database import Base


class MailToken(Base):
    """OAuth material for one Gmail account."""
    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True)

    user = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="gmail")
    account = Column(String(255))  # Gmail address the token belongs to

    # OAuth material
    access_token = Column(Text)
    token_type = Column(String(32))
    refresh_token = Column(Text)
    expiry = Column(DateTime)  # naive UTC
    scope = Column(String(512))

    is_active = Column(Boolean, nullable=False, default=True)
    last_used = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_tokens_provider_account", "provider", "account"),
    )

    def __repr__(self):
        return f"<MailToken(id={self.id}, account={self.account}, active={self.is_active})>"
