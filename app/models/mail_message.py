"""
MailMessage model for synchronized Gmail messages.

Deduplication via unique message_id: every write is an upsert keyed on
the Gmail message id, so replaying a message never creates a second row.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class MailMessage(Base):
    """One Gmail message, normalized."""
    __tablename__ = "mail_messages"

    id = Column(Integer, primary_key=True)

    # Gmail identifier (unique - prevents duplicates)
    message_id = Column(String(64), unique=True, nullable=False, index=True)
    thread_id = Column(String(64), index=True)

    mail_sync_id = Column(Integer, ForeignKey("mail_syncs.id"), nullable=False)
    user = Column(String(64), index=True)

    # Headers and content
    from_address = Column(String(512))
    to_address = Column(Text)
    subject = Column(String(1024))
    snippet = Column(Text)
    body = Column(Text)

    # ============ FLAGS (derived from labels) ============
    is_unread = Column(Boolean, default=False)
    is_important = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    is_spam = Column(Boolean, default=False)
    is_inbox = Column(Boolean, default=False)
    is_trash = Column(Boolean, default=False)
    is_draft = Column(Boolean, default=False)
    is_sent = Column(Boolean, default=False)

    custom_labels = Column(Text, default="{}")  # JSON of non-system labels
    external_data = Column(Text)  # JSON: history_id, label_ids, size_estimate

    # Timestamps
    internal_date = Column(DateTime)  # Gmail internalDate, drives full-sync checkpoints
    received_date = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_mail_messages_sync_received", "mail_sync_id", "received_date"),
        Index("ix_mail_messages_sync_internal", "mail_sync_id", "internal_date"),
    )

    def __repr__(self):
        return f"<MailMessage(id={self.id}, message_id={self.message_id}, subject={self.subject[:30] if self.subject else ''})>"
