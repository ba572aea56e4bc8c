"""
MailSync model: persistent sync state for one mailbox.

Used to store:
- last_sync_state: Gmail historyId cursor for incremental sync
- last_full_sync_checkpoint: oldest internalDate reached by an unfinished full sync
- labels: label catalog used to classify messages into flags
- sync_status: ready / in_progress / completed / inactive / "failed: <reason>"
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class MailSync(Base):
    """
    Sync state for one mailbox-credential pair.

    Only the sync orchestrator writes the cursor/checkpoint columns.
    A non-null last_full_sync_checkpoint means the next sync must resume
    the full sync, even if last_sync_state is also set.
    """
    __tablename__ = "mail_syncs"

    id = Column(Integer, primary_key=True)

    user = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="gmail")
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)

    # Sync cursors
    last_sync_state = Column(String(64), default="")
    last_full_sync_checkpoint = Column(DateTime, nullable=True)
    last_synced = Column(DateTime)

    # Label catalog: JSON {label_id: {"name": ..., "type": ...}}
    labels = Column(Text, default="{}")

    is_active = Column(Boolean, nullable=False, default=True)
    sync_status = Column(String(255), default="ready", index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_mail_syncs_user_provider", "user", "provider", unique=True),
    )

    def __repr__(self):
        return f"<MailSync(id={self.id}, user={self.user}, status={self.sync_status})>"
