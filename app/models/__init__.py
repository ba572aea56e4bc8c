"""
SQLAlchemy models for the mailbox sync engine.

This package contains:
- MailToken: Stored OAuth credentials
- MailSync: Per-mailbox sync state (cursor, checkpoint, label catalog)
- MailMessage: Normalized Gmail messages, unique by Gmail message id
"""

from app.models.token import MailToken
from app.models.mail_sync import MailSync
from app.models.mail_message import MailMessage

__all__ = ["MailToken", "MailSync", "MailMessage"]
