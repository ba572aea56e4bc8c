"""
Database service layer for the mailbox sync engine.

Three narrow stores, each opening a short session per call so they can be
shared by concurrent sync workers:
- CredentialStore: load / save refreshed / deactivate OAuth tokens
- MessageStore: upsert messages by Gmail message id, recovery lookups
- SyncStateStore: partial-field updates of MailSync rows
"""

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func

from app.database import SessionLocal, utcnow
from app.models.token import MailToken
from app.models.mail_sync import MailSync
from app.models.mail_message import MailMessage

logger = logging.getLogger(__name__)


# ============ CREDENTIALS ============

class CredentialStore:
    """Persistence of OAuth material for TokenProvider."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def load(self, token_id: int) -> Optional[MailToken]:
        with self._session_factory() as db:
            return db.get(MailToken, token_id)

    def save(self, token_id: int, credentials) -> None:
        """
        Store refreshed credentials.

        The refresh token is only overwritten when Google handed out a new one.
        """
        values = {
            "access_token": credentials.token,
            "token_type": "Bearer",
            "expiry": credentials.expiry,
            "last_used": utcnow(),
        }
        if getattr(credentials, "refresh_token", None):
            values["refresh_token"] = credentials.refresh_token

        with self._session_factory() as db:
            db.query(MailToken).filter(MailToken.id == token_id).update(values)
            db.commit()

    def mark_inactive(self, token_id: int) -> None:
        with self._session_factory() as db:
            db.query(MailToken).filter(MailToken.id == token_id).update({"is_active": False})
            db.commit()


# ============ MESSAGES ============

class MessageStore:
    """Message rows, unique by Gmail message id."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def upsert(self, fields: dict) -> None:
        """
        Insert or replace a message keyed by message_id.

        If a row with the same message_id exists its columns are overwritten,
        otherwise a new row is created. Replaying a message never duplicates it.
        """
        message_id = fields["message_id"]

        with self._session_factory() as db:
            existing = db.query(MailMessage).filter(
                MailMessage.message_id == message_id
            ).first()

            if existing:
                for key, value in fields.items():
                    setattr(existing, key, value)
            else:
                db.add(MailMessage(**fields))

            try:
                db.commit()
            except IntegrityError:
                # Race condition - another worker inserted it first
                db.rollback()
                updated = db.query(MailMessage).filter(
                    MailMessage.message_id == message_id
                ).update(fields)
                if not updated:
                    # Not a duplicate, the row itself is invalid
                    raise
                db.commit()

    def find_latest_by_received_date(self, mail_sync_id: int) -> Optional[MailMessage]:
        """Most recently received stored message for a mailbox."""
        with self._session_factory() as db:
            return db.query(MailMessage).filter(
                MailMessage.mail_sync_id == mail_sync_id
            ).order_by(
                MailMessage.received_date.desc(), MailMessage.id.desc()
            ).first()

    def find_oldest_internal_date(self, mail_sync_id: int) -> Optional[datetime]:
        """Oldest internal_date stored for a mailbox, or None."""
        with self._session_factory() as db:
            return db.query(func.min(MailMessage.internal_date)).filter(
                MailMessage.mail_sync_id == mail_sync_id
            ).scalar()


# ============ SYNC STATE ============

class SyncStateStore:
    """
    MailSync rows.

    update() writes only the columns it is given, so the orchestrator can
    touch the checkpoint without clobbering the cursor and vice versa.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def load(self, mail_sync_id: int) -> Optional[MailSync]:
        with self._session_factory() as db:
            return db.get(MailSync, mail_sync_id)

    def update(self, mail_sync_id: int, **fields) -> None:
        if not fields:
            return
        with self._session_factory() as db:
            db.query(MailSync).filter(MailSync.id == mail_sync_id).update(fields)
            db.commit()

    def find_by_status(self, status: str) -> list[MailSync]:
        with self._session_factory() as db:
            return db.query(MailSync).filter(MailSync.sync_status == status).all()

    def upsert_for_user(self, user: str, provider: str, token_id: int, labels: dict) -> MailSync:
        """
        Create or update the mailbox row for (user, provider).

        An existing row gets the new token and label catalog; if it had been
        deactivated it is reactivated and set back to "ready".
        """
        labels_json = json.dumps(labels)

        with self._session_factory() as db:
            existing = db.query(MailSync).filter(
                MailSync.user == user,
                MailSync.provider == provider
            ).first()

            if existing:
                existing.token_id = token_id
                existing.labels = labels_json
                if not existing.is_active:
                    existing.is_active = True
                    existing.sync_status = "ready"
                    logger.info(f"Reactivated mail sync {existing.id} with token {token_id}")
                db.commit()
                db.refresh(existing)
                return existing

            mail_sync = MailSync(
                user=user,
                provider=provider,
                token_id=token_id,
                labels=labels_json,
                last_sync_state="",
                is_active=True,
                sync_status="ready",
            )
            db.add(mail_sync)
            try:
                db.commit()
            except IntegrityError:
                # Race condition - another request created it
                db.rollback()
                return self.upsert_for_user(user, provider, token_id, labels)
            db.refresh(mail_sync)
            return mail_sync


def count_messages(db: Session, mail_sync_id: int) -> int:
    """Message count for a mailbox using a request-scoped session."""
    return db.query(func.count(MailMessage.id)).filter(
        MailMessage.mail_sync_id == mail_sync_id
    ).scalar() or 0
