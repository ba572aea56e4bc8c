"""
Test configuration.

Fakes for the Gmail client and the stores so the orchestrator can be
driven without network or database, plus SQLite fixtures for the real
SQLAlchemy stores.
"""

import base64
import os
import threading
from datetime import datetime
from typing import Optional

# Must be set before app.database creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import SyncConfig
from app.database import Base, from_epoch_ms
from app.models import MailMessage, MailSync, MailToken
from app.services.errors import RemoteAPIError
from app.services.gmail_service import HistoryEvent, LABEL_CHANGED, MESSAGE_ADDED

BASE_MS = 1_700_000_000_000


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str,
    internal_ms: int,
    labels=("INBOX", "UNREAD"),
    history_id="1000",
    subject: Optional[str] = None,
    html: Optional[str] = "<p>hello</p>",
    plain: Optional[str] = "hello",
) -> dict:
    """Full-format Gmail message resource."""
    parts = []
    if plain is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": b64(plain)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": b64(html)}})

    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": list(labels),
        "snippet": f"snippet {message_id}",
        "historyId": history_id,
        "internalDate": str(internal_ms),
        "sizeEstimate": 2048,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "alice@example.com"},
                {"name": "To", "value": "bob@example.com"},
                {"name": "Subject", "value": subject or f"Subject {message_id}"},
            ],
            "parts": parts,
            "body": {"size": 0},
        },
    }


def make_mailbox(count: int, step_ms: int = 60_000) -> list[dict]:
    """count messages, msg-001 newest ... msg-<count> oldest."""
    return [
        make_gmail_message(f"msg-{i:03d}", BASE_MS - i * step_ms, history_id=str(1000 + count - i))
        for i in range(1, count + 1)
    ]


class FakeGmailClient:
    """In-memory stand-in for GmailClient."""

    def __init__(self, messages=(), history_pages=None, profile_cursor="9000", labels=None):
        self.messages = {m["id"]: m for m in messages}
        # Gmail lists newest first
        self.order = sorted(self.messages, key=lambda i: -int(self.messages[i]["internalDate"]))
        self.history_pages = history_pages or []
        self.profile_cursor = profile_cursor
        self.labels = labels or {}

        self.fail_ids: dict[str, Exception] = {}
        self.metadata_fail_ids: dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.history_error: Optional[Exception] = None
        self.profile_error: Optional[Exception] = None

        self._lock = threading.Lock()
        self.full_gets: list[str] = []
        self.metadata_gets: list[str] = []
        self.list_calls = 0
        self.history_calls: list[tuple] = []

    def list_messages(self, label, page_token=None, page_size=100):
        with self._lock:
            self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        start = int(page_token or 0)
        ids = self.order[start:start + page_size]
        end = start + page_size
        return ids, (str(end) if end < len(self.order) else None)

    def get_message(self, message_id, metadata_only=False):
        with self._lock:
            (self.metadata_gets if metadata_only else self.full_gets).append(message_id)
        failures = self.metadata_fail_ids if metadata_only else self.fail_ids
        if message_id in failures:
            raise failures[message_id]
        if message_id not in self.messages:
            raise RemoteAPIError("Requested entity was not found.", status=404)
        message = self.messages[message_id]
        if metadata_only:
            return {"id": message_id, "internalDate": message["internalDate"]}
        return message

    def get_profile(self):
        if self.profile_error is not None:
            raise self.profile_error
        return self.profile_cursor

    def list_history(self, since_cursor, page_token=None):
        self.history_calls.append((since_cursor, page_token))
        if self.history_error is not None:
            raise self.history_error
        index = int(page_token or 0)
        events = self.history_pages[index] if index < len(self.history_pages) else []
        next_token = str(index + 1) if index + 1 < len(self.history_pages) else None
        return events, next_token

    def list_labels(self):
        return dict(self.labels)


class FakeTokenProvider:
    def __init__(self, client=None, error: Optional[Exception] = None):
        self.client = client
        self.error = error
        self.calls = []

    def get_client(self, token_id, scope=None):
        self.calls.append(token_id)
        if self.error is not None:
            raise self.error
        return self.client


class FakeSyncStateStore:
    """Dict-backed SyncStateStore that remembers every update and its thread."""

    def __init__(self, **initial):
        state = {
            "id": 1,
            "user": "user-1",
            "provider": "gmail",
            "token_id": 7,
            "labels": "{}",
            "last_sync_state": "",
            "last_full_sync_checkpoint": None,
            "last_synced": None,
            "is_active": True,
            "sync_status": "ready",
        }
        state.update(initial)
        self.rows = {state["id"]: state}
        self.updates: list[dict] = []
        self.update_threads: set[int] = set()
        self._lock = threading.Lock()

    def add(self, **row):
        base = dict(next(iter(self.rows.values())))
        base.update(row)
        self.rows[base["id"]] = base

    def load(self, mail_sync_id):
        row = self.rows.get(mail_sync_id)
        return MailSync(**row) if row is not None else None

    def update(self, mail_sync_id, **fields):
        with self._lock:
            self.update_threads.add(threading.get_ident())
            self.updates.append(dict(fields))
            self.rows[mail_sync_id].update(fields)

    def find_by_status(self, status):
        return [MailSync(**row) for row in self.rows.values() if row["sync_status"] == status]

    def state(self, mail_sync_id=1) -> dict:
        return self.rows[mail_sync_id]


class FakeMessageStore:
    """Dict-backed MessageStore keyed by message_id."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.upserts = 0
        self._lock = threading.Lock()

    def upsert(self, fields):
        with self._lock:
            self.upserts += 1
            self.rows[fields["message_id"]] = dict(fields)

    def find_latest_by_received_date(self, mail_sync_id):
        rows = [r for r in self.rows.values() if r["mail_sync_id"] == mail_sync_id]
        if not rows:
            return None
        return MailMessage(**max(rows, key=lambda r: r["received_date"]))

    def find_oldest_internal_date(self, mail_sync_id) -> Optional[datetime]:
        dates = [r["internal_date"] for r in self.rows.values() if r["mail_sync_id"] == mail_sync_id]
        return min(dates) if dates else None

    def count(self, mail_sync_id):
        return len([r for r in self.rows.values() if r["mail_sync_id"] == mail_sync_id])


def added(message_id: str) -> HistoryEvent:
    return HistoryEvent(MESSAGE_ADDED, message_id)


def label_changed(message_id: str) -> HistoryEvent:
    return HistoryEvent(LABEL_CHANGED, message_id)


def message_date(message: dict) -> datetime:
    return from_epoch_ms(message["internalDate"])


@pytest.fixture
def fast_config():
    """Small, quick sync configuration."""
    return SyncConfig(
        timeout=30.0,
        num_workers=5,
        checkpoint_interval=50,
        page_size=25,
        queue_size=10,
    )


@pytest.fixture
def session_factory(tmp_path):
    """SQLite database with all tables, shared across threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mailsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def seeded_mail_sync(session_factory):
    """A token and its MailSync row; returns (token_id, mail_sync_id)."""
    with session_factory() as db:
        token = MailToken(
            user="user-1",
            provider="gmail",
            account="user@example.com",
            access_token="access-1",
            token_type="Bearer",
            refresh_token="refresh-1",
            is_active=True,
        )
        db.add(token)
        db.commit()
        mail_sync = MailSync(
            user="user-1",
            provider="gmail",
            token_id=token.id,
            labels="{}",
            last_sync_state="",
            is_active=True,
            sync_status="ready",
        )
        db.add(mail_sync)
        db.commit()
        return token.id, mail_sync.id
