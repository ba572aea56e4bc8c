"""
Gmail message -> MailMessage row.

Fetches the full message, pulls From/To/Subject, picks a body (HTML wins
over plain text, walking nested multipart parts), classifies labels into
flags, and upserts the row keyed by Gmail message id.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from app.database import from_epoch_ms
from app.services.db_service import MessageStore
from app.services.gmail_service import GmailClient
from app.services.label_service import classify_labels, parse_catalog

logger = logging.getLogger(__name__)


def decode_body_data(data: str) -> str:
    """Decode Gmail's base64url body data (padding is often stripped)."""
    if not data:
        return ""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError) as e:
        logger.error(f"Failed to decode message body: {e}")
        return ""
    return raw.decode("utf-8", errors="ignore")


def _find_text_parts(parts: list) -> tuple[str, str]:
    """First text/html and first text/plain body found, depth first."""
    html_body = plain_body = ""

    for part in parts or []:
        mime_type = part.get("mimeType", "")
        if "parts" in part:
            nested_html, nested_plain = _find_text_parts(part["parts"])
            html_body = html_body or nested_html
            plain_body = plain_body or nested_plain
        elif mime_type == "text/html" and not html_body:
            html_body = decode_body_data(part.get("body", {}).get("data", ""))
        elif mime_type == "text/plain" and not plain_body:
            plain_body = decode_body_data(part.get("body", {}).get("data", ""))

    return html_body, plain_body


def extract_body(payload: Optional[dict]) -> str:
    """
    Extract the message body from a payload.

    Simple messages carry the body on the payload itself. Multipart messages
    are searched recursively and HTML is preferred over plain text.
    """
    if not payload:
        return ""

    data = payload.get("body", {}).get("data")
    if data:
        return decode_body_data(data)

    html_body, plain_body = _find_text_parts(payload.get("parts", []))
    return html_body or plain_body


def extract_header(headers: list, name: str) -> str:
    if not name:
        return ""
    for header in headers or []:
        if header and header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def parse_received_date(headers: list) -> Optional[datetime]:
    """Timestamp of the topmost Received header, as naive UTC."""
    received = extract_header(headers, "Received")
    if ";" not in received:
        return None
    try:
        parsed = parsedate_to_datetime(received.rsplit(";", 1)[1].strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class MessageProcessor:
    """Processes single Gmail messages for one mailbox."""

    def __init__(self, client: GmailClient, message_store: MessageStore, mail_sync):
        self.client = client
        self.message_store = message_store
        self.mail_sync_id = mail_sync.id
        self.user = mail_sync.user
        self.catalog = parse_catalog(mail_sync.labels)

    def normalize(self, msg: dict) -> dict:
        """Column values for a full-format Gmail message."""
        payload = msg.get("payload", {}) or {}
        headers = payload.get("headers", [])
        label_ids = msg.get("labelIds", [])

        internal_date = from_epoch_ms(msg.get("internalDate", 0))
        received_date = parse_received_date(headers) or internal_date

        external_data = {
            "history_id": msg.get("historyId"),
            "label_ids": label_ids,
            "size_estimate": msg.get("sizeEstimate"),
        }

        record = {
            "message_id": msg["id"],
            "thread_id": msg.get("threadId"),
            "mail_sync_id": self.mail_sync_id,
            "user": self.user,
            "from_address": extract_header(headers, "From"),
            "to_address": extract_header(headers, "To"),
            "subject": extract_header(headers, "Subject"),
            "snippet": msg.get("snippet", ""),
            "body": extract_body(payload),
            "internal_date": internal_date,
            "received_date": received_date,
            "external_data": json.dumps(external_data),
        }
        record.update(classify_labels(label_ids, self.catalog).as_columns())
        return record

    def process(self, message_id: str) -> datetime:
        """
        Fetch, normalize and upsert one message.

        Returns:
            The message's internalDate, for checkpoint tracking
        """
        if not message_id:
            raise ValueError("message ID cannot be empty")

        msg = self.client.get_message(message_id)
        record = self.normalize(msg)
        self.message_store.upsert(record)
        return record["internal_date"]
