"""
Recovery of lost sync state from messages already stored.

Every stored message keeps the historyId Gmail reported when it was
processed (external_data.history_id). When the profile call fails after
an otherwise good pass, the newest message's value stands in for the
cursor. The oldest stored internal_date likewise stands in for a full-sync
checkpoint that was never written.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from app.services.db_service import MessageStore
from app.services.errors import MetadataMissing, NoMessagesFound

logger = logging.getLogger(__name__)


class RecoveryService:
    """Rebuilds cursor / checkpoint values from the mail_messages table."""

    def __init__(self, message_store: MessageStore):
        self.message_store = message_store

    def recover_cursor(self, mail_sync_id: int) -> str:
        """
        historyId preserved on the most recently received message.

        Raises:
            NoMessagesFound: mailbox has no stored messages
            MetadataMissing: latest message has no usable history_id
        """
        latest = self.message_store.find_latest_by_received_date(mail_sync_id)
        if latest is None:
            raise NoMessagesFound("No messages found in mailbox - cannot recover checkpoint")

        if not latest.external_data:
            raise MetadataMissing(f"Latest message {latest.message_id} has no external_data")

        try:
            external_data = json.loads(latest.external_data)
        except json.JSONDecodeError as e:
            raise MetadataMissing(f"Failed to parse external_data of {latest.message_id}: {e}") from e

        history_id = external_data.get("history_id") if isinstance(external_data, dict) else None
        if history_id is None or history_id == "":
            raise MetadataMissing(f"history_id not found in external_data of {latest.message_id}")

        # JSON may hold it as a number (possibly float) or a string
        if isinstance(history_id, float):
            history_id = int(history_id)
        cursor = str(history_id)

        logger.info(f"Recovered last_sync_state from message {latest.message_id}: history_id={cursor}")
        return cursor

    def recover_checkpoint(self, mail_sync_id: int) -> Optional[datetime]:
        """Oldest stored internal_date for the mailbox, or None if it is empty."""
        return self.message_store.find_oldest_internal_date(mail_sync_id)
