"""
Gmail label handling.

- fetch/initialize the per-mailbox label catalog
- classify a message's label ids into boolean flags + custom labels
"""

import json
import logging
from dataclasses import dataclass, field

from app.services.db_service import SyncStateStore
from app.services.token_provider import TokenProvider

logger = logging.getLogger(__name__)

# System label id -> MailMessage flag column
SYSTEM_LABEL_FLAGS = {
    "UNREAD": "is_unread",
    "IMPORTANT": "is_important",
    "STARRED": "is_starred",
    "SPAM": "is_spam",
    "INBOX": "is_inbox",
    "TRASH": "is_trash",
    "DRAFT": "is_draft",
    "SENT": "is_sent",
}


@dataclass
class LabelFlags:
    is_unread: bool = False
    is_important: bool = False
    is_starred: bool = False
    is_spam: bool = False
    is_inbox: bool = False
    is_trash: bool = False
    is_draft: bool = False
    is_sent: bool = False
    custom_labels: dict = field(default_factory=dict)

    def as_columns(self) -> dict:
        columns = {name: getattr(self, name) for name in SYSTEM_LABEL_FLAGS.values()}
        columns["custom_labels"] = json.dumps(self.custom_labels, sort_keys=True)
        return columns


def parse_catalog(labels_json: str | None) -> dict:
    """Label catalog from the MailSync.labels column."""
    if not labels_json:
        return {}
    try:
        return json.loads(labels_json)
    except json.JSONDecodeError:
        logger.warning("Stored label catalog is not valid JSON, ignoring it")
        return {}


def classify_labels(label_ids: list[str], catalog: dict) -> LabelFlags:
    """
    Turn Gmail label ids into flags.

    System labels set their flag. Anything else is kept in custom_labels:
    with its catalog entry when known, otherwise under its own id.
    """
    flags = LabelFlags()

    for label_id in label_ids or []:
        flag = SYSTEM_LABEL_FLAGS.get(label_id)
        if flag:
            setattr(flags, flag, True)
        elif label_id in catalog:
            flags.custom_labels[label_id] = catalog[label_id]
        else:
            flags.custom_labels[label_id] = {"name": label_id, "type": "unknown"}

    return flags


def fetch_labels_for_token(token_provider: TokenProvider, token_id: int) -> dict:
    """Label catalog straight from Gmail for a stored token."""
    client = token_provider.get_client(token_id)
    return client.list_labels()


def initialize_labels(
    token_provider: TokenProvider,
    state_store: SyncStateStore,
    token_id: int,
    user: str,
    provider: str = "gmail",
):
    """
    Create or refresh the MailSync row for a newly linked token.

    Returns:
        MailSync: the created/updated row (reactivated if it was inactive)
    """
    labels = fetch_labels_for_token(token_provider, token_id)
    mail_sync = state_store.upsert_for_user(user, provider, token_id, labels)
    logger.info(f"Initialized labels for user {user}: {len(labels)} labels")
    return mail_sync
