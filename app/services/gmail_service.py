"""
Gmail API client used by the sync engine.

Thin wrapper over googleapiclient exposing only what syncing needs:
listing a label, fetching messages (full or minimal), the profile's
current historyId, the history walk, and the label catalog. Provider
errors are translated into the typed errors in app.services.errors.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import httplib2
import google_auth_httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.services.errors import (
    CredentialInvalid,
    CursorExpired,
    MailSyncError,
    RateLimited,
    RemoteAPIError,
    TransportError,
)

logger = logging.getLogger(__name__)

USER_ID = "me"

MESSAGE_ADDED = "message_added"
LABEL_CHANGED = "label_changed"

RATE_LIMIT_MARKERS = (
    "ratelimitexceeded",
    "userratelimitexceeded",
    "rate limit",
    "quota exceeded",
    "quotaexceeded",
)
CURSOR_EXPIRED_MARKERS = ("historyidnotfound", "history id not found")


@dataclass(frozen=True)
class HistoryEvent:
    """One entry of the history walk, in provider order."""
    kind: str
    message_id: str


def _error_text(error: HttpError) -> str:
    parts = [str(getattr(error, "reason", "") or "")]
    details = getattr(error, "error_details", None)
    if details:
        parts.append(str(details))
    content = getattr(error, "content", b"")
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="ignore")
    parts.append(str(content or ""))
    return " ".join(parts).lower()


def translate_http_error(error: HttpError, history: bool = False) -> MailSyncError:
    """
    Map a googleapiclient HttpError onto the sync error taxonomy.

    Args:
        error: The raised HttpError
        history: True when the failing call was history.list, where a 404
            means the start historyId is no longer available

    Returns:
        The typed error to raise (chained by the caller)
    """
    try:
        status = int(error.resp.status)
    except (AttributeError, TypeError, ValueError):
        status = None
    text = _error_text(error)

    if status == 429 or any(marker in text for marker in RATE_LIMIT_MARKERS):
        return RateLimited(f"Gmail rate limit exceeded: {error}")
    if history and (status == 404 or any(marker in text for marker in CURSOR_EXPIRED_MARKERS)):
        return CursorExpired(f"History ID expired or not found: {error}")
    if status == 401:
        return CredentialInvalid(f"Gmail rejected the credential: {error}")
    return RemoteAPIError(f"Gmail API error: {error}", status=status)


class GmailClient:
    """
    Gmail capability interface for one credential.

    httplib2 connections are not thread-safe, so each thread gets its own
    AuthorizedHttp/service pair; all of them share the same credentials
    object, which handles refresh on any request.
    """

    def __init__(self, credentials, http_timeout: float = 60.0):
        self.credentials = credentials
        self._http_timeout = http_timeout
        self._local = threading.local()

    def _service(self):
        service = getattr(self._local, "service", None)
        if service is None:
            authed_http = google_auth_httplib2.AuthorizedHttp(
                self.credentials,
                http=httplib2.Http(timeout=self._http_timeout)
            )
            service = build(
                "gmail", "v1",
                http=authed_http,
                cache_discovery=False,
                static_discovery=True
            )
            self._local.service = service
        return service

    def _execute(self, request, history: bool = False) -> dict:
        try:
            return request.execute()
        except HttpError as e:
            raise translate_http_error(e, history=history) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            # socket timeouts, connection resets, TLS failures
            raise TransportError(f"Gmail transport error: {e}") from e

    def list_messages(self, label: str, page_token: Optional[str] = None,
                      page_size: int = 100) -> tuple[list[str], Optional[str]]:
        """One page of message ids in a label, newest first."""
        kwargs = {"userId": USER_ID, "labelIds": [label], "maxResults": page_size}
        if page_token:
            kwargs["pageToken"] = page_token

        response = self._execute(self._service().users().messages().list(**kwargs))
        ids = [m["id"] for m in response.get("messages", [])]
        return ids, response.get("nextPageToken") or None

    def get_message(self, message_id: str, metadata_only: bool = False) -> dict:
        """
        Fetch a message.

        metadata_only uses format="minimal": no headers or body, but it still
        carries internalDate, which is all the resume filter needs.
        """
        request = self._service().users().messages().get(
            userId=USER_ID,
            id=message_id,
            format="minimal" if metadata_only else "full"
        )
        return self._execute(request)

    def get_profile(self) -> str:
        """Current historyId of the mailbox."""
        response = self._execute(self._service().users().getProfile(userId=USER_ID))
        return str(response["historyId"])

    def list_history(self, since_cursor: str,
                     page_token: Optional[str] = None) -> tuple[list[HistoryEvent], Optional[str]]:
        """
        One page of history since a cursor, flattened into events.

        Order is preserved: records as returned, and within a record the
        added messages before label changes.
        """
        kwargs = {"userId": USER_ID, "startHistoryId": since_cursor}
        if page_token:
            kwargs["pageToken"] = page_token

        response = self._execute(
            self._service().users().history().list(**kwargs),
            history=True
        )

        events = []
        for record in response.get("history", []):
            for added in record.get("messagesAdded", []):
                events.append(HistoryEvent(MESSAGE_ADDED, added["message"]["id"]))
            for changed in record.get("labelsAdded", []) + record.get("labelsRemoved", []):
                events.append(HistoryEvent(LABEL_CHANGED, changed["message"]["id"]))

        return events, response.get("nextPageToken") or None

    def list_labels(self) -> dict:
        """Label catalog: {label_id: {"name": ..., "type": ...}}."""
        response = self._execute(self._service().users().labels().list(userId=USER_ID))
        return {
            label["id"]: {"name": label.get("name", ""), "type": label.get("type", "user")}
            for label in response.get("labels", [])
            if label.get("id")
        }
