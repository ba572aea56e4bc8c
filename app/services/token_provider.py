"""
OAuth token handling for Gmail sync.

TokenProvider turns a stored MailToken into a ready GmailClient. The
client's credentials are a PersistingCredentials wrapper around
google.oauth2 Credentials: google-auth-httplib2 calls it before every
request (and again after a 401), so a refresh can happen in the middle
of a sync. Whenever the access token changes the new material is written
back to the tokens table before the request continues; an invalid_grant
deactivates the token.
"""

import logging
import threading
from typing import Callable, Optional

from google.auth import credentials as google_credentials
from google.auth import exceptions as google_exceptions
from google.oauth2.credentials import Credentials
from sqlalchemy.exc import SQLAlchemyError

from app.config import GCP_MAIL_CLIENT_ID, GCP_MAIL_CLIENT_SECRET, GOOGLE_TOKEN_URI
from app.services.cancellation import CancellationScope
from app.services.db_service import CredentialStore
from app.services.errors import CredentialInactive, CredentialInvalid, TransportError
from app.services.gmail_service import GmailClient

logger = logging.getLogger(__name__)


class PersistingCredentials(google_credentials.Credentials):
    """
    Credentials that save themselves after every refresh.

    Delegates the actual refresh to the wrapped google.oauth2 credentials.
    Refreshes are serialized because sync workers share one instance.
    """

    def __init__(self, inner: Credentials, token_id: int, store: CredentialStore):
        super().__init__()
        self._inner = inner
        self._token_id = token_id
        self._store = store
        self._lock = threading.RLock()
        self._last_saved_token = inner.token
        self.token = inner.token
        self.expiry = inner.expiry

    @property
    def refresh_token(self):
        return self._inner.refresh_token

    def before_request(self, request, method, url, headers):
        with self._lock:
            if not self.valid:
                self.refresh(request)
        self.apply(headers)

    def refresh(self, request):
        with self._lock:
            try:
                self._inner.refresh(request)
            except google_exceptions.RefreshError as e:
                if "invalid_grant" in str(e).lower():
                    logger.error(
                        f"Invalid grant for token {self._token_id} - token may be expired or revoked"
                    )
                    try:
                        self._store.mark_inactive(self._token_id)
                    except SQLAlchemyError as store_error:
                        logger.error(f"Failed to mark token {self._token_id} as inactive: {store_error}")
                    raise CredentialInactive(
                        "OAuth token is invalid or expired. Please re-authenticate your Gmail account"
                    ) from e
                raise TransportError(f"Token refresh failed for token {self._token_id}: {e}") from e
            except google_exceptions.TransportError as e:
                raise TransportError(f"Token refresh failed for token {self._token_id}: {e}") from e

            self.token = self._inner.token
            self.expiry = self._inner.expiry

            if self.token != self._last_saved_token:
                logger.debug(f"Token refreshed for token ID: {self._token_id}")
                try:
                    self._store.save(self._token_id, self._inner)
                except SQLAlchemyError as e:
                    # The refreshed token is still usable for this run
                    logger.error(f"Failed to save refreshed token for token ID {self._token_id}: {e}")
                else:
                    self._last_saved_token = self.token


class TokenProvider:
    """Builds authenticated Gmail clients from stored tokens."""

    def __init__(
        self,
        credential_store: CredentialStore,
        client_id: str = GCP_MAIL_CLIENT_ID,
        client_secret: str = GCP_MAIL_CLIENT_SECRET,
        token_uri: str = GOOGLE_TOKEN_URI,
        http_timeout: float = 60.0,
        client_factory: Callable[..., GmailClient] = GmailClient,
    ):
        self.credential_store = credential_store
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri
        self._http_timeout = http_timeout
        self._client_factory = client_factory

    def get_credentials(self, token_id: int) -> PersistingCredentials:
        """
        Load a token and wrap it for refresh-with-persist.

        Raises:
            CredentialInvalid: token row does not exist
            CredentialInactive: token is flagged inactive
        """
        if not token_id:
            raise CredentialInvalid("Token ID cannot be empty")

        token = self.credential_store.load(token_id)
        if token is None:
            raise CredentialInvalid(f"Token {token_id} not found")
        if not token.is_active:
            raise CredentialInactive(f"Token {token_id} is marked as inactive - please re-authenticate")

        logger.debug(f"Retrieved OAuth token for token ID: {token_id}, expires at: {token.expiry}")

        inner = Credentials(
            token=token.access_token,
            refresh_token=token.refresh_token,
            token_uri=self._token_uri,
            client_id=self._client_id,
            client_secret=self._client_secret,
            expiry=token.expiry,
        )
        return PersistingCredentials(inner, token_id, self.credential_store)

    def get_client(self, token_id: int, scope: Optional[CancellationScope] = None) -> GmailClient:
        """Authenticated client; its HTTP timeout never outlives the sync's scope."""
        http_timeout = self._http_timeout
        if scope is not None:
            http_timeout = max(1.0, min(http_timeout, scope.remaining()))
        return self._client_factory(self.get_credentials(token_id), http_timeout=http_timeout)
