"""
Error taxonomy for the mailbox sync engine.

- CredentialInvalid: terminal, the stored credential is deactivated
- RateLimited: transient, back off and retry on the next scheduled run
- CursorExpired: expected, incremental sync falls back to full sync
- TransportError: transient network/transport failure
- RecoveryFailed: terminal for this attempt only, SyncState left untouched
"""


class MailSyncError(Exception):
    """Base class for every error raised by the sync engine."""

    def __init__(self, message: str = "", *, stats=None):
        super().__init__(message)
        self.stats = stats


class CredentialInvalid(MailSyncError):
    """The credential was rejected and cannot be refreshed."""


class CredentialInactive(CredentialInvalid):
    """The credential is flagged inactive; the user must re-authenticate."""


class RateLimited(MailSyncError):
    """The provider throttled us."""


class CursorExpired(MailSyncError):
    """The stored history cursor is too old or unknown to the provider."""


class TransportError(MailSyncError):
    """Network or transport level failure."""


class RemoteAPIError(MailSyncError):
    """Any other non-success response from the provider."""

    def __init__(self, message: str = "", *, status: int | None = None, stats=None):
        super().__init__(message, stats=stats)
        self.status = status


class SyncCancelled(MailSyncError):
    """The sync's cancellation scope expired or was cancelled."""


class PartialSyncError(MailSyncError):
    """A full sync finished with per-message failures; the checkpoint was kept."""


class RecoveryFailed(MailSyncError):
    """The cursor could not be recovered from stored messages."""


class NoMessagesFound(RecoveryFailed):
    """Nothing stored locally for this mailbox."""


class MetadataMissing(RecoveryFailed):
    """The latest stored message carries no usable history_id."""
