"""
Mailbox sync orchestration.

Strategy per call to SyncOrchestrator.sync():
1. A pending full-sync checkpoint always means: resume the full sync.
2. Otherwise, with a stored historyId, walk Gmail history (incremental).
   An expired cursor (or any other non-transient failure) falls back to
3. a fresh full sync over the configured label.

Full sync fans out over a WorkerPool; the checkpoint (oldest internalDate
processed) is written periodically and whenever a run ends badly, so the
next run resumes instead of starting over. Only this module writes
MailSync rows.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import METADATA_POLICY_FAIL, SyncConfig
from app.database import from_epoch_ms, utcnow
from app.services.cancellation import CancellationScope
from app.services.checkpoint import CheckpointTracker
from app.services.db_service import CredentialStore, MessageStore, SyncStateStore
from app.services.errors import (
    CredentialInactive,
    CredentialInvalid,
    CursorExpired,
    MailSyncError,
    PartialSyncError,
    RateLimited,
    RecoveryFailed,
    RemoteAPIError,
    SyncCancelled,
)
from app.services.gmail_service import GmailClient
from app.services.message_processor import MessageProcessor
from app.services.recovery_service import RecoveryService
from app.services.token_provider import TokenProvider
from app.services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

STRATEGY_FULL = "full"
STRATEGY_FULL_RESUME = "full_resume"
STRATEGY_INCREMENTAL = "incremental"

MAX_STATUS_ERROR_LENGTH = 200


@dataclass
class SyncStats:
    """Counters for one sync call. Not persisted."""
    strategy: str = ""
    messages_processed: int = 0
    messages_failed: int = 0
    messages_skipped: int = 0
    start_time: datetime = field(default_factory=utcnow)
    duration: timedelta = timedelta(0)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, processed: int = 0, failed: int = 0, skipped: int = 0) -> None:
        with self._lock:
            self.messages_processed += processed
            self.messages_failed += failed
            self.messages_skipped += skipped

    def finish(self) -> None:
        self.duration = utcnow() - self.start_time

    def as_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "messages_skipped": self.messages_skipped,
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration.total_seconds(),
        }


def _is_gone(error: BaseException) -> bool:
    """Message deleted between listing/history and fetch."""
    return isinstance(error, RemoteAPIError) and error.status == 404


class SyncOrchestrator:
    """
    Runs syncs for MailSync rows.

    All collaborators are injected so tests can swap in fakes.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        state_store: SyncStateStore,
        message_store: MessageStore,
        recovery: Optional[RecoveryService] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.token_provider = token_provider
        self.state_store = state_store
        self.message_store = message_store
        self.recovery = recovery or RecoveryService(message_store)
        self.config = config or SyncConfig()

    # ============ ENTRY POINT ============

    def sync(self, mail_sync_id: int) -> SyncStats:
        """
        Synchronize one mailbox.

        Returns:
            SyncStats for the run

        Raises:
            MailSyncError subclass; the attempt's stats are on error.stats
        """
        scope = CancellationScope(self.config.timeout)
        stats = SyncStats()

        mail_sync = self.state_store.load(mail_sync_id)
        if mail_sync is None:
            raise MailSyncError(f"Mail sync {mail_sync_id} not found", stats=stats)
        if not mail_sync.is_active:
            raise CredentialInactive(
                f"Mail sync {mail_sync_id} is inactive - please re-authenticate", stats=stats
            )

        try:
            self._run(mail_sync, scope, stats)
        except MailSyncError as e:
            stats.finish()
            e.stats = stats
            raise

        stats.finish()
        logger.info(
            f"✅ {stats.strategy} sync completed for mail sync {mail_sync_id}: "
            f"processed {stats.messages_processed}, failed {stats.messages_failed}, "
            f"skipped {stats.messages_skipped} in {stats.duration}"
        )
        return stats

    def _run(self, mail_sync, scope: CancellationScope, stats: SyncStats) -> None:
        try:
            client = self.token_provider.get_client(mail_sync.token_id, scope)
            processor = MessageProcessor(client, self.message_store, mail_sync)

            # An unfinished full sync leaves local storage incomplete relative
            # to any cursor, so it always runs first
            if mail_sync.last_full_sync_checkpoint is not None:
                stats.strategy = STRATEGY_FULL_RESUME
                logger.info(
                    f"Resuming interrupted full sync for mail sync {mail_sync.id} "
                    f"from checkpoint {mail_sync.last_full_sync_checkpoint}"
                )
                self._full_sync(client, processor, mail_sync, scope, stats,
                                resume_from=mail_sync.last_full_sync_checkpoint)
                return

            if mail_sync.last_sync_state:
                stats.strategy = STRATEGY_INCREMENTAL
                logger.info(f"Attempting incremental sync for mail sync {mail_sync.id}")
                try:
                    self._incremental_sync(client, processor, mail_sync, scope, stats)
                    return
                except CursorExpired as e:
                    logger.warning(f"{e} - falling back to full sync")
                except (RateLimited, CredentialInvalid, SyncCancelled, RecoveryFailed):
                    raise
                except MailSyncError as e:
                    logger.error(f"Incremental sync failed, falling back to full sync: {e}")

            stats.strategy = STRATEGY_FULL
            logger.info(f"Starting full sync for mail sync {mail_sync.id}")
            self._full_sync(client, processor, mail_sync, scope, stats, resume_from=None)

        except CredentialInvalid as e:
            self._deactivate(mail_sync.id)
            if isinstance(e, CredentialInactive):
                raise
            raise CredentialInactive(
                f"Mail sync is inactive: token expired - please re-authenticate: {e}"
            ) from e

    # ============ FULL SYNC ============

    def _full_sync(
        self,
        client: GmailClient,
        processor: MessageProcessor,
        mail_sync,
        scope: CancellationScope,
        stats: SyncStats,
        resume_from: Optional[datetime],
    ) -> None:
        # stats may already hold counts from an abandoned incremental walk
        failed_before = stats.messages_failed
        processed_before = stats.messages_processed
        tracker = CheckpointTracker(self.config.checkpoint_interval, start=resume_from)
        pool_scope = scope.child()
        pool = WorkerPool(self.config.num_workers, self.config.queue_size, pool_scope)

        listing_errors: list[MailSyncError] = []
        fatal_errors: list[MailSyncError] = []
        fatal_lock = threading.Lock()

        def list_messages():
            page_token = None
            while not pool_scope.cancelled:
                try:
                    ids, page_token = client.list_messages(
                        self.config.label, page_token, self.config.page_size
                    )
                except RateLimited as e:
                    logger.warning("Gmail API rate limit hit during message listing, will retry on next sync")
                    listing_errors.append(e)
                    return
                except MailSyncError as e:
                    logger.error(f"Failed to list messages: {e}")
                    listing_errors.append(e)
                    return
                yield from ids
                if not page_token:
                    return

        def handle(message_id: str):
            try:
                if resume_from is not None and self._already_processed(client, message_id, resume_from):
                    stats.add(skipped=1)
                    return
                timestamp = processor.process(message_id)
            except Exception as e:
                if _is_gone(e):
                    logger.info(f"Message {message_id} no longer exists, skipping")
                    stats.add(skipped=1)
                    return
                stats.add(failed=1)
                logger.error(f"Failed to process message {message_id}: {e}")
                if isinstance(e, (CredentialInvalid, RateLimited)):
                    # No point hammering the API with the rest of the batch
                    with fatal_lock:
                        if not any(type(f) is type(e) for f in fatal_errors):
                            fatal_errors.append(e)
                    pool_scope.cancel()
                raise
            stats.add(processed=1)
            tracker.record(timestamp)

        def flush_checkpoint():
            checkpoint = tracker.take_flush()
            if checkpoint is not None:
                self._save_checkpoint(mail_sync.id, checkpoint, stats)

        pool_errors = pool.run(list_messages(), handle, on_tick=flush_checkpoint)

        cancelled = scope.cancelled
        failed = stats.messages_failed - failed_before
        processed = stats.messages_processed - processed_before
        if not (listing_errors or fatal_errors or pool_errors or cancelled or failed):
            cursor = self._fetch_cursor(client, mail_sync.id)
            self.state_store.update(
                mail_sync.id,
                last_full_sync_checkpoint=None,
                last_sync_state=cursor,
                last_synced=utcnow(),
            )
            logger.info(
                f"Full sync completed successfully, cleared checkpoint and set history_id to {cursor}"
            )
            return

        # Keep (and tighten) the checkpoint so the next attempt resumes
        oldest = tracker.oldest
        if oldest is None and processed > 0:
            oldest = self.recovery.recover_checkpoint(mail_sync.id)
        if oldest is not None:
            self._save_checkpoint(mail_sync.id, oldest, stats)
            logger.info(
                f"Full sync did not finish, preserving checkpoint at {oldest} for resume "
                f"(processed {processed} messages)"
            )

        raise self._select_error(fatal_errors, listing_errors, pool_errors, cancelled, failed)

    def _already_processed(self, client: GmailClient, message_id: str, checkpoint: datetime) -> bool:
        """
        Cheap resume filter: Gmail lists newest first, so anything not older
        than the checkpoint was handled by the interrupted run.
        """
        try:
            metadata = client.get_message(message_id, metadata_only=True)
            message_date = from_epoch_ms(metadata["internalDate"])
        except (MailSyncError, KeyError, TypeError, ValueError) as e:
            if _is_gone(e) or self.config.metadata_failure_policy == METADATA_POLICY_FAIL:
                raise
            logger.warning(f"Failed to get metadata for {message_id}, processing anyway: {e}")
            return False
        return not message_date < checkpoint

    @staticmethod
    def _select_error(fatal_errors, listing_errors, pool_errors, cancelled, failed) -> MailSyncError:
        """First error of the most significant class."""
        for error in fatal_errors:
            if isinstance(error, CredentialInvalid):
                return error
        for error in fatal_errors + listing_errors:
            if isinstance(error, RateLimited):
                return error
        if cancelled:
            return SyncCancelled("Full sync cancelled or timed out; checkpoint preserved")
        if listing_errors:
            return listing_errors[0]
        first = next((e for e in pool_errors if isinstance(e, MailSyncError)), None)
        message = f"{failed} message(s) failed during full sync; checkpoint preserved"
        if first is not None:
            message += f" (first error: {first})"
        return PartialSyncError(message)

    # ============ INCREMENTAL SYNC ============

    def _incremental_sync(
        self,
        client: GmailClient,
        processor: MessageProcessor,
        mail_sync,
        scope: CancellationScope,
        stats: SyncStats,
    ) -> None:
        cursor = str(mail_sync.last_sync_state)
        if not cursor.isdigit():
            raise CursorExpired(f"Invalid history ID {cursor!r}")

        processed_ids: set[str] = set()
        page_token = None

        while True:
            scope.check()
            events, page_token = client.list_history(cursor, page_token)

            for event in events:
                if event.message_id in processed_ids:
                    continue
                processed_ids.add(event.message_id)
                scope.check()
                self._process_history_event(processor, event, stats)

            if not page_token:
                break

        new_cursor = self._fetch_cursor(client, mail_sync.id)
        self.state_store.update(mail_sync.id, last_sync_state=new_cursor, last_synced=utcnow())

    def _process_history_event(self, processor: MessageProcessor, event, stats: SyncStats) -> None:
        try:
            processor.process(event.message_id)
        except (CredentialInvalid, RateLimited):
            raise
        except Exception as e:
            if _is_gone(e):
                logger.info(f"Message {event.message_id} from history no longer exists, skipping")
                stats.add(skipped=1)
                return
            stats.add(failed=1)
            logger.error(f"Error processing {event.kind} event for message {event.message_id}: {e}")
            return
        stats.add(processed=1)

    # ============ STATE HELPERS ============

    def _fetch_cursor(self, client: GmailClient, mail_sync_id: int) -> str:
        """Fresh historyId, falling back to the newest stored message's one."""
        try:
            return client.get_profile()
        except CredentialInvalid:
            raise
        except MailSyncError as e:
            logger.warning(
                f"Failed to get profile for mail sync {mail_sync_id}, attempting recovery from messages: {e}"
            )
        return self.recovery.recover_cursor(mail_sync_id)

    def _save_checkpoint(self, mail_sync_id: int, checkpoint: datetime, stats: SyncStats) -> None:
        try:
            self.state_store.update(mail_sync_id, last_full_sync_checkpoint=checkpoint)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update full sync checkpoint for mail sync {mail_sync_id}: {e}")
            return
        logger.info(
            f"Updated full sync checkpoint to {checkpoint} (processed {stats.messages_processed} messages)"
        )

    def _deactivate(self, mail_sync_id: int) -> None:
        logger.error(f"Credential rejected for mail sync {mail_sync_id}, marking it inactive")
        self.state_store.update(mail_sync_id, is_active=False, sync_status="inactive")


# ============ JOBS ============

def format_failed_status(error: BaseException) -> str:
    message = str(error)
    if len(message) > MAX_STATUS_ERROR_LENGTH:
        message = message[:MAX_STATUS_ERROR_LENGTH] + "..."
    return f"failed: {message}"


def run_sync_job(orchestrator: SyncOrchestrator, mail_sync_id: int) -> Optional[SyncStats]:
    """
    Run a sync and record its outcome in MailSync.sync_status.

    Used by the "sync now" endpoint and by stale-sync resumption.
    """
    state_store = orchestrator.state_store
    state_store.update(mail_sync_id, sync_status="in_progress")

    try:
        stats = orchestrator.sync(mail_sync_id)
    except CredentialInvalid as e:
        logger.error(f"Mail sync {mail_sync_id} needs re-authentication: {e}")
        state_store.update(mail_sync_id, sync_status="inactive")
        return None
    except MailSyncError as e:
        logger.error(f"Mail sync {mail_sync_id} failed: {e}")
        state_store.update(mail_sync_id, sync_status=format_failed_status(e))
        return None
    except Exception as e:
        logger.exception(f"Mail sync {mail_sync_id} crashed")
        state_store.update(mail_sync_id, sync_status=format_failed_status(e))
        return None

    state_store.update(mail_sync_id, sync_status="completed")
    return stats


def _launch_in_thread(target: Callable, *args) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


def resume_stale_syncs(
    orchestrator: SyncOrchestrator,
    launch: Callable = _launch_in_thread,
) -> int:
    """
    Resume syncs left "in_progress" by a crash or restart.

    - inactive rows are set to "inactive" and skipped
    - a pending checkpoint resumes the full sync (the orchestrator enforces it)
    - rows with neither checkpoint nor cursor but with stored messages get a
      checkpoint recovered from the oldest stored message first

    Returns:
        Number of syncs resumed
    """
    state_store = orchestrator.state_store
    logger.info("Checking for stale mail sync statuses...")

    stale_syncs = state_store.find_by_status("in_progress")
    if not stale_syncs:
        logger.info("No stale mail sync statuses found")
        return 0

    logger.info(f"Found {len(stale_syncs)} stale mail sync(s), resuming")

    resumed = 0
    for mail_sync in stale_syncs:
        if not mail_sync.is_active:
            logger.info(f"Skipping inactive mail sync {mail_sync.id} (user: {mail_sync.user})")
            state_store.update(mail_sync.id, sync_status="inactive")
            continue

        if mail_sync.last_full_sync_checkpoint is not None:
            logger.info(
                f"Mail sync {mail_sync.id} has full sync checkpoint at "
                f"{mail_sync.last_full_sync_checkpoint}, will resume full sync"
            )
        elif not mail_sync.last_sync_state:
            recovered = orchestrator.recovery.recover_checkpoint(mail_sync.id)
            if recovered is not None:
                state_store.update(mail_sync.id, last_full_sync_checkpoint=recovered)
                logger.info(
                    f"Recovered full sync checkpoint from oldest message for mail sync "
                    f"{mail_sync.id}: {recovered}"
                )
            else:
                logger.info(f"Mail sync {mail_sync.id} has no sync state and no messages - fresh full sync")

        launch(run_sync_job, orchestrator, mail_sync.id)
        resumed += 1

    logger.info(f"Resumed {resumed}/{len(stale_syncs)} stale mail syncs")
    return resumed


def build_orchestrator(config: Optional[SyncConfig] = None) -> SyncOrchestrator:
    """Orchestrator wired to the application database."""
    config = config or SyncConfig.from_env()
    message_store = MessageStore()
    return SyncOrchestrator(
        token_provider=TokenProvider(CredentialStore(), http_timeout=config.http_timeout),
        state_store=SyncStateStore(),
        message_store=message_store,
        recovery=RecoveryService(message_store),
        config=config,
    )
