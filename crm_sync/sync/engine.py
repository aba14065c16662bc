"""
Sync orchestrator: per-source state machine, scheduling and retry backoff.

Each (source, account) pair has one SyncState that moves
idle -> syncing -> idle (success) or error (failure). ``disabled`` is
controlled by the separate ``enabled`` flag. Due states are run one after
another in the calling thread, and a failure in one source never stops the
others.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from crm_sync.errors import (
    ConflictError,
    CRMSyncError,
    NotFoundError,
    PersistenceError,
    SyncCancelledError,
)
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import (
    SyncLog,
    SyncLogStatus,
    SyncState,
    SyncStatus,
    SyncStrategy,
    utcnow,
)
from crm_sync.sync.contact import Contact
from crm_sync.sync.registry import (
    ProviderRegistry,
    SourceConfig,
    SyncContext,
    SyncProvider,
    SyncResult,
)

logger = logging.getLogger(__name__)

# Retry delays indexed by the number of consecutive failures
BACKOFF_INTERVALS = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=1),
)

# Contacts preloaded for contact-driven providers
DEFAULT_CONTACTS_LIMIT = 10000

LOG_CREATION_FAILED = "failed to create sync log"


def backoff_delay(error_count: int) -> timedelta:
    """
    Delay before retrying a source that has failed ``error_count`` times.

    Clamped to the last interval once the ladder is exhausted.
    """
    index = min(max(error_count, 0), len(BACKOFF_INTERVALS) - 1)
    return BACKOFF_INTERVALS[index]


@dataclass
class SyncOutcome:
    """
    Result of one orchestrated sync attempt.

    ``error`` is set when the provider (or contact preloading) failed; the
    failure has already been recorded on the state and log.
    """

    state: SyncState
    log: Optional[SyncLog]
    result: Optional[SyncResult] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None


class SyncOrchestrator:
    """
    Runs provider syncs and maintains their state, cursors and logs.

    Usage:
        orchestrator = SyncOrchestrator(db, registry)
        outcome = orchestrator.trigger_sync('gcontacts', 'me@example.com')
        last_error = orchestrator.run_due_syncs()
    """

    def __init__(
        self,
        database: CRMDatabase,
        registry: ProviderRegistry,
        clock: Callable[[], datetime] = utcnow,
        contacts_limit: int = DEFAULT_CONTACTS_LIMIT,
    ):
        self.database = database
        self.registry = registry
        self.clock = clock
        self.contacts_limit = contacts_limit

    # =========================================================================
    # Running syncs
    # =========================================================================

    def _get_provider(self, source: str) -> SyncProvider:
        provider = self.registry.get(source)
        if provider is None:
            raise NotFoundError(f"Unknown sync source: {source}")
        return provider

    def trigger_sync(
        self,
        source: str,
        account_id: Optional[str] = None,
        ctx: Optional[SyncContext] = None,
    ) -> SyncOutcome:
        """
        Run a sync for a source/account now.

        The sync state is created on first use with the provider's strategy.

        Raises:
            NotFoundError: If no provider is registered for ``source``
            ConflictError: If a sync is already running for the pair
            PersistenceError: If the sync log can't be created
        """
        provider = self._get_provider(source)

        state = self.database.get_sync_state_by_source(source, account_id)
        if state is None:
            state = self.database.create_sync_state(
                source, account_id, strategy=provider.config().strategy
            )
            logger.info(f"Created sync state for {_label(state)}")

        if state.status == SyncStatus.SYNCING:
            raise ConflictError(f"Sync already in progress for {_label(state)}")

        return self.perform_sync(state, provider, ctx)

    def run_due_syncs(self, ctx: Optional[SyncContext] = None) -> Optional[Exception]:
        """
        Run every state that is due, one after another.

        Sources without a registered provider are skipped with a warning.
        A failing source is recorded and the loop moves on.

        Returns:
            The last error encountered, or None if every run succeeded.
            SyncCancelledError if ``ctx`` was cancelled before all runs.
        """
        ctx = ctx or SyncContext()
        states = self.database.list_due_sync_states(self.clock())

        if not states:
            logger.debug("No due syncs found")
            return None

        logger.info(f"Found {len(states)} due sync(s)")

        last_error: Optional[Exception] = None
        for state in states:
            if ctx.cancelled:
                logger.info("Sync run cancelled; remaining sources skipped")
                return SyncCancelledError("sync cancelled")

            provider = self.registry.get(state.source)
            if provider is None:
                logger.warning(f"No provider registered for sync source {state.source}")
                continue

            try:
                outcome = self.perform_sync(state, provider, ctx)
            except CRMSyncError as e:
                logger.error(f"Sync failed for {_label(state)}: {e}")
                last_error = e
                continue

            if outcome.error is not None:
                last_error = outcome.error
                if isinstance(outcome.error, SyncCancelledError):
                    return outcome.error

        return last_error

    def perform_sync(
        self,
        state: SyncState,
        provider: SyncProvider,
        ctx: Optional[SyncContext] = None,
    ) -> SyncOutcome:
        """
        Execute one sync for ``state`` with ``provider``.

        Claims the state with an atomic conditional update, writes a running
        log, runs the provider and records the outcome. The log is completed
        exactly once. Provider failures are returned in the outcome, not
        raised.

        Raises:
            ConflictError: If another run claimed the state first
            PersistenceError: If the sync log can't be created
        """
        ctx = ctx or SyncContext()
        config = provider.config()
        started_at = self.clock()

        if not self.database.begin_sync(state.id, started_at):
            raise ConflictError(f"Sync already in progress for {_label(state)}")

        logger.info(f"Starting sync for {_label(state)} (strategy={config.strategy.value})")

        try:
            log = self.database.create_sync_log(state, started_at)
        except CRMSyncError as e:
            retry_at = started_at + backoff_delay(state.error_count)
            self._safe_mark_error(state, started_at, retry_at, LOG_CREATION_FAILED)
            raise PersistenceError(f"{LOG_CREATION_FAILED}: {e}") from e

        result: Optional[SyncResult] = None
        error: Optional[Exception] = None
        try:
            contacts = self._load_contacts(config)
            ctx.raise_if_cancelled()
            synced = provider.sync(ctx, state, contacts)
        except Exception as e:
            error = e
            updated = self._record_failure(state, log, e, self.clock())
        else:
            result = synced
            updated = self._record_success(state, config, log, synced, self.clock())

        final_log = self._safe_get_log(log)
        return SyncOutcome(state=updated, log=final_log, result=result, error=error)

    def _load_contacts(self, config: SourceConfig) -> list[Contact]:
        if config.strategy != SyncStrategy.CONTACT_DRIVEN:
            return []
        try:
            return self.database.list_contacts(limit=self.contacts_limit)
        except CRMSyncError as e:
            raise PersistenceError(f"failed to list contacts: {e}") from e

    def _record_success(
        self,
        state: SyncState,
        config: SourceConfig,
        log: SyncLog,
        result: SyncResult,
        completed_at: datetime,
    ) -> SyncState:
        next_sync_at = completed_at + config.default_interval
        status = SyncLogStatus.PARTIAL if result.errors else SyncLogStatus.SUCCESS

        updated = None
        try:
            updated = self.database.mark_sync_success(
                state.id, completed_at, next_sync_at, result.new_cursor
            )
        except CRMSyncError as e:
            logger.error(f"Failed to record sync success for {_label(state)}: {e}")

        self._safe_complete_log(
            log,
            status,
            completed_at,
            result,
            "; ".join(result.errors) if result.errors else None,
        )

        logger.info(
            f"Sync completed for {_label(state)}: processed={result.items_processed} "
            f"matched={result.items_matched} created={result.items_created} "
            f"status={status.value} next={next_sync_at.isoformat()}"
        )
        return updated or state

    def _record_failure(
        self, state: SyncState, log: SyncLog, error: Exception, completed_at: datetime
    ) -> SyncState:
        retry_at = completed_at + backoff_delay(state.error_count)
        message = str(error) or error.__class__.__name__

        updated = self._safe_mark_error(state, completed_at, retry_at, message)
        self._safe_complete_log(log, SyncLogStatus.ERROR, completed_at, None, message)

        logger.error(
            f"Sync failed for {_label(state)} (attempt {state.error_count + 1}): {message}; "
            f"retry at {retry_at.isoformat()}"
        )
        return updated or state

    def _safe_mark_error(
        self, state: SyncState, now: datetime, retry_at: datetime, message: str
    ) -> Optional[SyncState]:
        try:
            return self.database.mark_sync_error(state.id, now, retry_at, message)
        except CRMSyncError as e:
            logger.error(f"Failed to record sync error for {_label(state)}: {e}")
            return None

    def _safe_complete_log(
        self,
        log: SyncLog,
        status: SyncLogStatus,
        completed_at: datetime,
        result: Optional[SyncResult],
        error_message: Optional[str],
    ) -> None:
        try:
            self.database.complete_sync_log(
                log.id,
                status,
                completed_at,
                items_processed=result.items_processed if result else 0,
                items_matched=result.items_matched if result else 0,
                items_created=result.items_created if result else 0,
                error_message=error_message,
            )
        except CRMSyncError as e:
            logger.error(f"Failed to complete sync log {log.id}: {e}")

    def _safe_get_log(self, log: SyncLog) -> SyncLog:
        try:
            return self.database.get_sync_log(log.id) or log
        except CRMSyncError:
            return log

    # =========================================================================
    # Status and administration
    # =========================================================================

    def get_sync_status(self) -> list[SyncState]:
        """All sync states, ordered by source and account."""
        return self.database.list_sync_states()

    def get_sync_state(self, state_id: int) -> SyncState:
        state = self.database.get_sync_state(state_id)
        if state is None:
            raise NotFoundError(f"Sync state {state_id} not found")
        return state

    def get_sync_state_by_source(
        self, source: str, account_id: Optional[str] = None
    ) -> Optional[SyncState]:
        return self.database.get_sync_state_by_source(source, account_id)

    def enable_sync(self, state_id: int, enabled: bool) -> SyncState:
        """Enable or disable scheduled syncs for a state (status is unchanged)."""
        state = self.database.set_sync_enabled(state_id, enabled)
        if state is None:
            raise NotFoundError(f"Sync state {state_id} not found")
        logger.info(f"{'Enabled' if enabled else 'Disabled'} sync for {_label(state)}")
        return state

    def reset_sync(self, state_id: int, full: bool = False) -> SyncState:
        """
        Put a state back to idle and make it due now.

        Used to recover a state left 'syncing' by a process that died mid-run.
        ``full`` also drops the cursor so the next run is a full sync.
        """
        state = self.database.reset_sync_state(state_id, clear_cursor=full)
        if state is None:
            raise NotFoundError(f"Sync state {state_id} not found")
        logger.info(f"Reset sync state for {_label(state)}{' (full resync)' if full else ''}")
        return state

    def ensure_sync_states(self, accounts: list[str]) -> list[SyncState]:
        """
        Create missing sync states for every registered provider and account.

        Existing states, including disabled ones, are left untouched.
        """
        states = []
        for config in self.registry.list():
            for account in accounts:
                state = self.database.get_sync_state_by_source(config.name, account)
                if state is None:
                    state = self.database.create_sync_state(
                        config.name, account, strategy=config.strategy
                    )
                    logger.info(f"Created sync state for {_label(state)}")
                states.append(state)
        return states

    def get_statistics(self) -> dict[str, int]:
        return self.database.get_statistics()

    def get_sync_logs(self, state_id: int, limit: int = 20, offset: int = 0) -> list[SyncLog]:
        return self.database.list_sync_logs(state_id, limit, offset)

    def count_sync_logs(self, state_id: int) -> int:
        return self.database.count_sync_logs(state_id)

    def get_recent_sync_logs(self, limit: int = 20) -> list[SyncLog]:
        return self.database.list_recent_sync_logs(limit)

    def delete_old_sync_logs(self, older_than: timedelta) -> int:
        """Delete logs started more than ``older_than`` ago."""
        deleted = self.database.delete_sync_logs_before(self.clock() - older_than)
        logger.info(f"Deleted {deleted} old sync log(s)")
        return deleted

    def available_providers(self) -> list[SourceConfig]:
        return self.registry.list()

    def validate_credentials(
        self,
        source: str,
        account_id: Optional[str] = None,
        ctx: Optional[SyncContext] = None,
    ) -> None:
        """
        Check a provider's credentials for an account.

        Raises:
            NotFoundError: If no provider is registered for ``source``
            CRMSyncError: As raised by the provider
        """
        provider = self._get_provider(source)
        provider.validate_credentials(ctx or SyncContext(), account_id)


def _label(state: SyncState) -> str:
    if state.account_id:
        return f"{state.source} ({state.account_id})"
    return state.source


__all__ = [
    "SyncOrchestrator",
    "SyncOutcome",
    "BACKOFF_INTERVALS",
    "DEFAULT_CONTACTS_LIMIT",
    "backoff_delay",
]
