"""
Sync provider contract and the thread-safe provider registry.

Each external data source (Google Contacts, Gmail, Calendar, ...) implements
SyncProvider. Providers are registered by name in a ProviderRegistry that is
built at startup and handed to the SyncOrchestrator.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from crm_sync.errors import SyncCancelledError
from crm_sync.storage.models import SyncState, SyncStrategy
from crm_sync.sync.contact import Contact


@dataclass(frozen=True)
class SourceConfig:
    """Static description of a sync provider."""

    name: str
    display_name: str
    strategy: SyncStrategy
    supports_multi_account: bool = False
    supports_discovery: bool = False
    default_interval: timedelta = timedelta(hours=1)


@dataclass
class SyncResult:
    """
    Outcome of a provider sync run.

    Attributes:
        items_processed: Records examined
        items_matched: Records linked to an existing contact
        items_created: Records stored as new identities or candidates
        new_cursor: Bookmark for the next incremental run (None keeps the
                    current one)
        metadata: Provider-specific details; a non-empty ``errors`` list
                  marks the run as partial
    """

    items_processed: int = 0
    items_matched: int = 0
    items_created: int = 0
    new_cursor: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_error(self, message: str) -> None:
        """Record a per-item failure that did not abort the run."""
        self.metadata.setdefault("errors", []).append(message)

    @property
    def errors(self) -> list[str]:
        return list(self.metadata.get("errors", []))


class SyncContext:
    """
    Cancellation handle passed through a sync run.

    Providers call ``raise_if_cancelled()`` between pages or items so a
    shutdown request stops in-flight work promptly.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self._cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise SyncCancelledError("sync cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._cancel_event.wait(timeout)


class SyncProvider(ABC):
    """Interface implemented by every external data source."""

    @abstractmethod
    def config(self) -> SourceConfig:
        """Return the provider's static configuration."""

    @abstractmethod
    def sync(
        self, ctx: SyncContext, state: SyncState, contacts: list[Contact]
    ) -> SyncResult:
        """
        Perform one sync run.

        Args:
            ctx: Cancellation context
            state: Current sync state (cursor, account)
            contacts: Contacts to look up; only populated for the
                      contact_driven strategy

        Raises:
            CRMSyncError subclasses (typically TransientError) on failure
        """

    @abstractmethod
    def validate_credentials(self, ctx: SyncContext, account_id: Optional[str]) -> None:
        """Raise if credentials for ``account_id`` are missing or invalid."""

    @property
    def name(self) -> str:
        return self.config().name


class _ReadWriteLock:
    """Readers-writer lock: shared readers, exclusive writers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            # Waiting writers go first so they are not starved
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ProviderRegistry:
    """
    Catalogue of sync providers keyed by name.

    Safe for concurrent use: lookups run in parallel, registration is
    exclusive.

    Usage:
        registry = ProviderRegistry()
        registry.register(GmailProvider(...))
        provider = registry.get('gmail')
    """

    def __init__(self) -> None:
        self._providers: dict[str, SyncProvider] = {}
        self._lock = _ReadWriteLock()

    def register(self, provider: SyncProvider) -> None:
        """Add a provider, replacing any provider registered under the same name."""
        name = provider.config().name
        with self._lock.write():
            self._providers[name] = provider

    def unregister(self, name: str) -> None:
        with self._lock.write():
            self._providers.pop(name, None)

    def get(self, name: str) -> Optional[SyncProvider]:
        with self._lock.read():
            return self._providers.get(name)

    def list(self) -> list[SourceConfig]:
        """Configurations of all registered providers, sorted by name."""
        with self._lock.read():
            providers = list(self._providers.values())
        return sorted((p.config() for p in providers), key=lambda c: c.name)

    def names(self) -> list[str]:
        with self._lock.read():
            return sorted(self._providers)

    def count(self) -> int:
        with self._lock.read():
            return len(self._providers)

    def __contains__(self, name: object) -> bool:
        with self._lock.read():
            return name in self._providers

    def __len__(self) -> int:
        return self.count()


__all__ = [
    "SourceConfig",
    "SyncResult",
    "SyncContext",
    "SyncProvider",
    "ProviderRegistry",
]
