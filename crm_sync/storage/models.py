"""
Record types persisted by the sync layer.

These dataclasses mirror the identity, sync state, sync log and enrichment
tables managed by CRMDatabase. Rows are converted with ``from_row`` so the
rest of the code never handles raw ``sqlite3.Row`` objects.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class MatchType(str, Enum):
    """How an external identity was linked to a contact."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"
    UNMATCHED = "unmatched"


class MatchStatus(str, Enum):
    """Review status of an external contact record."""

    MATCHED = "matched"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
    IMPORTED = "imported"


class SyncStatus(str, Enum):
    """Status of a (source, account) sync state."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    DISABLED = "disabled"


class SyncStrategy(str, Enum):
    """How a provider finds the data it syncs."""

    CONTACT_DRIVEN = "contact_driven"
    FETCH_ALL = "fetch_all"
    FETCH_FILTERED = "fetch_filtered"


class SyncLogStatus(str, Enum):
    """Outcome recorded on a sync log row."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Naive datetimes are assumed to be UTC. A fixed microsecond precision keeps
    stored values comparable as text.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_db_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Like parse_db_timestamp, for nullable columns."""
    return parse_db_timestamp(value) if value else None


@dataclass
class ExternalIdentity:
    """A normalized identifier observed by a source, optionally linked."""

    id: int
    identifier: str
    identifier_type: str
    source: str
    raw_identifier: Optional[str] = None
    source_id: Optional[str] = None
    contact_id: Optional[int] = None
    match_type: MatchType = MatchType.UNMATCHED
    match_confidence: Optional[float] = None
    display_name: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    message_count: int = 0

    @property
    def is_linked(self) -> bool:
        return self.contact_id is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExternalIdentity":
        return cls(
            id=row["id"],
            identifier=row["identifier"],
            identifier_type=row["identifier_type"],
            source=row["source"],
            raw_identifier=row["raw_identifier"],
            source_id=row["source_id"],
            contact_id=row["contact_id"],
            match_type=MatchType(row["match_type"]),
            match_confidence=row["match_confidence"],
            display_name=row["display_name"],
            last_seen_at=from_db_timestamp(row["last_seen_at"]),
            message_count=row["message_count"],
        )


@dataclass
class SyncState:
    """Scheduling and cursor state for one (source, account) pair."""

    id: int
    source: str
    account_id: Optional[str] = None
    enabled: bool = True
    status: SyncStatus = SyncStatus.IDLE
    strategy: SyncStrategy = SyncStrategy.CONTACT_DRIVEN
    sync_cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncState":
        return cls(
            id=row["id"],
            source=row["source"],
            account_id=row["account_id"],
            enabled=bool(row["enabled"]),
            status=SyncStatus(row["status"]),
            strategy=SyncStrategy(row["strategy"]),
            sync_cursor=row["sync_cursor"],
            last_sync_at=from_db_timestamp(row["last_sync_at"]),
            last_successful_sync_at=from_db_timestamp(row["last_successful_sync_at"]),
            next_sync_at=from_db_timestamp(row["next_sync_at"]),
            error_message=row["error_message"],
            error_count=row["error_count"],
        )


@dataclass
class SyncLog:
    """Audit row for a single sync attempt."""

    id: int
    sync_state_id: int
    source: str
    started_at: datetime
    account_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    status: SyncLogStatus = SyncLogStatus.RUNNING
    items_processed: int = 0
    items_matched: int = 0
    items_created: int = 0
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncLog":
        return cls(
            id=row["id"],
            sync_state_id=row["sync_state_id"],
            source=row["source"],
            account_id=row["account_id"],
            started_at=parse_db_timestamp(row["started_at"]),
            completed_at=from_db_timestamp(row["completed_at"]),
            status=SyncLogStatus(row["status"]),
            items_processed=row["items_processed"],
            items_matched=row["items_matched"],
            items_created=row["items_created"],
            error_message=row["error_message"],
        )


@dataclass
class ContactEnrichment:
    """Provenance record for one field filled from an external source."""

    id: int
    contact_id: int
    source: str
    field: str
    enriched_at: datetime
    account_id: Optional[str] = None
    external_contact_id: Optional[int] = None
    original_value: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ContactEnrichment":
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            source=row["source"],
            account_id=row["account_id"],
            field=row["field"],
            external_contact_id=row["external_contact_id"],
            original_value=row["original_value"],
            enriched_at=parse_db_timestamp(row["enriched_at"]),
        )


__all__ = [
    "MatchType",
    "MatchStatus",
    "SyncStatus",
    "SyncStrategy",
    "SyncLogStatus",
    "ExternalIdentity",
    "SyncState",
    "SyncLog",
    "ContactEnrichment",
    "utcnow",
    "to_db_timestamp",
    "from_db_timestamp",
    "parse_db_timestamp",
]
