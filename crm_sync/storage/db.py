"""
SQLite database module for contacts, identities and sync state.

Provides persistent storage for:
- Local contacts and their identifying methods
- External identities and external contact records
- Per-source sync state and sync logs
- Enrichment provenance records
"""

import logging
import sqlite3
from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from crm_sync.errors import PersistenceError
from crm_sync.storage.models import (
    ContactEnrichment,
    ExternalIdentity,
    MatchStatus,
    MatchType,
    SyncLog,
    SyncLogStatus,
    SyncState,
    SyncStrategy,
    to_db_timestamp,
    utcnow,
)
from crm_sync.sync.contact import Contact, ContactMethod, ExternalContact, dump_entries
from crm_sync.utils.normalization import name_similarity, normalize_method_value

logger = logging.getLogger(__name__)

# Contact fields that enrichment may fill
ENRICHABLE_FIELDS = ("profile_photo", "birthday", "location")

# Contact fields that update_contact accepts
UPDATABLE_FIELDS = ("full_name", "location", "birthday", "profile_photo", "last_contacted")

SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY,
    full_name TEXT NOT NULL,
    location TEXT,
    birthday TEXT,
    profile_photo TEXT,
    last_contacted TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contact_methods (
    id INTEGER PRIMARY KEY,
    contact_id INTEGER NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    value TEXT NOT NULL,
    normalized_value TEXT NOT NULL,
    is_primary INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_contact_methods_contact ON contact_methods(contact_id);
CREATE INDEX IF NOT EXISTS idx_contact_methods_normalized
    ON contact_methods(normalized_value, type);

CREATE TABLE IF NOT EXISTS external_identities (
    id INTEGER PRIMARY KEY,
    identifier TEXT NOT NULL,
    identifier_type TEXT NOT NULL,
    raw_identifier TEXT,
    source TEXT NOT NULL,
    source_id TEXT,
    contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
    match_type TEXT NOT NULL DEFAULT 'unmatched',
    match_confidence REAL,
    display_name TEXT,
    last_seen_at TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(identifier, identifier_type, source)
);

CREATE INDEX IF NOT EXISTS idx_external_identities_contact
    ON external_identities(contact_id);

CREATE TABLE IF NOT EXISTS sync_states (
    id INTEGER PRIMARY KEY,
    source TEXT NOT NULL,
    account_id TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'idle',
    strategy TEXT NOT NULL DEFAULT 'contact_driven',
    sync_cursor TEXT,
    last_sync_at TEXT,
    last_successful_sync_at TEXT,
    next_sync_at TEXT,
    error_message TEXT,
    error_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_states_source_account
    ON sync_states(source, COALESCE(account_id, ''));

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY,
    sync_state_id INTEGER NOT NULL REFERENCES sync_states(id) ON DELETE CASCADE,
    source TEXT NOT NULL,
    account_id TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    items_processed INTEGER NOT NULL DEFAULT 0,
    items_matched INTEGER NOT NULL DEFAULT 0,
    items_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_logs_state ON sync_logs(sync_state_id, started_at);

CREATE TABLE IF NOT EXISTS external_contacts (
    id INTEGER PRIMARY KEY,
    source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    account_id TEXT,
    display_name TEXT,
    first_name TEXT,
    last_name TEXT,
    emails TEXT NOT NULL DEFAULT '[]',
    phones TEXT NOT NULL DEFAULT '[]',
    addresses TEXT NOT NULL DEFAULT '[]',
    organization TEXT,
    job_title TEXT,
    birthday TEXT,
    photo_url TEXT,
    etag TEXT,
    crm_contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
    match_status TEXT NOT NULL DEFAULT 'unmatched',
    duplicate_of_id INTEGER REFERENCES external_contacts(id) ON DELETE SET NULL,
    synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_external_contacts_source
    ON external_contacts(source, source_id, COALESCE(account_id, ''));
CREATE INDEX IF NOT EXISTS idx_external_contacts_status
    ON external_contacts(match_status);

CREATE TABLE IF NOT EXISTS contact_enrichments (
    id INTEGER PRIMARY KEY,
    contact_id INTEGER NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    source TEXT NOT NULL,
    account_id TEXT,
    field TEXT NOT NULL,
    external_contact_id INTEGER REFERENCES external_contacts(id) ON DELETE SET NULL,
    original_value TEXT,
    enriched_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_contact_enrichments_field
    ON contact_enrichments(contact_id, source, field, COALESCE(account_id, ''));
"""

_EXTERNAL_CONTACT_COLUMNS = (
    "display_name",
    "first_name",
    "last_name",
    "emails",
    "phones",
    "addresses",
    "organization",
    "job_title",
    "birthday",
    "photo_url",
    "etag",
)


def _to_db_value(value: Any) -> Any:
    """Convert Python values into SQLite-storable values."""
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class CRMDatabase:
    """
    SQLite database manager for the contact store and sync bookkeeping.

    Every public method opens its own connection scope, commits on success
    and rolls back on failure. ``sqlite3.Error`` never escapes: it is
    re-raised as PersistenceError.

    Usage:
        db = CRMDatabase('/path/to/crm_sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = CRMDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _configure(self, conn: sqlite3.Connection) -> sqlite3.Connection:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.create_function("name_similarity", 2, _sql_name_similarity)
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = self._configure(
                    sqlite3.connect(":memory:", check_same_thread=False)
                )
            return self._shared_connection

        return self._configure(sqlite3.connect(self.db_path, timeout=30))

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits when the block succeeds and rolls back on any exception, so
        everything written inside one block is a single transaction.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_states")
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"could not open database {self.db_path}: {e}") from e

        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Initialized database schema at {self.db_path}")

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Contact Operations
    # =========================================================================

    def _load_methods(
        self, conn: sqlite3.Connection, contact_ids: Sequence[int]
    ) -> dict[int, list[ContactMethod]]:
        methods: dict[int, list[ContactMethod]] = {cid: [] for cid in contact_ids}
        if not contact_ids:
            return methods
        cursor = conn.execute(
            f"SELECT * FROM contact_methods WHERE contact_id IN "  # nosec B608
            f"({_placeholders(len(contact_ids))}) ORDER BY is_primary DESC, id",
            list(contact_ids),
        )
        for row in cursor.fetchall():
            methods[row["contact_id"]].append(ContactMethod.from_row(row))
        return methods

    def _fetch_contact(self, conn: sqlite3.Connection, contact_id: int) -> Optional[Contact]:
        row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        if row is None:
            return None
        methods = self._load_methods(conn, [contact_id])[contact_id]
        return Contact.from_row(row, methods)

    def get_contact(self, contact_id: int) -> Optional[Contact]:
        """
        Get a contact with its methods.

        Returns:
            Contact, or None if no contact has this ID
        """
        with self.connection() as conn:
            return self._fetch_contact(conn, contact_id)

    def list_contacts(self, limit: int = 10000, offset: int = 0) -> list[Contact]:
        """List contacts ordered by name, with their methods."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM contacts ORDER BY full_name, id LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
            methods = self._load_methods(conn, [row["id"] for row in rows])
            return [Contact.from_row(row, methods[row["id"]]) for row in rows]

    def count_contacts(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0]

    def create_contact(
        self,
        full_name: str,
        location: Optional[str] = None,
        birthday: Optional[date] = None,
        profile_photo: Optional[str] = None,
        methods: Iterable[tuple[str, str, bool]] = (),
    ) -> Contact:
        """
        Create a contact together with its methods in one transaction.

        If any method insert fails, the contact row is rolled back as well.

        Args:
            full_name: Contact name
            location: Optional location
            birthday: Optional birthday
            profile_photo: Optional photo URL
            methods: (type, value, is_primary) tuples

        Returns:
            The created Contact
        """
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO contacts (
                    full_name, location, birthday, profile_photo, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (full_name, location, _to_db_value(birthday), profile_photo, now, now),
            )
            contact_id = _inserted_id(cursor, "contact")
            for method_type, value, is_primary in methods:
                self._insert_method(conn, contact_id, method_type, value, is_primary, now)
            contact = self._fetch_contact(conn, contact_id)
            if contact is None:
                raise PersistenceError(f"contact {contact_id} vanished after insert")
            return contact

    def update_contact(self, contact_id: int, **fields: Any) -> Optional[Contact]:
        """
        Update contact fields unconditionally (user edits).

        Args:
            contact_id: Contact to update
            **fields: Any of full_name, location, birthday, profile_photo,
                      last_contacted

        Returns:
            Updated Contact, or None if the contact doesn't exist
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update contact fields: {sorted(unknown)}")

        with self.connection() as conn:
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                params = [_to_db_value(v) for v in fields.values()]
                params.extend([to_db_timestamp(utcnow()), contact_id])
                conn.execute(
                    f"UPDATE contacts SET {assignments}, updated_at = ? "  # nosec B608
                    "WHERE id = ?",
                    params,
                )
            return self._fetch_contact(conn, contact_id)

    def fill_contact_field(self, contact_id: int, field: str, value: Any) -> bool:
        """
        Set a contact field only if it is currently empty.

        The emptiness check is part of the UPDATE itself, so a value written
        by the user in the meantime is never overwritten.

        Returns:
            True if the field was filled, False if it already had a value
        """
        if field not in ENRICHABLE_FIELDS:
            raise ValueError(f"Field {field!r} cannot be enriched")

        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE contacts SET {field} = ?, updated_at = ? "  # nosec B608
                f"WHERE id = ? AND ({field} IS NULL OR {field} = '')",
                (_to_db_value(value), to_db_timestamp(utcnow()), contact_id),
            )
            return cursor.rowcount > 0

    def find_similar_contacts(
        self, name: str, min_similarity: float, limit: int = 5
    ) -> list[tuple[Contact, float]]:
        """
        Find contacts whose name resembles ``name``.

        Returns:
            (contact, similarity) pairs with similarity >= min_similarity,
            ordered by similarity descending
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT *, name_similarity(full_name, ?) AS similarity
                    FROM contacts
                )
                WHERE similarity >= ?
                ORDER BY similarity DESC, id
                LIMIT ?
                """,
                (name, min_similarity, limit),
            ).fetchall()
            methods = self._load_methods(conn, [row["id"] for row in rows])
            return [
                (Contact.from_row(row, methods[row["id"]]), row["similarity"])
                for row in rows
            ]

    # =========================================================================
    # Contact Method Operations
    # =========================================================================

    def _insert_method(
        self,
        conn: sqlite3.Connection,
        contact_id: int,
        method_type: str,
        value: str,
        is_primary: bool,
        now: Optional[str],
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO contact_methods (
                contact_id, type, value, normalized_value, is_primary, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                contact_id,
                _to_db_value(method_type),
                value,
                normalize_method_value(value, method_type),
                int(is_primary),
                now,
            ),
        )
        return _inserted_id(cursor, "contact method")

    def list_contact_methods(self, contact_id: int) -> list[ContactMethod]:
        with self.connection() as conn:
            return self._load_methods(conn, [contact_id])[contact_id]

    def add_contact_method(
        self, contact_id: int, method_type: str, value: str, is_primary: bool = False
    ) -> ContactMethod:
        """Add a method to an existing contact."""
        with self.connection() as conn:
            method_id = self._insert_method(
                conn, contact_id, method_type, value, is_primary, to_db_timestamp(utcnow())
            )
            row = conn.execute(
                "SELECT * FROM contact_methods WHERE id = ?", (method_id,)
            ).fetchone()
            return ContactMethod.from_row(row)

    def update_contact_method_value(self, method_id: int, value: str) -> bool:
        """Replace a method's value (and its normalized form)."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT type FROM contact_methods WHERE id = ?", (method_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE contact_methods SET value = ?, normalized_value = ? WHERE id = ?",
                (value, normalize_method_value(value, row["type"]), method_id),
            )
            return True

    def find_contact_ids_by_method(
        self, normalized_value: str, method_types: Sequence[str]
    ) -> list[int]:
        """
        Find distinct contacts owning a method with this normalized value.

        Args:
            normalized_value: Already normalized identifier
            method_types: Method types to restrict the search to
        """
        if not method_types:
            return []
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT DISTINCT contact_id FROM contact_methods "  # nosec B608
                f"WHERE normalized_value = ? AND type IN ({_placeholders(len(method_types))}) "
                f"ORDER BY contact_id",
                [normalized_value, *(_to_db_value(t) for t in method_types)],
            ).fetchall()
            return [row["contact_id"] for row in rows]

    # =========================================================================
    # External Identity Operations
    # =========================================================================

    def get_identity(self, identity_id: int) -> Optional[ExternalIdentity]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None

    def get_identity_by_identifier(
        self, identifier: str, identifier_type: str, source: str
    ) -> Optional[ExternalIdentity]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier_type = ? AND identifier = ? AND source = ?
                """,
                (_to_db_value(identifier_type), identifier, source),
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None

    def find_identities(self, identifier: str, identifier_type: str) -> list[ExternalIdentity]:
        """Find identities for an identifier across all sources."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier_type = ? AND identifier = ?
                ORDER BY source
                """,
                (_to_db_value(identifier_type), identifier),
            ).fetchall()
            return [ExternalIdentity.from_row(row) for row in rows]

    def upsert_identity(
        self,
        identifier: str,
        identifier_type: str,
        source: str,
        match_type: MatchType,
        raw_identifier: Optional[str] = None,
        source_id: Optional[str] = None,
        contact_id: Optional[int] = None,
        match_confidence: Optional[float] = None,
        display_name: Optional[str] = None,
        last_seen_at: Optional[datetime] = None,
        message_count: int = 1,
    ) -> ExternalIdentity:
        """
        Insert an identity or update the existing row for the same key.

        On conflict, optional values only replace stored ones when provided,
        ``last_seen_at`` is refreshed and ``message_count`` is added to the
        stored count.
        """
        now = to_db_timestamp(utcnow())
        seen = to_db_timestamp(last_seen_at) or now
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO external_identities (
                    identifier, identifier_type, raw_identifier, source, source_id,
                    contact_id, match_type, match_confidence, display_name,
                    last_seen_at, message_count, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identifier, identifier_type, source) DO UPDATE SET
                    raw_identifier = COALESCE(excluded.raw_identifier, raw_identifier),
                    source_id = COALESCE(excluded.source_id, source_id),
                    contact_id = COALESCE(excluded.contact_id, contact_id),
                    match_type = excluded.match_type,
                    match_confidence = COALESCE(excluded.match_confidence, match_confidence),
                    display_name = COALESCE(excluded.display_name, display_name),
                    last_seen_at = excluded.last_seen_at,
                    message_count = message_count + excluded.message_count,
                    updated_at = excluded.updated_at
                """,
                (
                    identifier,
                    _to_db_value(identifier_type),
                    raw_identifier,
                    source,
                    source_id,
                    contact_id,
                    _to_db_value(match_type),
                    match_confidence,
                    display_name,
                    seen,
                    message_count,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier_type = ? AND identifier = ? AND source = ?
                """,
                (_to_db_value(identifier_type), identifier, source),
            ).fetchone()
            return ExternalIdentity.from_row(row)

    def link_identity(
        self,
        identity_id: int,
        contact_id: int,
        match_type: MatchType,
        match_confidence: Optional[float],
    ) -> Optional[ExternalIdentity]:
        """Link an identity to a contact. Returns None for unknown identities."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE external_identities
                SET contact_id = ?, match_type = ?, match_confidence = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    contact_id,
                    _to_db_value(match_type),
                    match_confidence,
                    to_db_timestamp(utcnow()),
                    identity_id,
                ),
            )
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None

    def unlink_identity(self, identity_id: int) -> Optional[ExternalIdentity]:
        """Clear an identity's contact link. Returns None for unknown identities."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE external_identities
                SET contact_id = NULL, match_type = 'unmatched',
                    match_confidence = NULL, updated_at = ?
                WHERE id = ?
                """,
                (to_db_timestamp(utcnow()), identity_id),
            )
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None

    def bulk_link_identities(
        self,
        identity_ids: Sequence[int],
        contact_id: int,
        match_type: MatchType,
        match_confidence: Optional[float],
    ) -> int:
        """Link several identities at once. Returns the number of rows updated."""
        if not identity_ids:
            return 0
        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE external_identities "  # nosec B608
                f"SET contact_id = ?, match_type = ?, match_confidence = ?, updated_at = ? "
                f"WHERE id IN ({_placeholders(len(identity_ids))})",
                [
                    contact_id,
                    _to_db_value(match_type),
                    match_confidence,
                    to_db_timestamp(utcnow()),
                    *identity_ids,
                ],
            )
            return cursor.rowcount

    def list_unmatched_identities(self, limit: int = 50, offset: int = 0) -> list[ExternalIdentity]:
        """Unlinked identities, most frequently seen first."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE contact_id IS NULL
                ORDER BY message_count DESC, last_seen_at IS NULL, last_seen_at DESC, id
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ).fetchall()
            return [ExternalIdentity.from_row(row) for row in rows]

    def count_unmatched_identities(self) -> int:
        with self.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM external_identities WHERE contact_id IS NULL"
            ).fetchone()[0]

    def list_identities_for_contact(self, contact_id: int) -> list[ExternalIdentity]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE contact_id = ?
                ORDER BY source, identifier_type, id
                """,
                (contact_id,),
            ).fetchall()
            return [ExternalIdentity.from_row(row) for row in rows]

    def increment_identity_message_count(
        self, identity_id: int, count: int, seen_at: datetime
    ) -> Optional[ExternalIdentity]:
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE external_identities
                SET message_count = message_count + ?, last_seen_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (count, to_db_timestamp(seen_at), to_db_timestamp(utcnow()), identity_id),
            )
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None

    def delete_identity(self, identity_id: int) -> bool:
        """
        Delete an identity.

        Returns:
            True if an identity was deleted, False if not found
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM external_identities WHERE id = ?", (identity_id,)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Sync State Operations
    # =========================================================================

    def get_sync_state(self, state_id: int) -> Optional[SyncState]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None

    def get_sync_state_by_source(
        self, source: str, account_id: Optional[str] = None
    ) -> Optional[SyncState]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM sync_states
                WHERE source = ? AND COALESCE(account_id, '') = COALESCE(?, '')
                """,
                (source, account_id),
            ).fetchone()
            return SyncState.from_row(row) if row else None

    def list_sync_states(self) -> list[SyncState]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_states ORDER BY source, COALESCE(account_id, '')"
            ).fetchall()
            return [SyncState.from_row(row) for row in rows]

    def list_due_sync_states(self, now: datetime) -> list[SyncState]:
        """
        States that should run now.

        Enabled, not already syncing or disabled, and either never scheduled
        or scheduled at or before ``now``. Never-scheduled states come first.
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_states
                WHERE enabled = 1
                  AND status NOT IN ('syncing', 'disabled')
                  AND (next_sync_at IS NULL OR next_sync_at <= ?)
                ORDER BY next_sync_at IS NOT NULL, next_sync_at, id
                """,
                (to_db_timestamp(now),),
            ).fetchall()
            return [SyncState.from_row(row) for row in rows]

    def create_sync_state(
        self,
        source: str,
        account_id: Optional[str] = None,
        strategy: SyncStrategy = SyncStrategy.CONTACT_DRIVEN,
        enabled: bool = True,
    ) -> SyncState:
        """
        Create the sync state for (source, account_id).

        If a state already exists for the pair, it is returned unchanged.
        """
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO sync_states (
                    source, account_id, enabled, status, strategy, created_at, updated_at
                ) VALUES (?, ?, ?, 'idle', ?, ?, ?)
                """,
                (source, account_id, int(enabled), _to_db_value(strategy), now, now),
            )
            row = conn.execute(
                """
                SELECT * FROM sync_states
                WHERE source = ? AND COALESCE(account_id, '') = COALESCE(?, '')
                """,
                (source, account_id),
            ).fetchone()
            return SyncState.from_row(row)

    def begin_sync(self, state_id: int, now: datetime) -> bool:
        """
        Atomically move a state to 'syncing'.

        Returns:
            True if this caller claimed the state, False if it was already
            syncing (or does not exist)
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_states
                SET status = 'syncing', last_sync_at = ?, updated_at = ?
                WHERE id = ? AND status != 'syncing'
                """,
                (to_db_timestamp(now), to_db_timestamp(now), state_id),
            )
            return cursor.rowcount == 1

    def mark_sync_success(
        self,
        state_id: int,
        now: datetime,
        next_sync_at: datetime,
        cursor: Optional[str] = None,
    ) -> Optional[SyncState]:
        """Record a successful run; the cursor is kept when ``cursor`` is None."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_states
                SET status = 'idle',
                    last_sync_at = ?,
                    last_successful_sync_at = ?,
                    next_sync_at = ?,
                    sync_cursor = COALESCE(?, sync_cursor),
                    error_message = NULL,
                    error_count = 0,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    to_db_timestamp(now),
                    to_db_timestamp(now),
                    to_db_timestamp(next_sync_at),
                    cursor,
                    to_db_timestamp(now),
                    state_id,
                ),
            )
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None

    def mark_sync_error(
        self, state_id: int, now: datetime, next_sync_at: datetime, message: str
    ) -> Optional[SyncState]:
        """Record a failed run and schedule the retry."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_states
                SET status = 'error',
                    last_sync_at = ?,
                    next_sync_at = ?,
                    error_message = ?,
                    error_count = error_count + 1,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    to_db_timestamp(now),
                    to_db_timestamp(next_sync_at),
                    message,
                    to_db_timestamp(now),
                    state_id,
                ),
            )
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None

    def set_sync_enabled(self, state_id: int, enabled: bool) -> Optional[SyncState]:
        """Toggle the enabled flag; status is left as it is."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_states SET enabled = ?, updated_at = ? WHERE id = ?",
                (int(enabled), to_db_timestamp(utcnow()), state_id),
            )
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None

    def reset_sync_state(
        self, state_id: int, clear_cursor: bool = False
    ) -> Optional[SyncState]:
        """
        Return a state to 'idle' and make it due immediately.

        Recovers states left in 'syncing' by a process that died mid-run and
        clears the error backoff. With ``clear_cursor`` the next run is a
        full sync.
        """
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_states
                SET status = 'idle',
                    next_sync_at = NULL,
                    error_message = NULL,
                    error_count = 0,
                    sync_cursor = CASE WHEN ? THEN NULL ELSE sync_cursor END,
                    updated_at = ?
                WHERE id = ?
                """,
                (int(clear_cursor), now, state_id),
            )
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None

    # =========================================================================
    # Sync Log Operations
    # =========================================================================

    def create_sync_log(self, state: SyncState, started_at: datetime) -> SyncLog:
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_logs (sync_state_id, source, account_id, started_at, status)
                VALUES (?, ?, ?, ?, 'running')
                """,
                (state.id, state.source, state.account_id, to_db_timestamp(started_at)),
            )
            row = conn.execute(
                "SELECT * FROM sync_logs WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return SyncLog.from_row(row)

    def complete_sync_log(
        self,
        log_id: int,
        status: SyncLogStatus,
        completed_at: datetime,
        items_processed: int = 0,
        items_matched: int = 0,
        items_created: int = 0,
        error_message: Optional[str] = None,
    ) -> Optional[SyncLog]:
        """
        Complete a running sync log.

        Only the first completion is applied; completing an already completed
        log leaves it unchanged.
        """
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_logs
                SET status = ?, completed_at = ?, items_processed = ?,
                    items_matched = ?, items_created = ?, error_message = ?
                WHERE id = ? AND completed_at IS NULL
                """,
                (
                    _to_db_value(status),
                    to_db_timestamp(completed_at),
                    items_processed,
                    items_matched,
                    items_created,
                    error_message,
                    log_id,
                ),
            )
            row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
            return SyncLog.from_row(row) if row else None

    def get_sync_log(self, log_id: int) -> Optional[SyncLog]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
            return SyncLog.from_row(row) if row else None

    def list_sync_logs(self, state_id: int, limit: int = 20, offset: int = 0) -> list[SyncLog]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_logs WHERE sync_state_id = ?
                ORDER BY started_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (state_id, limit, offset),
            ).fetchall()
            return [SyncLog.from_row(row) for row in rows]

    def count_sync_logs(self, state_id: int) -> int:
        with self.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_logs WHERE sync_state_id = ?", (state_id,)
            ).fetchone()[0]

    def list_recent_sync_logs(self, limit: int = 20) -> list[SyncLog]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [SyncLog.from_row(row) for row in rows]

    def delete_sync_logs_before(self, before: datetime) -> int:
        """Delete logs started before ``before``. Returns the number deleted."""
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_logs WHERE started_at < ?", (to_db_timestamp(before),)
            )
            return cursor.rowcount

    # =========================================================================
    # External Contact Operations
    # =========================================================================

    def upsert_external_contact(
        self, external: ExternalContact, synced_at: Optional[datetime] = None
    ) -> ExternalContact:
        """
        Insert or refresh an external contact keyed by (source, source_id, account).

        Source-provided fields are replaced; match status, CRM link and
        duplicate marker are preserved on update.
        """
        now = to_db_timestamp(utcnow())
        values = [
            external.display_name,
            external.first_name,
            external.last_name,
            dump_entries(external.emails),
            dump_entries(external.phones),
            dump_entries(external.addresses),
            external.organization,
            external.job_title,
            _to_db_value(external.birthday),
            external.photo_url,
            external.etag,
        ]
        with self.connection() as conn:
            existing = conn.execute(
                """
                SELECT id FROM external_contacts
                WHERE source = ? AND source_id = ?
                  AND COALESCE(account_id, '') = COALESCE(?, '')
                """,
                (external.source, external.source_id, external.account_id),
            ).fetchone()

            if existing:
                contact_id = existing["id"]
                assignments = ", ".join(f"{col} = ?" for col in _EXTERNAL_CONTACT_COLUMNS)
                conn.execute(
                    f"UPDATE external_contacts SET {assignments}, "  # nosec B608
                    f"synced_at = ?, updated_at = ? WHERE id = ?",
                    [*values, to_db_timestamp(synced_at), now, contact_id],
                )
            else:
                columns = ", ".join(_EXTERNAL_CONTACT_COLUMNS)
                cursor = conn.execute(
                    f"INSERT INTO external_contacts ("  # nosec B608
                    f"source, source_id, account_id, {columns}, "
                    f"match_status, synced_at, created_at, updated_at"
                    f") VALUES ({_placeholders(len(_EXTERNAL_CONTACT_COLUMNS) + 7)})",
                    [
                        external.source,
                        external.source_id,
                        external.account_id,
                        *values,
                        _to_db_value(external.match_status),
                        to_db_timestamp(synced_at),
                        now,
                        now,
                    ],
                )
                contact_id = cursor.lastrowid

            row = conn.execute(
                "SELECT * FROM external_contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            return ExternalContact.from_row(row)

    def get_external_contact(self, external_id: int) -> Optional[ExternalContact]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM external_contacts WHERE id = ?", (external_id,)
            ).fetchone()
            return ExternalContact.from_row(row) if row else None

    def get_external_contact_by_source(
        self, source: str, source_id: str, account_id: Optional[str] = None
    ) -> Optional[ExternalContact]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE source = ? AND source_id = ?
                  AND COALESCE(account_id, '') = COALESCE(?, '')
                """,
                (source, source_id, account_id),
            ).fetchone()
            return ExternalContact.from_row(row) if row else None

    def list_unmatched_external_contacts(
        self, source: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[ExternalContact]:
        """Unmatched, non-duplicate external contacts awaiting review."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE match_status = 'unmatched'
                  AND duplicate_of_id IS NULL
                  AND (? IS NULL OR source = ?)
                ORDER BY source, display_name, id
                LIMIT ? OFFSET ?
                """,
                (source, source, limit, offset),
            ).fetchall()
            return [ExternalContact.from_row(row) for row in rows]

    def count_unmatched_external_contacts(self, source: Optional[str] = None) -> int:
        with self.connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM external_contacts
                WHERE match_status = 'unmatched'
                  AND duplicate_of_id IS NULL
                  AND (? IS NULL OR source = ?)
                """,
                (source, source),
            ).fetchone()[0]

    def update_external_contact_match(
        self, external_id: int, crm_contact_id: Optional[int], status: MatchStatus
    ) -> Optional[ExternalContact]:
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE external_contacts
                SET crm_contact_id = ?, match_status = ?, updated_at = ?
                WHERE id = ?
                """,
                (crm_contact_id, _to_db_value(status), to_db_timestamp(utcnow()), external_id),
            )
            row = conn.execute(
                "SELECT * FROM external_contacts WHERE id = ?", (external_id,)
            ).fetchone()
            return ExternalContact.from_row(row) if row else None

    def mark_external_duplicate(self, external_id: int, duplicate_of_id: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE external_contacts SET duplicate_of_id = ?, updated_at = ? WHERE id = ?",
                (duplicate_of_id, to_db_timestamp(utcnow()), external_id),
            )

    def find_external_contacts_by_email(self, email: str) -> list[ExternalContact]:
        """Non-duplicate external contacts carrying this email (case-insensitive)."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE duplicate_of_id IS NULL
                  AND EXISTS (
                      SELECT 1 FROM json_each(external_contacts.emails) AS e
                      WHERE LOWER(TRIM(json_extract(e.value, '$.value'))) = LOWER(TRIM(?))
                  )
                ORDER BY created_at, id
                """,
                (email,),
            ).fetchall()
            return [ExternalContact.from_row(row) for row in rows]

    # =========================================================================
    # Enrichment Operations
    # =========================================================================

    def record_enrichment(
        self,
        contact_id: int,
        source: str,
        field: str,
        account_id: Optional[str] = None,
        external_contact_id: Optional[int] = None,
        original_value: Optional[str] = None,
        enriched_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record that a field was enriched.

        Returns:
            True if a new record was written, False if this
            (contact, source, field, account) was already recorded
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO contact_enrichments (
                    contact_id, source, account_id, field,
                    external_contact_id, original_value, enriched_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    contact_id,
                    source,
                    account_id,
                    field,
                    external_contact_id,
                    original_value,
                    to_db_timestamp(enriched_at or utcnow()),
                ),
            )
            return cursor.rowcount > 0

    def has_enrichment(self, contact_id: int, field: str) -> bool:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM contact_enrichments WHERE contact_id = ? AND field = ? LIMIT 1",
                (contact_id, field),
            ).fetchone()
            return row is not None

    def list_enrichments(self, contact_id: int) -> list[ContactEnrichment]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM contact_enrichments WHERE contact_id = ?
                ORDER BY enriched_at DESC, id DESC
                """,
                (contact_id,),
            ).fetchall()
            return [ContactEnrichment.from_row(row) for row in rows]

    # =========================================================================
    # Utility Operations
    # =========================================================================

    def get_statistics(self) -> dict[str, int]:
        """Row counts used by the CLI status output."""
        tables = {
            "contacts": "contacts",
            "identities": "external_identities",
            "unmatched_identities": "external_identities WHERE contact_id IS NULL",
            "external_contacts": "external_contacts",
            "import_candidates": (
                "external_contacts WHERE match_status = 'unmatched' "
                "AND duplicate_of_id IS NULL"
            ),
            "enrichments": "contact_enrichments",
        }
        with self.connection() as conn:
            return {
                name: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]  # nosec B608
                for name, table in tables.items()
            }


def _inserted_id(cursor: sqlite3.Cursor, what: str) -> int:
    if cursor.lastrowid is None:
        raise PersistenceError(f"{what} insert returned no row id")
    return cursor.lastrowid


def _sql_name_similarity(left: Optional[str], right: Optional[str]) -> float:
    # SQL functions must never raise into SQLite
    if not left or not right:
        return 0.0
    return name_similarity(left, right)


__all__ = [
    "CRMDatabase",
    "SCHEMA",
    "ENRICHABLE_FIELDS",
]
