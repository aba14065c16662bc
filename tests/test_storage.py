"""
Unit tests for the storage module.

Tests the CRMDatabase class for contacts, identities, sync state, sync logs,
external contacts and enrichment records.
"""

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from crm_sync.errors import PersistenceError
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import (
    MatchStatus,
    MatchType,
    SyncLogStatus,
    SyncStatus,
    SyncStrategy,
    from_db_timestamp,
    to_db_timestamp,
)
from crm_sync.sync.contact import AddressEntry, EmailEntry, ExternalContact, PhoneEntry
from crm_sync.utils.normalization import ContactMethodType, IdentifierType

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestTimestamps:
    """Tests for timestamp serialization."""

    def test_roundtrip_preserves_instant(self):
        value = datetime(2024, 3, 1, 8, 30, 15, 123456, tzinfo=timezone.utc)
        assert from_db_timestamp(to_db_timestamp(value)) == value

    def test_naive_datetime_treated_as_utc(self):
        naive = datetime(2024, 3, 1, 8, 30)
        assert from_db_timestamp(to_db_timestamp(naive)).tzinfo is not None

    def test_text_order_matches_time_order(self):
        earlier = to_db_timestamp(datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc))
        later = to_db_timestamp(datetime(2024, 1, 1, 0, 0, 0, 1, tzinfo=timezone.utc))
        assert earlier < later

    def test_none(self):
        assert to_db_timestamp(None) is None
        assert from_db_timestamp(None) is None


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_initialize_creates_tables(self, db):
        with db.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {
            "contacts",
            "contact_methods",
            "external_identities",
            "sync_states",
            "sync_logs",
            "external_contacts",
            "contact_enrichments",
        } <= names

    def test_initialize_is_idempotent(self, db):
        db.initialize()
        db.initialize()

    def test_file_database(self, tmp_path):
        path = str(tmp_path / "crm.db")
        database = CRMDatabase(path)
        database.initialize()
        database.create_contact("File Person")

        reopened = CRMDatabase(path)
        assert reopened.count_contacts() == 1

    def test_sqlite_errors_become_persistence_errors(self, db):
        with pytest.raises(PersistenceError):
            with db.connection() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_failed_block_rolls_back(self, db):
        with pytest.raises(PersistenceError):
            with db.connection() as conn:
                conn.execute(
                    "INSERT INTO contacts (full_name, created_at, updated_at) "
                    "VALUES ('Ghost', 'x', 'x')"
                )
                raise sqlite3.OperationalError("boom")
        assert db.count_contacts() == 0


class TestContacts:
    """Tests for contact and method operations."""

    def test_create_contact_with_methods(self, jane):
        assert jane.id is not None
        assert jane.full_name == "Jane Doe"
        assert len(jane.methods) == 2
        email = jane.emails[0]
        assert email.value == "Jane@Example.com"
        assert email.normalized_value == "jane@example.com"
        assert email.is_primary
        phone = jane.methods_of_type(ContactMethodType.PHONE)[0]
        assert phone.normalized_value == "+15551234567"

    def test_create_contact_is_atomic(self, db, monkeypatch):
        def failing_insert(*args, **kwargs):
            raise sqlite3.IntegrityError("method insert failed")

        monkeypatch.setattr(db, "_insert_method", failing_insert)
        with pytest.raises(PersistenceError):
            db.create_contact("Half Made", methods=[("phone", "555 000 1111", False)])
        assert db.count_contacts() == 0

    def test_get_missing_contact(self, db):
        assert db.get_contact(999) is None

    def test_update_contact(self, db, jane):
        updated = db.update_contact(jane.id, location="Berlin", birthday=date(1990, 4, 2))
        assert updated.location == "Berlin"
        assert updated.birthday == date(1990, 4, 2)

    def test_update_contact_rejects_unknown_field(self, db, jane):
        with pytest.raises(ValueError):
            db.update_contact(jane.id, nickname="JD")

    def test_fill_contact_field_only_when_empty(self, db, jane):
        assert db.fill_contact_field(jane.id, "location", "Paris")
        assert not db.fill_contact_field(jane.id, "location", "Rome")
        assert db.get_contact(jane.id).location == "Paris"

    def test_fill_contact_field_treats_empty_string_as_empty(self, db, jane):
        db.update_contact(jane.id, location="")
        assert db.fill_contact_field(jane.id, "location", "Oslo")

    def test_fill_contact_field_rejects_other_fields(self, db, jane):
        with pytest.raises(ValueError):
            db.fill_contact_field(jane.id, "full_name", "Someone")

    def test_add_contact_method_normalizes(self, db, jane):
        method = db.add_contact_method(jane.id, ContactMethodType.EMAIL_WORK, " Jane@Work.COM ")
        assert method.type == "email_work"
        assert method.normalized_value == "jane@work.com"
        assert not method.is_primary

    def test_update_contact_method_value(self, db, jane):
        phone = jane.methods_of_type(ContactMethodType.PHONE)[0]
        assert db.update_contact_method_value(phone.id, "+44 20 7946 0958")
        methods = db.list_contact_methods(jane.id)
        updated = next(m for m in methods if m.id == phone.id)
        assert updated.normalized_value == "+442079460958"
        assert not db.update_contact_method_value(9999, "x")

    def test_find_contact_ids_by_method(self, db, jane):
        other = db.create_contact("Other", methods=[("email_work", "jane@example.com", False)])
        ids = db.find_contact_ids_by_method(
            "jane@example.com", [ContactMethodType.EMAIL_PERSONAL, ContactMethodType.EMAIL_WORK]
        )
        assert ids == sorted([jane.id, other.id])
        assert db.find_contact_ids_by_method("jane@example.com", ["phone"]) == []
        assert db.find_contact_ids_by_method("jane@example.com", []) == []

    def test_find_similar_contacts(self, db, jane):
        db.create_contact("Bob Xu")
        results = db.find_similar_contacts("Jane Do", min_similarity=0.5)
        assert [c.full_name for c, _ in results] == ["Jane Doe"]
        assert results[0][1] > 0.8
        assert results[0][0].methods

    def test_list_contacts_ordered_by_name(self, db):
        db.create_contact("Zed")
        db.create_contact("Amy")
        assert [c.full_name for c in db.list_contacts()] == ["Amy", "Zed"]
        assert len(db.list_contacts(limit=1)) == 1


class TestIdentities:
    """Tests for external identity operations."""

    def _upsert(self, db, identifier="jane@example.com", source="gmail", **kwargs):
        kwargs.setdefault("match_type", MatchType.UNMATCHED)
        return db.upsert_identity(identifier, IdentifierType.EMAIL, source, **kwargs)

    def test_upsert_creates_identity(self, db):
        identity = self._upsert(db, raw_identifier="Jane@Example.com", last_seen_at=T0)
        assert identity.id is not None
        assert identity.identifier_type == "email"
        assert identity.raw_identifier == "Jane@Example.com"
        assert identity.message_count == 1
        assert identity.last_seen_at == T0
        assert not identity.is_linked

    def test_upsert_accumulates_message_count(self, db):
        self._upsert(db, message_count=3)
        identity = self._upsert(db, message_count=2)
        assert identity.message_count == 5

    def test_upsert_keeps_existing_values_when_not_provided(self, db, jane):
        self._upsert(db, display_name="Jane", contact_id=jane.id, match_type=MatchType.EXACT)
        identity = self._upsert(db, match_type=MatchType.EXACT)
        assert identity.display_name == "Jane"
        assert identity.contact_id == jane.id

    def test_same_identifier_from_two_sources_is_two_rows(self, db):
        a = self._upsert(db, source="gmail")
        b = self._upsert(db, source="gcal")
        assert a.id != b.id
        assert len(db.find_identities("jane@example.com", IdentifierType.EMAIL)) == 2

    def test_get_identity_by_identifier(self, db):
        created = self._upsert(db)
        found = db.get_identity_by_identifier("jane@example.com", IdentifierType.EMAIL, "gmail")
        assert found.id == created.id
        assert db.get_identity_by_identifier("jane@example.com", "email", "gcal") is None

    def test_link_and_unlink(self, db, jane):
        identity = self._upsert(db)
        linked = db.link_identity(identity.id, jane.id, MatchType.MANUAL, 1.0)
        assert linked.contact_id == jane.id
        assert linked.match_type == MatchType.MANUAL
        assert linked.match_confidence == 1.0

        unlinked = db.unlink_identity(identity.id)
        assert unlinked.contact_id is None
        assert unlinked.match_type == MatchType.UNMATCHED
        assert unlinked.match_confidence is None

    def test_link_unknown_identity(self, db, jane):
        assert db.link_identity(999, jane.id, MatchType.MANUAL, 1.0) is None
        assert db.unlink_identity(999) is None

    def test_bulk_link(self, db, jane):
        a = self._upsert(db, identifier="a@example.com")
        b = self._upsert(db, identifier="b@example.com")
        assert db.bulk_link_identities([a.id, b.id], jane.id, MatchType.MANUAL, 1.0) == 2
        assert db.bulk_link_identities([], jane.id, MatchType.MANUAL, 1.0) == 0
        assert {i.id for i in db.list_identities_for_contact(jane.id)} == {a.id, b.id}

    def test_unmatched_ordered_by_activity(self, db):
        quiet = self._upsert(db, identifier="quiet@example.com", message_count=1)
        busy = self._upsert(db, identifier="busy@example.com", message_count=10)
        assert [i.id for i in db.list_unmatched_identities()] == [busy.id, quiet.id]
        assert db.count_unmatched_identities() == 2

    def test_increment_message_count(self, db):
        identity = self._upsert(db, message_count=1)
        later = T0 + timedelta(days=1)
        updated = db.increment_identity_message_count(identity.id, 4, later)
        assert updated.message_count == 5
        assert updated.last_seen_at == later

    def test_delete_identity(self, db):
        identity = self._upsert(db)
        assert db.delete_identity(identity.id)
        assert not db.delete_identity(identity.id)
        assert db.get_identity(identity.id) is None

    def test_deleting_contact_unlinks_identity(self, db, jane):
        identity = self._upsert(db, contact_id=jane.id, match_type=MatchType.EXACT)
        with db.connection() as conn:
            conn.execute("DELETE FROM contacts WHERE id = ?", (jane.id,))
        assert db.get_identity(identity.id).contact_id is None


class TestSyncStates:
    """Tests for sync state operations."""

    def test_create_defaults(self, db):
        state = db.create_sync_state("gmail", "me@example.com")
        assert state.status == SyncStatus.IDLE
        assert state.strategy == SyncStrategy.CONTACT_DRIVEN
        assert state.enabled
        assert state.error_count == 0
        assert state.next_sync_at is None

    def test_create_is_unique_per_source_account(self, db):
        first = db.create_sync_state("gmail", "me@example.com")
        second = db.create_sync_state("gmail", "me@example.com", strategy=SyncStrategy.FETCH_ALL)
        assert first.id == second.id
        assert second.strategy == SyncStrategy.CONTACT_DRIVEN

    def test_null_account_is_unique_too(self, db):
        first = db.create_sync_state("gcontacts")
        second = db.create_sync_state("gcontacts")
        assert first.id == second.id
        assert db.get_sync_state_by_source("gcontacts").id == first.id

    def test_begin_sync_is_exclusive(self, db):
        state = db.create_sync_state("gmail")
        assert db.begin_sync(state.id, T0)
        assert not db.begin_sync(state.id, T0)
        assert db.get_sync_state(state.id).status == SyncStatus.SYNCING

    def test_mark_success_resets_errors_and_keeps_cursor(self, db):
        state = db.create_sync_state("gmail")
        db.mark_sync_error(state.id, T0, T0 + timedelta(minutes=1), "boom")
        db.mark_sync_success(state.id, T0, T0 + timedelta(hours=1), "cursor-1")
        updated = db.mark_sync_success(state.id, T0, T0 + timedelta(hours=1), None)
        assert updated.status == SyncStatus.IDLE
        assert updated.error_count == 0
        assert updated.error_message is None
        assert updated.sync_cursor == "cursor-1"
        assert updated.last_successful_sync_at == T0

    def test_mark_error_increments(self, db):
        state = db.create_sync_state("gmail")
        db.mark_sync_error(state.id, T0, T0, "first")
        updated = db.mark_sync_error(state.id, T0, T0 + timedelta(minutes=5), "second")
        assert updated.status == SyncStatus.ERROR
        assert updated.error_count == 2
        assert updated.error_message == "second"
        assert updated.next_sync_at == T0 + timedelta(minutes=5)

    def test_due_states(self, db):
        never = db.create_sync_state("gmail", "a")
        due = db.create_sync_state("gmail", "b")
        future = db.create_sync_state("gmail", "c")
        disabled = db.create_sync_state("gmail", "d")
        errored = db.create_sync_state("gmail", "e")
        db.mark_sync_success(due.id, T0, T0 - timedelta(minutes=1))
        db.mark_sync_success(future.id, T0, T0 + timedelta(minutes=1))
        db.set_sync_enabled(disabled.id, False)
        db.mark_sync_error(errored.id, T0, T0, "retry now")

        ids = [s.id for s in db.list_due_sync_states(T0)]
        assert ids[0] == never.id
        assert set(ids) == {never.id, due.id, errored.id}

    def test_syncing_state_not_due(self, db):
        state = db.create_sync_state("gmail")
        db.begin_sync(state.id, T0)
        assert db.list_due_sync_states(T0 + timedelta(days=1)) == []

    def test_set_enabled_leaves_status(self, db):
        state = db.create_sync_state("gmail")
        db.mark_sync_error(state.id, T0, T0, "boom")
        updated = db.set_sync_enabled(state.id, False)
        assert not updated.enabled
        assert updated.status == SyncStatus.ERROR
        assert db.set_sync_enabled(999, True) is None

    def test_reset_recovers_stuck_syncing_state(self, db):
        state = db.create_sync_state("gmail")
        db.mark_sync_success(state.id, T0, T0 + timedelta(hours=1), "token")
        db.mark_sync_error(state.id, T0, T0 + timedelta(hours=1), "boom")
        db.begin_sync(state.id, T0)

        updated = db.reset_sync_state(state.id)

        assert updated.status == SyncStatus.IDLE
        assert updated.error_count == 0
        assert updated.error_message is None
        assert updated.next_sync_at is None
        assert updated.sync_cursor == "token"
        assert [s.id for s in db.list_due_sync_states(T0)] == [state.id]

    def test_reset_can_clear_cursor(self, db):
        state = db.create_sync_state("gmail")
        db.mark_sync_success(state.id, T0, T0, "token")
        assert db.reset_sync_state(state.id, clear_cursor=True).sync_cursor is None

    def test_reset_missing_state(self, db):
        assert db.reset_sync_state(999) is None


class TestSyncLogs:
    """Tests for sync log operations."""

    def test_create_and_complete(self, db):
        state = db.create_sync_state("gmail", "me")
        log = db.create_sync_log(state, T0)
        assert log.status == SyncLogStatus.RUNNING
        assert log.account_id == "me"
        assert log.duration_seconds is None

        done = db.complete_sync_log(
            log.id, SyncLogStatus.SUCCESS, T0 + timedelta(seconds=3), 10, 4, 2
        )
        assert done.status == SyncLogStatus.SUCCESS
        assert (done.items_processed, done.items_matched, done.items_created) == (10, 4, 2)
        assert done.duration_seconds == 3.0

    def test_complete_only_once(self, db):
        state = db.create_sync_state("gmail")
        log = db.create_sync_log(state, T0)
        db.complete_sync_log(log.id, SyncLogStatus.ERROR, T0, error_message="first")
        again = db.complete_sync_log(log.id, SyncLogStatus.SUCCESS, T0 + timedelta(hours=1))
        assert again.status == SyncLogStatus.ERROR
        assert again.error_message == "first"

    def test_list_newest_first_and_count(self, db):
        state = db.create_sync_state("gmail")
        old = db.create_sync_log(state, T0)
        new = db.create_sync_log(state, T0 + timedelta(minutes=1))
        assert [log.id for log in db.list_sync_logs(state.id)] == [new.id, old.id]
        assert [log.id for log in db.list_sync_logs(state.id, limit=1, offset=1)] == [old.id]
        assert db.count_sync_logs(state.id) == 2
        assert db.list_recent_sync_logs(1)[0].id == new.id

    def test_delete_before(self, db):
        state = db.create_sync_state("gmail")
        db.create_sync_log(state, T0 - timedelta(days=40))
        kept = db.create_sync_log(state, T0)
        assert db.delete_sync_logs_before(T0 - timedelta(days=30)) == 1
        assert [log.id for log in db.list_sync_logs(state.id)] == [kept.id]


def _external(source_id="people/c1", **kwargs):
    kwargs.setdefault("display_name", "Jane Doe")
    kwargs.setdefault("emails", [EmailEntry("jane@example.com", "home", True)])
    return ExternalContact(source="gcontacts", source_id=source_id, account_id="me", **kwargs)


class TestExternalContacts:
    """Tests for external contact operations."""

    def test_upsert_inserts(self, db):
        stored = db.upsert_external_contact(
            _external(
                phones=[PhoneEntry("555 123 4567", "mobile")],
                addresses=[AddressEntry("Berlin", "home")],
                birthday=date(1990, 4, 2),
            ),
            synced_at=T0,
        )
        assert stored.id is not None
        assert stored.match_status == MatchStatus.UNMATCHED
        assert stored.emails[0].primary
        assert stored.phones[0].value == "555 123 4567"
        assert stored.addresses[0].formatted == "Berlin"
        assert stored.birthday == date(1990, 4, 2)
        assert stored.created_at is not None

    def test_upsert_updates_but_preserves_match(self, db, jane):
        stored = db.upsert_external_contact(_external())
        db.update_external_contact_match(stored.id, jane.id, MatchStatus.MATCHED)

        refreshed = db.upsert_external_contact(_external(display_name="Jane D."))
        assert refreshed.id == stored.id
        assert refreshed.display_name == "Jane D."
        assert refreshed.match_status == MatchStatus.MATCHED
        assert refreshed.crm_contact_id == jane.id

    def test_key_includes_account(self, db):
        a = db.upsert_external_contact(_external())
        b = db.upsert_external_contact(
            ExternalContact(source="gcontacts", source_id="people/c1", account_id="other")
        )
        assert a.id != b.id

    def test_unmatched_listing_excludes_duplicates_and_matched(self, db, jane):
        first = db.upsert_external_contact(_external("people/c1"))
        dup = db.upsert_external_contact(_external("people/c2"))
        matched = db.upsert_external_contact(_external("people/c3"))
        db.mark_external_duplicate(dup.id, first.id)
        db.update_external_contact_match(matched.id, jane.id, MatchStatus.MATCHED)

        assert [e.id for e in db.list_unmatched_external_contacts()] == [first.id]
        assert db.count_unmatched_external_contacts() == 1
        assert db.count_unmatched_external_contacts("gmail") == 0

    def test_find_by_email_case_insensitive(self, db):
        stored = db.upsert_external_contact(_external())
        found = db.find_external_contacts_by_email(" JANE@example.com")
        assert [e.id for e in found] == [stored.id]


class TestEnrichments:
    """Tests for enrichment audit records."""

    def test_record_once_per_field(self, db, jane):
        assert db.record_enrichment(jane.id, "gcontacts", "birthday", "me", None, "1990-04-02")
        assert not db.record_enrichment(jane.id, "gcontacts", "birthday", "me", None, "1991")
        assert db.has_enrichment(jane.id, "birthday")
        assert not db.has_enrichment(jane.id, "location")

        records = db.list_enrichments(jane.id)
        assert len(records) == 1
        assert records[0].original_value == "1990-04-02"

    def test_statistics(self, db, jane):
        db.upsert_identity("x@example.com", "email", "gmail", MatchType.UNMATCHED)
        stats = db.get_statistics()
        assert stats["contacts"] == 1
        assert stats["identities"] == 1
        assert stats["unmatched_identities"] == 1
