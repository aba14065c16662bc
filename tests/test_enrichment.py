"""
Tests for additive contact enrichment.

Enrichment must only fill gaps: user-entered values are never overwritten,
and every write leaves an audit record.
"""

from datetime import date

import pytest

from crm_sync.errors import ConflictError, NotFoundError, PersistenceError
from crm_sync.sync.contact import AddressEntry, EmailEntry, ExternalContact, PhoneEntry
from crm_sync.sync.enrichment import (
    USE_CRM,
    USE_EXTERNAL,
    EnrichmentMerger,
    MethodSelection,
    email_method_type,
)
from crm_sync.utils.normalization import ContactMethodType


@pytest.fixture
def merger(db, clock):
    return EnrichmentMerger(db, clock=clock)


@pytest.fixture
def external(db):
    return db.upsert_external_contact(
        ExternalContact(
            source="gcontacts",
            source_id="people/c1",
            account_id="me@example.com",
            display_name="Jane Doe",
            emails=[
                EmailEntry("jane@example.com", "home"),
                EmailEntry("jane@work.com", "Work"),
            ],
            phones=[PhoneEntry("555-123-4567", "mobile"), PhoneEntry("+44 20 7946 0958")],
            addresses=[AddressEntry("Berlin, Germany", "home")],
            birthday=date(1990, 4, 2),
            photo_url="https://example.com/jane.jpg",
        )
    )


class TestEmailMethodType:
    def test_work(self):
        assert email_method_type("WORK") == ContactMethodType.EMAIL_WORK

    def test_default_personal(self):
        assert email_method_type(None) == ContactMethodType.EMAIL_PERSONAL
        assert email_method_type("home") == ContactMethodType.EMAIL_PERSONAL


class TestEnrichContactFromExternal:
    """Tests for automatic enrichment."""

    def test_fills_empty_fields_and_new_methods(self, db, merger, jane, external):
        written = merger.enrich_contact_from_external(jane.id, external)

        contact = db.get_contact(jane.id)
        assert contact.profile_photo == "https://example.com/jane.jpg"
        assert contact.birthday == date(1990, 4, 2)
        assert contact.location == "Berlin, Germany"

        values = {m.normalized_value: m for m in contact.methods}
        assert values["jane@work.com"].type == "email_work"
        assert values["+442079460958"].type == "phone"
        assert not values["+442079460958"].is_primary
        assert len(contact.methods) == 4

        assert set(written) == {
            "profile_photo",
            "birthday",
            "location",
            "method:email_work:jane@work.com",
            "method:phone:+442079460958",
        }

    def test_never_overwrites_user_values(self, db, merger, jane, external):
        db.update_contact(jane.id, location="Lisbon", birthday=date(1985, 1, 1))
        written = merger.enrich_contact_from_external(jane.id, external)

        contact = db.get_contact(jane.id)
        assert contact.location == "Lisbon"
        assert contact.birthday == date(1985, 1, 1)
        assert "location" not in written
        assert "birthday" not in written

    def test_existing_methods_not_duplicated(self, db, merger, jane, external):
        merger.enrich_contact_from_external(jane.id, external)
        second = merger.enrich_contact_from_external(jane.id, external)
        assert second == []
        assert len(db.get_contact(jane.id).methods) == 4

    def test_records_audit_trail(self, merger, jane, external, clock):
        merger.enrich_contact_from_external(jane.id, external)
        assert merger.has_enrichment(jane.id, "birthday")
        records = {r.field: r for r in merger.list_enrichments(jane.id)}
        birthday = records["birthday"]
        assert birthday.source == "gcontacts"
        assert birthday.account_id == "me@example.com"
        assert birthday.external_contact_id == external.id
        assert birthday.original_value == "1990-04-02"
        assert birthday.enriched_at == clock.now

    def test_missing_contact(self, merger, external):
        with pytest.raises(NotFoundError):
            merger.enrich_contact_from_external(999, external)

    def test_write_failure_does_not_stop_others(self, db, merger, jane, external, monkeypatch):
        original = db.fill_contact_field

        def flaky_fill(contact_id, field, value):
            if field == "birthday":
                raise PersistenceError("disk full")
            return original(contact_id, field, value)

        monkeypatch.setattr(db, "fill_contact_field", flaky_fill)
        written = merger.enrich_contact_from_external(jane.id, external)
        assert "birthday" not in written
        assert "location" in written
        assert db.get_contact(jane.id).birthday is None

    def test_concurrently_filled_field_skipped(self, db, merger, jane, external, monkeypatch):
        monkeypatch.setattr(db, "fill_contact_field", lambda *args: False)
        written = merger.enrich_contact_from_external(jane.id, external)
        assert not {"profile_photo", "birthday", "location"} & set(written)


class TestEnrichWithSelections:
    """Tests for user-selected enrichment."""

    def test_adds_selected_methods_only(self, db, merger, external):
        contact = db.create_contact("Jane")
        written = merger.enrich_with_selections(
            contact.id,
            external,
            [MethodSelection("jane@work.com", ContactMethodType.EMAIL_WORK.value)],
        )
        methods = db.get_contact(contact.id).methods
        assert [m.value for m in methods] == ["jane@work.com"]
        assert "method:email_work:jane@work.com" in written

    def test_occupied_type_kept_by_default(self, db, merger, jane, external):
        merger.enrich_with_selections(
            jane.id, external, [MethodSelection("+44 20 7946 0958", "phone")]
        )
        phones = db.get_contact(jane.id).methods_of_type("phone")
        assert [p.normalized_value for p in phones] == ["+15551234567"]

    def test_use_crm_keeps_existing(self, db, merger, jane, external):
        merger.enrich_with_selections(
            jane.id,
            external,
            [MethodSelection("+44 20 7946 0958", "phone")],
            {"+44 20 7946 0958": USE_CRM},
        )
        phones = db.get_contact(jane.id).methods_of_type("phone")
        assert phones[0].normalized_value == "+15551234567"

    def test_use_external_replaces(self, db, merger, jane, external):
        written = merger.enrich_with_selections(
            jane.id,
            external,
            [MethodSelection("+44 20 7946 0958", "phone")],
            {"+44 20 7946 0958": USE_EXTERNAL},
        )
        phones = db.get_contact(jane.id).methods_of_type("phone")
        assert [p.normalized_value for p in phones] == ["+442079460958"]
        assert "method:phone:replaced" in written

    def test_unknown_value_reported_after_processing(self, db, merger, external):
        contact = db.create_contact("Jane")
        with pytest.raises(ConflictError, match="not found"):
            merger.enrich_with_selections(
                contact.id,
                external,
                [
                    MethodSelection("nobody@example.com", "email_personal"),
                    MethodSelection("jane@work.com", "email_work"),
                ],
            )
        assert [m.value for m in db.get_contact(contact.id).methods] == ["jane@work.com"]

    def test_already_present_value_skipped(self, db, merger, jane, external):
        written = merger.enrich_with_selections(
            jane.id, external, [MethodSelection("jane@example.com", "email_work")]
        )
        assert not [w for w in written if w.startswith("method:")]
