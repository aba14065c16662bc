"""Tests for fuzzy import matching."""

from unittest.mock import MagicMock

import pytest

from crm_sync.errors import PersistenceError
from crm_sync.sync.contact import Contact, EmailEntry, ExternalContact, PhoneEntry
from crm_sync.sync.matcher import (
    CALENDAR_CONFIG,
    IMPORT_CONFIG,
    FuzzyConfig,
    ImportMatcher,
    count_method_overlap,
)


def _external(name="Jane Doe", emails=(), phones=()):
    return ExternalContact(
        source="gcontacts",
        source_id="people/c1",
        display_name=name,
        emails=[EmailEntry(e) for e in emails],
        phones=[PhoneEntry(p) for p in phones],
    )


class TestFuzzyConfig:
    """Tests for score blending and configuration."""

    def test_score_without_methods_is_name_only(self):
        assert IMPORT_CONFIG.score(1.0, 0, 0) == pytest.approx(0.6)

    def test_score_with_full_overlap(self):
        assert IMPORT_CONFIG.score(1.0, 2, 2) == pytest.approx(1.0)

    def test_score_with_partial_overlap(self):
        assert IMPORT_CONFIG.score(0.5, 1, 2) == pytest.approx(0.3 + 0.2)

    def test_calendar_is_stricter(self):
        assert CALENDAR_CONFIG.confidence_threshold > IMPORT_CONFIG.confidence_threshold

    def test_from_config_overrides(self):
        config = FuzzyConfig.from_config({"confidence_threshold": 0.9, "name_weight": None})
        assert config.confidence_threshold == 0.9
        assert config.name_weight == IMPORT_CONFIG.name_weight

    def test_from_config_uses_base(self):
        config = FuzzyConfig.from_config({}, CALENDAR_CONFIG)
        assert config == CALENDAR_CONFIG


class TestCountMethodOverlap:
    def test_counts_emails_and_phones(self, jane):
        matches, total = count_method_overlap(jane, {"jane@example.com"}, {"+19999999999"})
        assert (matches, total) == (1, 2)

    def test_other_method_types_not_comparable(self, db):
        contact = db.create_contact("Tg", methods=[("telegram", "@tg", False)])
        assert count_method_overlap(contact, set(), set()) == (0, 0)


class TestImportMatcher:
    """Tests for ImportMatcher.find_best_match."""

    def test_exact_name_without_methods_suggested(self, db):
        contact = db.create_contact("Jane Doe")
        match = ImportMatcher(db).find_best_match(_external())
        assert match.contact_id == contact.id
        assert match.contact_name == "Jane Doe"
        assert match.confidence == pytest.approx(0.6)

    def test_method_overlap_raises_confidence(self, db, jane):
        match = ImportMatcher(db).find_best_match(
            _external(emails=["JANE@example.com"], phones=["555-123-4567"])
        )
        assert match.contact_id == jane.id
        assert match.confidence == pytest.approx(1.0)

    def test_no_overlap_with_methods_lowers_score(self, db, jane):
        match = ImportMatcher(db).find_best_match(_external(emails=["other@example.com"]))
        # Name signal alone: 1.0 * 0.6 + 0/2 * 0.4
        assert match.confidence == pytest.approx(0.6)

    def test_below_threshold_returns_none(self, db):
        db.create_contact("Jane Doe")
        strict = FuzzyConfig(0.3, 0.9, 0.6, 0.4)
        assert ImportMatcher(db, strict).find_best_match(_external()) is None

    def test_nameless_record_returns_none(self, db, jane):
        external = ExternalContact(source="gcontacts", source_id="x", emails=[EmailEntry("a@b.c")])
        assert ImportMatcher(db).find_best_match(external) is None

    def test_best_candidate_wins(self, db):
        db.create_contact("Jane Dobson")
        best = db.create_contact("Jane Doe")
        match = ImportMatcher(db).find_best_match(_external())
        assert match.contact_id == best.id

    def test_first_name_fallback(self, db):
        contact = db.create_contact("Jane Doe")
        external = ExternalContact(
            source="gcontacts", source_id="x", first_name="Jane", last_name="Doe"
        )
        assert ImportMatcher(db).find_best_match(external).contact_id == contact.id

    def test_store_failure_returns_none(self):
        store = MagicMock()
        store.find_similar_contacts.side_effect = PersistenceError("db down")
        assert ImportMatcher(store).find_best_match(_external()) is None

    def test_never_writes(self):
        store = MagicMock()
        store.find_similar_contacts.return_value = []
        ImportMatcher(store).find_best_match(_external())
        assert [c[0] for c in store.method_calls] == ["find_similar_contacts"]

    def test_equal_scores_keep_first_candidate(self):
        store = MagicMock()
        store.find_similar_contacts.return_value = [
            (Contact(id=7, full_name="Jane Doe"), 0.9),
            (Contact(id=3, full_name="Jane Doe"), 0.9),
        ]

        match = ImportMatcher(store).find_best_match(_external())

        assert match.contact_id == 7
        assert match.confidence == pytest.approx(0.9 * 0.6)
