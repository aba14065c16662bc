"""Tests for identifier and name normalization."""

import pytest

from crm_sync.utils.normalization import (
    ContactMethodType,
    IdentifierType,
    detect_identifier_type,
    identifier_type_for_method,
    method_types_for_identifier,
    name_similarity,
    normalize_email,
    normalize_identifier,
    normalize_method_value,
    normalize_phone,
    normalize_string,
    normalize_telegram,
)


class TestNormalizeEmail:
    """Tests for email normalization."""

    def test_lowercases_and_trims(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    def test_empty_returns_empty(self):
        assert normalize_email("") == ""


class TestNormalizePhone:
    """Tests for E.164 phone normalization."""

    def test_ten_digit_number_gets_north_american_prefix(self):
        assert normalize_phone("(555) 123-4567") == "+15551234567"

    def test_plus_prefix_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_eleven_digits_without_plus(self):
        assert normalize_phone("1-555-123-4567") == "+15551234567"

    def test_ten_digits_with_plus_not_prefixed(self):
        assert normalize_phone("+5551234567") == "+5551234567"

    def test_no_digits_returns_empty(self):
        assert normalize_phone("call me") == ""
        assert normalize_phone("") == ""


class TestNormalizeTelegram:
    def test_strips_at_and_lowercases(self):
        assert normalize_telegram(" @JaneDoe ") == "janedoe"


class TestNormalizeIdentifier:
    """Tests for type-dispatched normalization."""

    @pytest.mark.parametrize(
        "raw,identifier_type,expected",
        [
            ("Jane@Example.com", IdentifierType.EMAIL, "jane@example.com"),
            ("Jane@Example.com", IdentifierType.IMESSAGE_EMAIL, "jane@example.com"),
            ("555.123.4567", IdentifierType.PHONE, "+15551234567"),
            ("555.123.4567", IdentifierType.WHATSAPP, "+15551234567"),
            ("@Jane", IdentifierType.TELEGRAM, "jane"),
        ],
    )
    def test_dispatch_by_type(self, raw, identifier_type, expected):
        assert normalize_identifier(raw, identifier_type) == expected

    def test_accepts_string_type(self):
        assert normalize_identifier("A@B.COM", "email") == "a@b.com"

    def test_none_returns_empty(self):
        assert normalize_identifier(None, IdentifierType.EMAIL) == ""

    def test_unknown_type_trims_only(self):
        assert normalize_identifier("  Handle ", "discord") == "Handle"

    @pytest.mark.parametrize(
        "raw,identifier_type",
        [
            (" Mixed@Case.Org ", IdentifierType.EMAIL),
            ("+1 (555) 000-1111", IdentifierType.PHONE),
            ("555 000 1111", IdentifierType.IMESSAGE_PHONE),
            ("@@Someone", IdentifierType.TELEGRAM),
        ],
    )
    def test_idempotent(self, raw, identifier_type):
        once = normalize_identifier(raw, identifier_type)
        assert normalize_identifier(once, identifier_type) == once


class TestMethodTypeMapping:
    """Tests for identifier/method type mapping."""

    def test_email_searches_personal_and_work(self):
        assert method_types_for_identifier(IdentifierType.EMAIL) == (
            ContactMethodType.EMAIL_PERSONAL,
            ContactMethodType.EMAIL_WORK,
        )

    def test_whatsapp_also_matches_phone(self):
        types = method_types_for_identifier(IdentifierType.WHATSAPP)
        assert ContactMethodType.PHONE in types
        assert ContactMethodType.WHATSAPP in types

    def test_unknown_identifier_type(self):
        assert method_types_for_identifier("carrier_pigeon") == ()

    def test_identifier_type_for_method(self):
        assert identifier_type_for_method("email_work") == IdentifierType.EMAIL
        assert identifier_type_for_method(ContactMethodType.PHONE) == IdentifierType.PHONE
        assert identifier_type_for_method("twitter") is None
        assert identifier_type_for_method("unknown") is None

    def test_normalize_method_value(self):
        assert normalize_method_value("A@B.com", "email_personal") == "a@b.com"
        assert normalize_method_value(" @handle ", "twitter") == "@handle"


class TestDetectIdentifierType:
    def test_email(self):
        assert detect_identifier_type("jane@example.com") == IdentifierType.EMAIL

    def test_plus_prefixed_phone(self):
        assert detect_identifier_type("+15551234567") == IdentifierType.PHONE

    def test_formatted_phone(self):
        assert detect_identifier_type("(555) 123-4567") == IdentifierType.PHONE

    def test_inconclusive_defaults_to_email(self):
        assert detect_identifier_type("abc") == IdentifierType.EMAIL


class TestNormalizeString:
    """Tests for free-text normalization."""

    def test_accents_removed(self):
        assert normalize_string("José") == "jose"

    def test_sort_words(self):
        assert normalize_string("Doe John", sort_words=True) == normalize_string(
            "John Doe", sort_words=True
        )

    def test_keep_spaces(self):
        assert normalize_string("  Jane   Doe ", remove_spaces=False) == "jane doe"

    def test_empty(self):
        assert normalize_string("") == ""


class TestNameSimilarity:
    """Tests for fuzzy name similarity."""

    def test_identical_names(self):
        assert name_similarity("Jane Doe", "jane doe") == 1.0

    def test_word_order_ignored(self):
        assert name_similarity("Doe Jane", "Jane Doe") == 1.0

    def test_similar_names_score_high(self):
        assert name_similarity("Jon Smith", "John Smith") > 0.8

    def test_unrelated_names_score_low(self):
        assert name_similarity("Jane Doe", "Bob Xu") < 0.4

    def test_empty_name_scores_zero(self):
        assert name_similarity("", "Jane") == 0.0
