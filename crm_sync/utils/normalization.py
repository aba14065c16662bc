"""
Identifier normalization utilities for identity matching.

Provides consistent canonical forms for external identifiers (emails,
phone numbers, chat handles) so values observed by different sources can be
compared against the contact methods stored locally.

Normalization rules:
    - Email: lowercase, trim whitespace
    - Phone: strip all non-digits, normalize to E.164 format
    - Telegram: remove @ prefix, lowercase
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum

from rapidfuzz import fuzz


class IdentifierType(str, Enum):
    """Type of an external identifier."""

    EMAIL = "email"
    PHONE = "phone"
    TELEGRAM = "telegram"
    IMESSAGE_EMAIL = "imessage_email"
    IMESSAGE_PHONE = "imessage_phone"
    WHATSAPP = "whatsapp"


class ContactMethodType(str, Enum):
    """Contact method types stored on local contacts."""

    EMAIL_PERSONAL = "email_personal"
    EMAIL_WORK = "email_work"
    PHONE = "phone"
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    DISCORD = "discord"
    TWITTER = "twitter"
    SIGNAL = "signal"
    GCHAT = "gchat"


EMAIL_METHOD_TYPES = (ContactMethodType.EMAIL_PERSONAL, ContactMethodType.EMAIL_WORK)

_EMAIL_TYPES = {IdentifierType.EMAIL, IdentifierType.IMESSAGE_EMAIL}
_PHONE_TYPES = {
    IdentifierType.PHONE,
    IdentifierType.IMESSAGE_PHONE,
    IdentifierType.WHATSAPP,
}

_METHOD_TYPES_BY_IDENTIFIER: dict[IdentifierType, tuple[ContactMethodType, ...]] = {
    IdentifierType.EMAIL: EMAIL_METHOD_TYPES,
    IdentifierType.IMESSAGE_EMAIL: EMAIL_METHOD_TYPES,
    IdentifierType.PHONE: (ContactMethodType.PHONE,),
    IdentifierType.IMESSAGE_PHONE: (ContactMethodType.PHONE,),
    IdentifierType.TELEGRAM: (ContactMethodType.TELEGRAM,),
    IdentifierType.WHATSAPP: (ContactMethodType.WHATSAPP, ContactMethodType.PHONE),
}

_NON_DIGIT = re.compile(r"\D")

# Minimum digit count for a string to be treated as a phone number
MIN_PHONE_DIGITS = 7


def normalize_email(email: str) -> str:
    """Normalize an email address by lowercasing and trimming whitespace."""
    if not email:
        return ""
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to E.164 format.

    Strips all non-digit characters and applies North American country code
    handling for bare 10-digit numbers.

    Args:
        phone: Raw phone number in any formatting

    Returns:
        E.164 string (e.g. "+15551234567"), or "" if no digits remain
    """
    if not phone:
        return ""

    phone = phone.strip()
    digits = _NON_DIGIT.sub("", phone)
    if not digits:
        return ""

    if len(digits) == 10 and not phone.startswith("+"):
        return "+1" + digits

    return "+" + digits


def normalize_telegram(handle: str) -> str:
    """Normalize a Telegram handle by removing the @ prefix and lowercasing."""
    if not handle:
        return ""
    return handle.strip().lstrip("@").strip().lower()


def normalize_identifier(raw: str | None, identifier_type: IdentifierType | str) -> str:
    """
    Return the canonical form of an identifier for its type.

    The result is deterministic and idempotent:
    ``normalize_identifier(normalize_identifier(x, t), t) == normalize_identifier(x, t)``.

    Args:
        raw: Identifier as observed by the source
        identifier_type: IdentifierType (or its string value)

    Returns:
        Normalized identifier, or "" when the input is unusable. Callers must
        reject an empty result instead of matching on it.
    """
    if raw is None:
        return ""

    try:
        id_type = IdentifierType(identifier_type)
    except ValueError:
        return raw.strip()

    if id_type in _EMAIL_TYPES:
        return normalize_email(raw)
    if id_type in _PHONE_TYPES:
        return normalize_phone(raw)
    if id_type == IdentifierType.TELEGRAM:
        return normalize_telegram(raw)
    return raw.strip()


def method_types_for_identifier(
    identifier_type: IdentifierType | str,
) -> tuple[ContactMethodType, ...]:
    """
    Map an identifier type to the contact method types it may match.

    Email identifiers search both personal and work email methods; WhatsApp
    numbers also match plain phone methods.
    """
    try:
        return _METHOD_TYPES_BY_IDENTIFIER[IdentifierType(identifier_type)]
    except ValueError:
        return ()


_IDENTIFIER_BY_METHOD: dict[ContactMethodType, IdentifierType] = {
    ContactMethodType.EMAIL_PERSONAL: IdentifierType.EMAIL,
    ContactMethodType.EMAIL_WORK: IdentifierType.EMAIL,
    ContactMethodType.PHONE: IdentifierType.PHONE,
    ContactMethodType.TELEGRAM: IdentifierType.TELEGRAM,
    ContactMethodType.WHATSAPP: IdentifierType.WHATSAPP,
}


def identifier_type_for_method(
    method_type: ContactMethodType | str,
) -> IdentifierType | None:
    """
    Map a contact method type to the identifier type used to normalize it.

    Returns None for method types that have no identifier counterpart
    (discord, twitter, ...).
    """
    try:
        return _IDENTIFIER_BY_METHOD.get(ContactMethodType(method_type))
    except ValueError:
        return None


def normalize_method_value(value: str, method_type: ContactMethodType | str) -> str:
    """Normalize a stored contact method value according to its type."""
    identifier_type = identifier_type_for_method(method_type)
    if identifier_type is None:
        return value.strip() if value else ""
    return normalize_identifier(value, identifier_type)


def detect_identifier_type(identifier: str) -> IdentifierType:
    """
    Guess the identifier type from its format.

    Useful for sources such as iMessage that mix email and phone handles.
    Defaults to email when the format is inconclusive.
    """
    identifier = (identifier or "").strip()

    if "@" in identifier:
        return IdentifierType.EMAIL

    if identifier.startswith("+"):
        return IdentifierType.PHONE

    digits = _NON_DIGIT.sub("", identifier)
    if len(digits) >= MIN_PHONE_DIGITS and len(digits) / len(identifier) > 0.5:
        return IdentifierType.PHONE

    return IdentifierType.EMAIL


def normalize_string(
    value: str,
    sort_words: bool = False,
    remove_spaces: bool = True,
    strip_punctuation: bool = True,
) -> str:
    """
    Normalize a free-text string (typically a name) for comparison.

    Args:
        value: String to normalize
        sort_words: If True, sort words alphabetically before joining.
                   This handles name order variations like "Last, First"
                   vs "First Last".
        remove_spaces: If True, remove all spaces from the result.
                      If False, multiple spaces are collapsed to single space.
        strip_punctuation: If True, remove non-alphanumeric characters.

    Returns:
        Normalized lowercase string with accents removed
    """
    if not value:
        return ""

    # Decompose accents and drop the combining marks
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))
    normalized = normalized.lower()

    if strip_punctuation:
        normalized = re.sub(r"[^a-z0-9\s]", "", normalized)

    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        normalized = " ".join(sorted(normalized.split()))
        if remove_spaces:
            normalized = normalized.replace(" ", "")
    elif remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def name_similarity(name1: str, name2: str) -> float:
    """
    Score how similar two names are, from 0.0 to 1.0.

    Names are normalized first (accents, case, punctuation). The score is
    the better of a plain edit-distance ratio and a word-order-insensitive
    ratio, so "Doe John" and "John Doe" score 1.0.
    """
    first = normalize_string(name1, remove_spaces=False)
    second = normalize_string(name2, remove_spaces=False)
    if not first or not second:
        return 0.0

    ratio = fuzz.ratio(first, second)
    sorted_ratio = fuzz.token_sort_ratio(first, second)
    return max(ratio, sorted_ratio) / 100.0
