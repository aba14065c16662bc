"""
Contact data models for the sync layer.

Provides:
- Contact / ContactMethod: the locally owned contact record and the
  identifying methods (emails, phones, handles) that identities match against
- ExternalContact: a contact-like record as seen by an external source,
  with conversion from the Google People API format
"""

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from crm_sync.storage.models import MatchStatus, from_db_timestamp
from crm_sync.utils.normalization import EMAIL_METHOD_TYPES, ContactMethodType


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a stored ISO date (YYYY-MM-DD), tolerating empty values."""
    if not value:
        return None
    return date.fromisoformat(value[:10])


@dataclass
class ContactMethod:
    """An identifying method (email, phone, handle) of a contact."""

    id: int
    contact_id: int
    type: str
    value: str
    normalized_value: str = ""
    is_primary: bool = False

    @property
    def is_email(self) -> bool:
        return self.type in EMAIL_METHOD_TYPES

    @property
    def is_phone(self) -> bool:
        return self.type == ContactMethodType.PHONE

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ContactMethod":
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            type=row["type"],
            value=row["value"],
            normalized_value=row["normalized_value"],
            is_primary=bool(row["is_primary"]),
        )


@dataclass
class Contact:
    """
    A locally owned contact record.

    Attributes:
        id: Local contact ID
        full_name: Name as entered by the user
        location: Free-text location
        birthday: Date of birth
        profile_photo: URL of the profile photo
        last_contacted: Last time the user was in touch
        methods: Identifying methods, loaded with the contact
    """

    id: int
    full_name: str
    location: Optional[str] = None
    birthday: Optional[date] = None
    profile_photo: Optional[str] = None
    last_contacted: Optional[datetime] = None
    methods: list[ContactMethod] = field(default_factory=list)

    def methods_of_type(self, *types: str) -> list[ContactMethod]:
        """Return methods whose type is one of ``types``."""
        return [m for m in self.methods if m.type in types]

    @property
    def emails(self) -> list[ContactMethod]:
        return self.methods_of_type(*EMAIL_METHOD_TYPES)

    @classmethod
    def from_row(
        cls, row: sqlite3.Row, methods: Optional[list[ContactMethod]] = None
    ) -> "Contact":
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            location=row["location"],
            birthday=parse_date(row["birthday"]),
            profile_photo=row["profile_photo"],
            last_contacted=from_db_timestamp(row["last_contacted"]),
            methods=methods or [],
        )


@dataclass
class EmailEntry:
    """Email address as reported by a source."""

    value: str
    type: str = ""
    primary: bool = False


@dataclass
class PhoneEntry:
    """Phone number as reported by a source."""

    value: str
    type: str = ""
    primary: bool = False


@dataclass
class AddressEntry:
    """Postal address as reported by a source."""

    formatted: str
    type: str = ""


def _load_entries(raw: Optional[str], entry_cls: type) -> list:
    if not raw:
        return []
    return [entry_cls(**item) for item in json.loads(raw)]


def dump_entries(entries: list) -> str:
    """Serialize email/phone/address entries as JSON for storage."""
    return json.dumps([asdict(entry) for entry in entries])


@dataclass
class ExternalContact:
    """
    A contact-like record held by an external source.

    ``match_status`` moves from unmatched to matched, imported or ignored
    only through identity resolution or an explicit import action.
    """

    source: str
    source_id: str
    id: Optional[int] = None
    account_id: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    emails: list[EmailEntry] = field(default_factory=list)
    phones: list[PhoneEntry] = field(default_factory=list)
    addresses: list[AddressEntry] = field(default_factory=list)
    organization: Optional[str] = None
    job_title: Optional[str] = None
    birthday: Optional[date] = None
    photo_url: Optional[str] = None
    etag: Optional[str] = None
    crm_contact_id: Optional[int] = None
    match_status: MatchStatus = MatchStatus.UNMATCHED
    duplicate_of_id: Optional[int] = None
    created_at: Optional[datetime] = None

    def candidate_name(self) -> str:
        """
        Derive the name used for fuzzy matching.

        Prefers the display name, then "first last", then the first name.
        Returns "" when no name can be derived.
        """
        if self.display_name:
            return self.display_name
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        if self.first_name:
            return self.first_name
        return ""

    def has_data(self) -> bool:
        """Check whether the record carries a name, email or phone."""
        return bool(self.candidate_name() or self.emails or self.phones)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExternalContact":
        return cls(
            id=row["id"],
            source=row["source"],
            source_id=row["source_id"],
            account_id=row["account_id"],
            display_name=row["display_name"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            emails=_load_entries(row["emails"], EmailEntry),
            phones=_load_entries(row["phones"], PhoneEntry),
            addresses=_load_entries(row["addresses"], AddressEntry),
            organization=row["organization"],
            job_title=row["job_title"],
            birthday=parse_date(row["birthday"]),
            photo_url=row["photo_url"],
            etag=row["etag"],
            crm_contact_id=row["crm_contact_id"],
            match_status=MatchStatus(row["match_status"]),
            duplicate_of_id=row["duplicate_of_id"],
            created_at=from_db_timestamp(row["created_at"]),
        )

    @classmethod
    def from_person(
        cls, person: dict[str, Any], source: str, account_id: Optional[str] = None
    ) -> "ExternalContact":
        """
        Create an ExternalContact from a Google People API person.

        Example person structure::

            {
                'resourceName': 'people/c12345',
                'etag': 'abc123',
                'names': [{'displayName': 'John Doe', 'givenName': 'John'}],
                'emailAddresses': [{'value': 'john@example.com', 'type': 'work',
                                    'metadata': {'primary': True}}],
                'phoneNumbers': [{'value': '+1 555 123 4567', 'type': 'mobile'}],
                'addresses': [{'formattedValue': 'Berlin', 'type': 'home'}],
                'organizations': [{'name': 'Acme', 'title': 'Engineer'}],
                'birthdays': [{'date': {'year': 1990, 'month': 4, 'day': 2}}],
                'photos': [{'url': 'https://...'}]
            }
        """
        names = person.get("names") or [{}]
        name = names[0]

        emails = [
            EmailEntry(
                value=e["value"],
                type=e.get("type", ""),
                primary=bool(e.get("metadata", {}).get("primary", False)),
            )
            for e in person.get("emailAddresses", [])
            if e.get("value")
        ]
        phones = [
            PhoneEntry(
                value=p["value"],
                type=p.get("type", ""),
                primary=bool(p.get("metadata", {}).get("primary", False)),
            )
            for p in person.get("phoneNumbers", [])
            if p.get("value")
        ]
        addresses = [
            AddressEntry(formatted=a.get("formattedValue", ""), type=a.get("type", ""))
            for a in person.get("addresses", [])
        ]

        organization = None
        job_title = None
        organizations = person.get("organizations", [])
        if organizations:
            organization = organizations[0].get("name") or None
            job_title = organizations[0].get("title") or None

        birthday = None
        birthdays = person.get("birthdays", [])
        if birthdays and birthdays[0].get("date"):
            parts = birthdays[0]["date"]
            # Birthdays without a year can't be stored as a date
            if parts.get("year") and parts.get("month") and parts.get("day"):
                try:
                    birthday = date(parts["year"], parts["month"], parts["day"])
                except ValueError:
                    birthday = None

        photos = person.get("photos", [])
        photo_url = photos[0].get("url") or None if photos else None

        return cls(
            source=source,
            source_id=person.get("resourceName", ""),
            account_id=account_id,
            display_name=name.get("displayName") or None,
            first_name=name.get("givenName") or None,
            last_name=name.get("familyName") or None,
            emails=emails,
            phones=phones,
            addresses=addresses,
            organization=organization,
            job_title=job_title,
            birthday=birthday,
            photo_url=photo_url,
            etag=person.get("etag") or None,
        )

    def __repr__(self) -> str:
        return (
            f"ExternalContact(id={self.id}, source={self.source!r}, "
            f"name={self.candidate_name()!r}, status={self.match_status.value})"
        )


__all__ = [
    "Contact",
    "ContactMethod",
    "ExternalContact",
    "EmailEntry",
    "PhoneEntry",
    "AddressEntry",
    "dump_entries",
    "parse_date",
]
