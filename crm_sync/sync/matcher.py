"""
Fuzzy matching of external contacts against existing contacts.

Scores candidates found by name similarity, using identifier overlap
(shared emails and phone numbers) as a confirming signal:

    score = similarity * name_weight + (matches / comparable) * method_weight

The overlap term only applies when the candidate has comparable methods, so
a missing overlap never pushes the score above the name signal. Matching is
advisory only: nothing here writes to the database.
"""

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Optional

from crm_sync.errors import CRMSyncError
from crm_sync.utils.logging import log_match_decision
from crm_sync.utils.normalization import (
    EMAIL_METHOD_TYPES,
    ContactMethodType,
    normalize_email,
    normalize_phone,
)

if TYPE_CHECKING:
    from crm_sync.storage.db import CRMDatabase
    from crm_sync.sync.contact import Contact, ExternalContact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FuzzyConfig:
    """
    Thresholds and weights for fuzzy matching.

    Attributes:
        min_similarity_threshold: Minimum name similarity for a candidate
        confidence_threshold: Minimum score for a suggestion
        name_weight: Weight of the name similarity
        method_weight: Weight of the identifier overlap ratio
        candidate_limit: Maximum number of candidates scored
    """

    min_similarity_threshold: float
    confidence_threshold: float
    name_weight: float
    method_weight: float
    candidate_limit: int = 5

    def score(self, similarity: float, method_matches: int, total_methods: int) -> float:
        """Blend name similarity and identifier overlap into a 0..1 score."""
        result = similarity * self.name_weight
        if total_methods > 0:
            result += (method_matches / total_methods) * self.method_weight
        return result

    @classmethod
    def from_config(
        cls, config: dict[str, Any], base: Optional["FuzzyConfig"] = None
    ) -> "FuzzyConfig":
        """
        Build a FuzzyConfig from configuration values.

        Keys that are missing (or None) keep the values of ``base``
        (IMPORT_CONFIG by default).
        """
        base = base or IMPORT_CONFIG
        overrides = {
            key: config[key]
            for key in (
                "min_similarity_threshold",
                "confidence_threshold",
                "name_weight",
                "method_weight",
                "candidate_limit",
            )
            if config.get(key) is not None
        }
        return replace(base, **overrides)


# Import candidates: suggest anything reasonably close
IMPORT_CONFIG = FuzzyConfig(
    min_similarity_threshold=0.3,
    confidence_threshold=0.5,
    name_weight=0.6,
    method_weight=0.4,
)

# Calendar attendees are auto-linked, so require more confidence
CALENDAR_CONFIG = FuzzyConfig(
    min_similarity_threshold=0.3,
    confidence_threshold=0.7,
    name_weight=0.6,
    method_weight=0.4,
)


@dataclass
class SuggestedMatch:
    """A contact suggested for an external record."""

    contact_id: int
    contact_name: str
    confidence: float


def count_method_overlap(
    contact: "Contact", emails: set[str], phones: set[str]
) -> tuple[int, int]:
    """
    Count a contact's email/phone methods that appear in the given sets.

    Args:
        contact: Candidate contact
        emails: Normalized external emails
        phones: Normalized external phone numbers

    Returns:
        (matching methods, comparable methods)
    """
    matches = 0
    total = 0
    for method in contact.methods:
        if method.type in EMAIL_METHOD_TYPES:
            total += 1
            if normalize_email(method.value) in emails:
                matches += 1
        elif method.type == ContactMethodType.PHONE:
            total += 1
            if normalize_phone(method.value) in phones:
                matches += 1
    return matches, total


class ImportMatcher:
    """
    Suggests existing contacts for unmatched external records.

    Usage:
        matcher = ImportMatcher(db)
        suggestion = matcher.find_best_match(external_contact)
        if suggestion:
            print(suggestion.contact_name, suggestion.confidence)
    """

    def __init__(self, contact_store: "CRMDatabase", config: FuzzyConfig = IMPORT_CONFIG):
        self.contact_store = contact_store
        self.config = config

    def find_best_match(self, external: "ExternalContact") -> Optional[SuggestedMatch]:
        """
        Find the best matching contact for an external record.

        Candidates are scored in similarity order and only a strictly higher
        score replaces the current best, so the most similar name wins ties.

        Returns:
            SuggestedMatch if the best score reaches the confidence
            threshold, otherwise None
        """
        name = external.candidate_name()
        if not name:
            return None

        try:
            candidates = self.contact_store.find_similar_contacts(
                name, self.config.min_similarity_threshold, self.config.candidate_limit
            )
        except CRMSyncError as e:
            logger.warning(f"Failed to find similar contacts for {name!r}: {e}")
            return None

        emails = {normalize_email(e.value) for e in external.emails if e.value}
        phones = {normalize_phone(p.value) for p in external.phones if p.value}
        emails.discard("")
        phones.discard("")

        best: Optional[SuggestedMatch] = None
        best_score = 0.0
        for contact, similarity in candidates:
            matches, total = count_method_overlap(contact, emails, phones)
            score = self.config.score(similarity, matches, total)
            logger.debug(
                f"Candidate {contact.full_name!r} for {name!r}: similarity={similarity:.2f} "
                f"overlap={matches}/{total} score={score:.2f}"
            )
            if score >= self.config.confidence_threshold and score > best_score:
                best_score = score
                best = SuggestedMatch(
                    contact_id=contact.id,
                    contact_name=contact.full_name,
                    confidence=score,
                )

        log_match_decision(
            "import",
            name=name,
            candidates=len(candidates),
            suggestion=best.contact_id if best else None,
            confidence=round(best_score, 3),
        )
        return best


__all__ = [
    "FuzzyConfig",
    "IMPORT_CONFIG",
    "CALENDAR_CONFIG",
    "SuggestedMatch",
    "ImportMatcher",
    "count_method_overlap",
]
