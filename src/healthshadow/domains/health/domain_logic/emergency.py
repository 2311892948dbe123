"""Red-flag matching that runs ahead of, and independently from, diagnosis.

Matching is plain substring search over normalized text: every term of at
least one of a pattern's term groups must occur. Stemmed fragments such as
``swell`` or ``anaphyla`` are intentional. The matcher prefers a false alarm
to a missed emergency, so there is no confidence threshold here at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from healthshadow.core.collaborators.contacts import EmergencyContactLookup
from healthshadow.core.knowledge.models import EmergencyContact, EmergencyPattern
from healthshadow.core.knowledge.registry import KnowledgeRegistry

logger = logging.getLogger(__name__)

_NON_TEXT = re.compile(r"[^a-z0-9' ]+")
_SPACES = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, unify apostrophes and reduce punctuation to single spaces."""
    lowered = text.lower().replace("’", "'").replace("‘", "'")
    return _SPACES.sub(" ", _NON_TEXT.sub(" ", lowered)).strip()


@dataclass
class EmergencyAssessment:
    """Outcome of a red-flag match: what matched and what to do right now."""

    patterns: list[str]
    display_names: list[str]
    immediate_action: str
    contacts: list[EmergencyContact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patterns": list(self.patterns),
            "display_names": list(self.display_names),
            "immediate_action": self.immediate_action,
            "contacts": [
                {"service": c.service, "number": c.number, "location": c.location}
                for c in self.contacts
            ],
        }


class EmergencyMatcher:
    """Matches free text and reported symptoms against the red-flag list."""

    def __init__(
        self,
        registry: KnowledgeRegistry,
        contacts: EmergencyContactLookup | None = None,
    ) -> None:
        self._registry = registry
        self._contacts = contacts

    def matching_patterns(self, text: str, symptoms: Iterable[str] = ()) -> list[EmergencyPattern]:
        haystack = normalize_text(" ".join([text, *symptoms]))
        if not haystack:
            return []
        return [
            pattern
            for pattern in self._registry.patterns()
            if any(all(term in haystack for term in group) for group in pattern.term_groups)
        ]

    def match(
        self,
        text: str,
        symptoms: Iterable[str] = (),
        *,
        location: str | None = None,
    ) -> EmergencyAssessment | None:
        """Return an assessment when any pattern matches, otherwise None."""
        matched = self.matching_patterns(text, symptoms)
        if not matched:
            return None

        # patterns() is ordered by priority, so the first action is the most urgent
        assessment = EmergencyAssessment(
            patterns=[p.id for p in matched],
            display_names=[p.display_name for p in matched],
            immediate_action=matched[0].immediate_action,
            contacts=self._lookup_contacts(location),
        )
        logger.warning("Emergency patterns matched: %s", ", ".join(assessment.patterns))
        return assessment

    def _lookup_contacts(self, location: str | None) -> list[EmergencyContact]:
        if self._contacts is not None:
            try:
                contacts = self._contacts.lookup(location)
                if contacts:
                    return contacts
            except Exception:
                logger.exception("Emergency contact lookup failed; using default contacts")
        return self._registry.contacts_for(None)
