"""Knowledge registry — in-memory index for conditions, red flags and contacts."""

from __future__ import annotations

import logging

from healthshadow.core.knowledge.models import (
    ConditionDefinition,
    EmergencyContact,
    EmergencyPattern,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "DEFAULT"


class KnowledgeRegistry:
    """In-memory registry of the loaded medical knowledge base."""

    def __init__(self) -> None:
        self._conditions: dict[str, ConditionDefinition] = {}
        self._by_symptom: dict[str, list[str]] = {}
        self._aliases: dict[str, str] = {}
        self._patterns: dict[str, EmergencyPattern] = {}
        self._contacts: dict[str, list[EmergencyContact]] = {}

    # --- Conditions ---

    def register_condition(self, condition: ConditionDefinition) -> None:
        """Add a condition to all indexes."""
        if condition.id in self._conditions:
            raise ValueError(f"Duplicate condition id registered: {condition.id!r}")
        self._conditions[condition.id] = condition
        for symptom in condition.symptoms:
            ids = self._by_symptom.setdefault(symptom.name, [])
            if condition.id not in ids:
                ids.append(condition.id)

    def register_alias(self, alias: str, symptom: str) -> None:
        key = alias.strip().lower()
        existing = self._aliases.get(key)
        if existing is not None and existing != symptom:
            raise ValueError(f"Alias {alias!r} already maps to {existing!r}")
        self._aliases[key] = symptom

    def get_condition(self, condition_id: str) -> ConditionDefinition | None:
        return self._conditions.get(condition_id)

    def conditions(self) -> list[ConditionDefinition]:
        """All conditions, ordered by id."""
        return [self._conditions[k] for k in sorted(self._conditions)]

    def conditions_for_symptom(self, symptom: str) -> list[ConditionDefinition]:
        return [self._conditions[cid] for cid in self._by_symptom.get(symptom, [])]

    def known_symptoms(self) -> list[str]:
        return sorted(self._by_symptom)

    def canonical_symptom(self, text: str) -> str:
        """Resolve an alias ("temperature") to its canonical symptom ("fever")."""
        key = text.strip().lower()
        return self._aliases.get(key, key)

    def symptom_vocabulary(self) -> dict[str, str]:
        """Every surface form (canonical names and aliases) -> canonical name."""
        vocab = {name: name for name in self._by_symptom}
        vocab.update(self._aliases)
        return vocab

    # --- Red flags ---

    def register_pattern(self, pattern: EmergencyPattern) -> None:
        if pattern.id in self._patterns:
            raise ValueError(f"Duplicate emergency pattern registered: {pattern.id!r}")
        self._patterns[pattern.id] = pattern

    def patterns(self) -> list[EmergencyPattern]:
        """Patterns by descending priority, then id."""
        return sorted(self._patterns.values(), key=lambda p: (-p.priority, p.id))

    # --- Contacts ---

    def register_contact(self, contact: EmergencyContact) -> None:
        self._contacts.setdefault(contact.location.upper(), []).append(contact)

    def contacts_for(self, location: str | None) -> list[EmergencyContact]:
        """Contacts for a location, falling back to the DEFAULT entry."""
        if location:
            found = self._contacts.get(location.upper())
            if found:
                return list(found)
        return list(self._contacts.get(DEFAULT_LOCATION, []))

    def stats(self) -> dict[str, int]:
        return {
            "conditions": len(self._conditions),
            "symptoms": len(self._by_symptom),
            "aliases": len(self._aliases),
            "emergency_patterns": len(self._patterns),
            "contact_locations": len(self._contacts),
        }
