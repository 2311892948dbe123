"""Emergency contact lookup — location-keyed emergency numbers."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from healthshadow.core.knowledge.models import EmergencyContact
from healthshadow.core.knowledge.registry import KnowledgeRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class EmergencyContactLookup(Protocol):
    """Resolves a coarse location (ISO country code) to emergency contacts."""

    def lookup(self, location: str | None) -> list[EmergencyContact]: ...


class StaticEmergencyContacts:
    """Contacts from the knowledge base YAML, with the DEFAULT entry as fallback."""

    def __init__(self, registry: KnowledgeRegistry) -> None:
        self._registry = registry

    def lookup(self, location: str | None) -> list[EmergencyContact]:
        contacts = self._registry.contacts_for(location)
        if location and contacts and contacts[0].location.upper() != location.upper():
            logger.info("No emergency contacts for %s; using defaults", location)
        return contacts
