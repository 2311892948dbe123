"""Knowledge loader — reads condition, red-flag and contact YAML from disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from healthshadow.core.knowledge.models import (
    ClarifyingPrompt,
    ConditionDefinition,
    EmergencyContact,
    EmergencyPattern,
    SymptomWeight,
)
from healthshadow.core.knowledge.registry import KnowledgeRegistry

logger = logging.getLogger(__name__)


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: top level must be a mapping")
    return data


def _unit(value: Any, what: str) -> float:
    number = float(value)
    if not 0.0 <= number <= 1.0:
        raise ValueError(f"{what} must be within [0, 1], got {number}")
    return number


def load_knowledge_directory(directory: str | Path, registry: KnowledgeRegistry) -> int:
    """Load every knowledge YAML file in a directory (recursively).

    Files are dispatched on their top-level key (``conditions``,
    ``patterns`` or ``contacts``). Returns the number of entries loaded.
    Skips files starting with underscore.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning("Knowledge directory does not exist: %s", directory)
        return 0

    count = 0
    for path in sorted(directory.rglob("*.yaml")):
        if path.name.startswith("_"):
            continue
        try:
            data = _read_yaml(path)
            loaded = 0
            if "conditions" in data:
                loaded += load_conditions(data, registry, source=path.name)
            if "patterns" in data:
                loaded += load_emergency_patterns(data, registry, source=path.name)
            if "contacts" in data:
                loaded += load_emergency_contacts(data, registry)
            count += loaded
            logger.info("Loaded %d knowledge entries from %s", loaded, path.name)
        except Exception:
            logger.exception("Failed to load knowledge from %s", path)
    return count


def load_conditions(data: dict[str, Any], registry: KnowledgeRegistry, *, source: str = "") -> int:
    """Register the ``conditions`` list and the ``aliases`` map of one document."""
    for alias, symptom in (data.get("aliases") or {}).items():
        registry.register_alias(str(alias), str(symptom).strip().lower())

    count = 0
    for entry in data.get("conditions") or []:
        registry.register_condition(parse_condition(entry, source=source))
        count += 1
    return count


def parse_condition(entry: dict[str, Any], *, source: str = "") -> ConditionDefinition:
    condition_id = entry["id"]
    symptoms = [
        SymptomWeight(
            name=str(s["name"]).strip().lower(),
            frequency=_unit(s["frequency"], f"{condition_id}.{s['name']}.frequency"),
            specificity=_unit(s["specificity"], f"{condition_id}.{s['name']}.specificity"),
            required=bool(s.get("required", False)),
        )
        for s in entry.get("symptoms", [])
    ]
    if not symptoms:
        raise ValueError(f"{source}: condition {condition_id!r} lists no symptoms")

    return ConditionDefinition(
        id=condition_id,
        display_name=entry.get("display_name", condition_id.replace("_", " ").title()),
        symptoms=symptoms,
        urgency=entry.get("urgency", "low"),
        risk_condition=entry.get("risk_condition"),
        questions=[
            ClarifyingPrompt(symptom=str(q["symptom"]).strip().lower(), text=q["text"].strip())
            for q in entry.get("questions", [])
        ],
        advice=(entry.get("advice") or "").strip(),
    )


def load_emergency_patterns(data: dict[str, Any], registry: KnowledgeRegistry, *, source: str = "") -> int:
    count = 0
    for entry in data.get("patterns") or []:
        groups = tuple(
            tuple(str(term).strip().lower() for term in group)
            for group in entry.get("any_of", [])
        )
        if not groups or any(not g for g in groups):
            raise ValueError(f"{source}: pattern {entry.get('id')!r} has an empty term group")
        registry.register_pattern(EmergencyPattern(
            id=entry["id"],
            display_name=entry.get("display_name", entry["id"]),
            term_groups=groups,
            immediate_action=entry["immediate_action"].strip(),
            priority=int(entry.get("priority", 0)),
        ))
        count += 1
    return count


def load_emergency_contacts(data: dict[str, Any], registry: KnowledgeRegistry) -> int:
    count = 0
    for location, services in (data.get("contacts") or {}).items():
        for service in services:
            registry.register_contact(EmergencyContact(
                location=str(location),
                service=service["service"],
                number=str(service["number"]),
            ))
            count += 1
    return count
