"""Knowledge base data models — maps to the YAML definitions under domains/*/knowledge."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SymptomWeight:
    """How a symptom relates to one condition.

    ``frequency`` is how often the condition presents with the symptom;
    ``specificity`` is how strongly the symptom points at this condition
    rather than others. Both are 0-1.
    """

    name: str
    frequency: float
    specificity: float
    required: bool = False

    @property
    def weight(self) -> float:
        return self.frequency * self.specificity


@dataclass(frozen=True)
class ClarifyingPrompt:
    """A follow-up question that confirms or rules out ``symptom``."""

    symptom: str
    text: str


@dataclass
class ConditionDefinition:
    """A condition the diagnosis engine can propose."""

    id: str
    display_name: str
    symptoms: list[SymptomWeight]
    urgency: str = "low"
    risk_condition: str | None = None  # links to a risk model for the risk boost
    questions: list[ClarifyingPrompt] = field(default_factory=list)
    advice: str = ""

    @property
    def max_weight(self) -> float:
        return sum(s.weight for s in self.symptoms)

    def symptom(self, name: str) -> SymptomWeight | None:
        for s in self.symptoms:
            if s.name == name:
                return s
        return None


@dataclass(frozen=True)
class EmergencyPattern:
    """A red-flag pattern.

    ``term_groups`` is a disjunction of conjunctions: the pattern matches
    when every term of at least one group appears in the text.
    """

    id: str
    display_name: str
    term_groups: tuple[tuple[str, ...], ...]
    immediate_action: str
    priority: int = 0


@dataclass(frozen=True)
class EmergencyContact:
    location: str
    service: str
    number: str
