"""Diagnosis engine — ranks candidate conditions for a reported symptom set.

The engine is a pure function of its inputs: the symptom set, the free text
of the message, the user's current snapshot and the loaded knowledge base.
The emergency matcher always runs first; when it fires the result carries no
ranking at all, only the immediate action and the contacts.

Confidence for one condition::

    base       = sum(frequency * specificity of matched symptoms) / max for the condition
    penalized  = base * required_symptom_penalty ** (unmatched required symptoms)
    confidence = clamp(penalized + risk_boost * snapshot risk of the linked condition)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from healthshadow.core.knowledge.models import ConditionDefinition
from healthshadow.core.knowledge.registry import KnowledgeRegistry
from healthshadow.core.storage.models import ShadowSnapshot
from healthshadow.domains.health.domain_logic.emergency import (
    EmergencyAssessment,
    EmergencyMatcher,
    normalize_text,
)

if TYPE_CHECKING:
    from healthshadow.core.collaborators.contacts import EmergencyContactLookup
    from healthshadow.core.config.settings import Settings

logger = logging.getLogger(__name__)

DISCLAIMER = (
    "This is not a medical diagnosis. It is general information based on what "
    "you reported and cannot replace an examination by a qualified health "
    "professional. If your symptoms get worse or you are worried, please see a doctor."
)

DURATION_QUESTION = "How long have you had these symptoms?"

CONFIDENCE_DIGITS = 4


@dataclass
class EngineConfig:
    """Tunable constants for ranking and ambiguity handling."""

    ambiguity_epsilon: float = 0.05
    required_symptom_penalty: float = 0.5
    risk_boost: float = 0.10
    max_clarifying_questions: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            ambiguity_epsilon=settings.ambiguity_epsilon,
            required_symptom_penalty=settings.required_symptom_penalty,
            risk_boost=settings.risk_boost,
            max_clarifying_questions=settings.max_clarifying_questions,
        )


@dataclass(frozen=True)
class Candidate:
    condition: str
    display_name: str
    confidence: float
    urgency: str
    reasoning: str
    matched_symptoms: tuple[str, ...] = ()
    advice: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "condition": self.condition,
            "display_name": self.display_name,
            "confidence": self.confidence,
            "urgency": self.urgency,
            "reasoning": self.reasoning,
            "matched_symptoms": list(self.matched_symptoms),
            "advice": self.advice,
        }


@dataclass(frozen=True)
class ClarifyingQuestion:
    """A yes/no question about ``symptom``; ``symptom`` is None for free-form ones."""

    text: str
    symptom: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "symptom": self.symptom}


@dataclass
class DiagnosisResult:
    candidates: list[Candidate] = field(default_factory=list)
    emergency_flag: bool = False
    emergency: EmergencyAssessment | None = None
    clarifying_questions: list[ClarifyingQuestion] = field(default_factory=list)
    symptoms: tuple[str, ...] = ()
    disclaimer: str = DISCLAIMER

    @property
    def top(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "emergency_flag": self.emergency_flag,
            "emergency": self.emergency.to_dict() if self.emergency else None,
            "clarifying_questions": [q.to_dict() for q in self.clarifying_questions],
            "symptoms": list(self.symptoms),
            "disclaimer": self.disclaimer,
        }

    def to_event_payload(self) -> dict[str, Any]:
        """Payload of the ``diagnosis`` event recorded for this result."""
        return {
            "conditions": [
                {"condition": c.condition, "confidence": c.confidence, "urgency": c.urgency}
                for c in self.candidates
            ],
            "emergency": self.emergency_flag,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class DiagnosisEngine:
    """Scores knowledge-base conditions against reported symptoms.

    Usage::

        engine = DiagnosisEngine(registry, EngineConfig())
        result = engine.diagnose(["fever", "cough"], text="fever and cough since monday")
    """

    def __init__(
        self,
        registry: KnowledgeRegistry,
        config: EngineConfig | None = None,
        *,
        contacts: EmergencyContactLookup | None = None,
    ) -> None:
        self._registry = registry
        self.config = config or EngineConfig()
        self.emergency_matcher = EmergencyMatcher(registry, contacts)
        self._vocabulary = registry.symptom_vocabulary()
        # Longest surface forms first so "itchy skin" wins over "itchy"
        forms = sorted(self._vocabulary, key=lambda f: (-len(f), f))
        self._vocab_re = (
            re.compile(r"\b(" + "|".join(re.escape(f) for f in forms) + r")\b")
            if forms else None
        )

    # ------------------------------------------------------------------
    # Symptom normalization
    # ------------------------------------------------------------------

    def extract_symptoms(self, text: str) -> list[str]:
        """Canonical symptom names mentioned in free text, in order of first mention."""
        if not text or self._vocab_re is None:
            return []
        found: list[str] = []
        for match in self._vocab_re.finditer(normalize_text(text)):
            canonical = self._vocabulary[match.group(1)]
            if canonical not in found:
                found.append(canonical)
        return found

    def normalize_symptoms(self, symptoms: Iterable[str], text: str = "") -> tuple[str, ...]:
        names = {self._registry.canonical_symptom(s) for s in symptoms if s and s.strip()}
        names.update(self.extract_symptoms(text))
        return tuple(sorted(names))

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    def diagnose(
        self,
        symptoms: Iterable[str],
        *,
        text: str = "",
        snapshot: ShadowSnapshot | None = None,
        location: str | None = None,
        denied: Iterable[str] = (),
    ) -> DiagnosisResult:
        """Rank candidates, or return an emergency result when a red flag matches.

        Args:
            symptoms: Reported symptom names (aliases allowed).
            text: Free text of the message; scanned for red flags and symptoms.
            snapshot: Current shadow snapshot; supplies the risk boost.
            location: Coarse location for emergency contacts.
            denied: Symptoms the user explicitly said they do not have.
        """
        symptom_list = list(symptoms)
        reported = self.normalize_symptoms(symptom_list, text)

        emergency = self.emergency_matcher.match(text, symptom_list, location=location)
        if emergency is not None:
            return DiagnosisResult(emergency_flag=True, emergency=emergency, symptoms=reported)

        denied_set = {self._registry.canonical_symptom(s) for s in denied}
        reported_set = set(reported) - denied_set
        candidates = [
            c for c in (
                self._score(condition, reported_set, snapshot)
                for condition in self._registry.conditions()
            )
            if c is not None
        ]
        candidates.sort(key=lambda c: (-c.confidence, c.condition))

        questions: list[ClarifyingQuestion] = []
        if self.is_ambiguous(candidates):
            questions = self.clarifying_questions(
                candidates[0].condition, candidates[1].condition, reported_set | denied_set
            )
            logger.info(
                "Ambiguous diagnosis between %s and %s; asking %d question(s)",
                candidates[0].condition, candidates[1].condition, len(questions),
            )

        return DiagnosisResult(
            candidates=candidates,
            clarifying_questions=questions,
            symptoms=tuple(sorted(reported_set)),
        )

    def is_ambiguous(self, candidates: list[Candidate]) -> bool:
        if len(candidates) < 2:
            return False
        gap = candidates[0].confidence - candidates[1].confidence
        return round(gap, CONFIDENCE_DIGITS) < self.config.ambiguity_epsilon

    def _score(
        self,
        condition: ConditionDefinition,
        reported: set[str],
        snapshot: ShadowSnapshot | None,
    ) -> Candidate | None:
        matched = [s for s in condition.symptoms if s.name in reported]
        if not matched or condition.max_weight <= 0:
            return None

        base = sum(s.weight for s in matched) / condition.max_weight
        missing_required = [s.name for s in condition.symptoms if s.required and s.name not in reported]
        penalized = base * self.config.required_symptom_penalty ** len(missing_required)

        boost = 0.0
        if snapshot is not None and condition.risk_condition:
            boost = self.config.risk_boost * snapshot.score_for(condition.risk_condition)
        confidence = round(_clamp(penalized + boost), CONFIDENCE_DIGITS)

        names = [s.name for s in matched]
        reasoning = f"Matched {len(matched)} of {len(condition.symptoms)} typical symptoms: {', '.join(names)}"
        if missing_required:
            reasoning += f"; key symptom not reported: {', '.join(missing_required)}"
        if boost > 0:
            reasoning += f"; your {condition.risk_condition.replace('_', ' ')} risk adds {boost:.2f}"

        return Candidate(
            condition=condition.id,
            display_name=condition.display_name,
            confidence=confidence,
            urgency=condition.urgency,
            reasoning=reasoning,
            matched_symptoms=tuple(names),
            advice=condition.advice,
        )

    def clarifying_questions(
        self, first: str, second: str, already_known: set[str]
    ) -> list[ClarifyingQuestion]:
        """Questions about symptoms that tell ``first`` and ``second`` apart.

        Discriminating symptoms belong to exactly one of the two conditions
        and have not been reported or denied yet. The heaviest go first. The
        list is never empty: when nothing discriminates, the shared unknown
        symptoms are asked about, and failing that, the symptom duration.
        """
        a = self._registry.get_condition(first)
        b = self._registry.get_condition(second)
        if a is None or b is None:
            return [ClarifyingQuestion(text=DURATION_QUESTION)]

        weights: dict[str, float] = {}
        prompts: dict[str, str] = {}
        for condition in (a, b):
            for s in condition.symptoms:
                weights[s.name] = max(weights.get(s.name, 0.0), s.weight)
            for q in condition.questions:
                prompts.setdefault(q.symptom, q.text)

        names_a = {s.name for s in a.symptoms}
        names_b = {s.name for s in b.symptoms}
        pool = (names_a ^ names_b) - already_known
        if not pool:
            pool = (names_a & names_b) - already_known

        ordered = sorted(pool, key=lambda n: (-weights[n], n))[: self.config.max_clarifying_questions]
        questions = [
            ClarifyingQuestion(text=prompts.get(name, f"Do you also have {name}?"), symptom=name)
            for name in ordered
        ]
        return questions or [ClarifyingQuestion(text=DURATION_QUESTION)]
