"""Outbound message templates (English source text; translated before delivery)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from healthshadow.core.storage.models import ChangeNotification
    from healthshadow.domains.health.domain_logic.diagnosis import DiagnosisResult
    from healthshadow.domains.health.domain_logic.emergency import EmergencyAssessment

ONBOARDING_QUESTIONS = {
    "age": "Welcome! To give you useful health guidance, how old are you? (Reply 'skip' to leave this out.)",
    "gender": "What is your gender: female, male or other? (Reply 'skip' to leave this out.)",
    "location": "Which country do you live in? (Reply 'skip' to leave this out.)",
    "language": "Which language would you like me to use? (For example: English, Hindi, Swahili.)",
}

ONBOARDING_RETRY = "Sorry, I didn't understand that. "

PROFILE_CONFIRMATION = (
    "Thank you, your health profile is set up. You can tell me about symptoms, "
    "share photos for a skin or eye check, or update me on your lifestyle at any time."
)

NO_MATCH = (
    "I couldn't link what you described to a condition I know. Could you tell me "
    "more about your symptoms, for example where it hurts and since when?"
)

NOTED = "Thanks, I've noted that in your health record."

FEEDBACK_THANKS = "Thank you for letting me know. I've added it to your record."

YES_NO_RETRY = "Please answer yes or no. "

EMERGENCY_CLEARED = (
    "Thank you for confirming. I'm glad you're safe. If anything changes, "
    "message me or call emergency services straight away."
)


def render_contacts(contacts: Iterable[dict]) -> str:
    return ", ".join(f"{c['service']}: {c['number']}" for c in contacts)


def render_emergency_alert(emergency: EmergencyAssessment) -> str:
    contacts = render_contacts(emergency.to_dict()["contacts"])
    return (
        f"URGENT: what you describe may be a medical emergency ({', '.join(emergency.display_names)}). "
        f"{emergency.immediate_action} Emergency numbers: {contacts}. "
        "Reply 'I am safe' once you have help."
    )


def render_emergency_reminder(emergency: EmergencyAssessment | None) -> str:
    text = "Your emergency alert is still active. Please get help first."
    if emergency is not None:
        text += f" Emergency numbers: {render_contacts(emergency.to_dict()['contacts'])}."
    return text + " Reply 'I am safe' when you are."


def render_diagnosis(result: DiagnosisResult, *, limit: int = 3) -> str:
    lines = ["Based on what you told me, these are the most likely explanations:"]
    for index, candidate in enumerate(result.candidates[:limit], start=1):
        lines.append(
            f"{index}. {candidate.display_name} ({round(candidate.confidence * 100)}% match)"
        )
    top = result.top
    if top is not None and top.advice:
        lines.append(top.advice)
    lines.append(result.disclaimer)
    lines.append("Did this help? You can tell me how you are feeling.")
    return "\n".join(lines)


def render_change_notice(change: ChangeNotification) -> str:
    parts = []
    for reason in change.reasons:
        subject = reason.subject.replace("_", " ").replace(".", " ")
        if reason.kind in ("risk_delta", "risk_threshold"):
            direction = "gone up" if reason.current > reason.previous else "gone down"
            parts.append(f"your {subject} risk has {direction}")
        elif reason.kind == "habit_flip":
            parts.append(f"your {subject} status changed")
        elif reason.kind == "exercise_drop":
            parts.append("your exercise has dropped noticeably")
    return "Health update: " + "; ".join(parts) + "."
