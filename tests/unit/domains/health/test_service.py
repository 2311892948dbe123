"""End-to-end tests for HealthShadowService on in-memory storage and mock collaborators."""

from __future__ import annotations

import asyncio

import pytest

from healthshadow.core.collaborators.resilience import RetryPolicy
from healthshadow.core.errors import NotFound
from healthshadow.core.storage.models import Demographics, EventType, HealthEvent, Preferences, User
from healthshadow.domains.health.connectors.messaging import RecordingDispatcher
from healthshadow.domains.health.connectors.observations import HealthIndicators, VisionAdapter
from healthshadow.domains.health.conversation.state_machine import ConversationState


def make_user(user_id="user-1", age=40, gender="female", location="IN", language="en", cadence="weekly") -> User:
    return User(
        user_id=user_id,
        demographics=Demographics(age=age, gender=gender, location=location),
        preferences=Preferences(language=language, notification_cadence=cadence),
    )


def _run(coro):
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class SlowAnalyzer:
    async def analyze(self, image: bytes):
        await asyncio.sleep(5)
        return HealthIndicators(confidence=0.9)


@pytest.fixture
def user(shadow_store):
    return shadow_store.register_user(make_user("u1", language="en", location="IN"))


class TestSymptomMessages:
    def test_flu_symptoms_diagnosed_and_translated(self, service, shadow_store, dispatcher, mock_translator):
        shadow_store.register_user(make_user("u1", language="hi"))
        outcome = _run(service.handle_message("u1", "I have fever, cough and fatigue"))

        assert outcome.diagnosis.top.condition == "influenza"
        assert outcome.state == ConversationState.AWAITING_FEEDBACK.value
        assert outcome.versions == [1, 2]
        assert dispatcher.kinds("u1") == ["diagnosis"]
        assert dispatcher.sent[0].text.startswith("[hi] ")
        assert mock_translator.calls[0][1] == "hi"

        history = shadow_store.get_history("u1").to_list()
        assert [e.type for e in history] == [EventType.SYMPTOM, EventType.DIAGNOSIS]
        assert history[0].payload["symptoms"] == ["fever", "cough", "fatigue"]
        assert history[1].payload["conditions"][0]["condition"] == "influenza"

    def test_feedback_after_diagnosis(self, service, user, dispatcher):
        _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        outcome = _run(service.handle_message("u1", "thanks, resting now"))
        assert dispatcher.kinds("u1")[-1] == "feedback_thanks"
        assert outcome.state == ConversationState.IDLE.value
        assert outcome.versions == []

    def test_english_user_skips_translation(self, service, user, mock_translator):
        _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        assert mock_translator.call_count == 0

    def test_lifestyle_statement_is_recorded(self, service, user, shadow_store, dispatcher):
        outcome = _run(service.handle_message("u1", "I exercise 4 times a week"))
        assert outcome.versions == [1]
        assert shadow_store.get_snapshot("u1").lifestyle == {"exercise": {"frequency_per_week": 4}}
        assert dispatcher.kinds("u1") == ["noted"]

    def test_lifestyle_facts_merge_within_category(self, service, user, shadow_store):
        _run(service.handle_message("u1", "I drink 10 beers a week"))
        _run(service.handle_message("u1", "I quit smoking"))
        habits = shadow_store.get_snapshot("u1").lifestyle["habits"]
        assert habits == {"alcohol_units_per_week": 10, "smoking": False}

    def test_significant_change_is_notified(self, service, user, dispatcher):
        _run(service.handle_message("u1", "I exercise 5 times a week"))
        _run(service.handle_message("u1", "I stopped exercising"))
        assert "change_notice" in dispatcher.kinds("u1")


class TestEmergency:
    def test_chest_pain_escalates(self, service, user, dispatcher, audit_logger, shadow_store):
        outcome = _run(service.handle_message("u1", "I have chest pain radiating to my left arm"))

        assert outcome.state == ConversationState.EMERGENCY_ACTIVE.value
        assert outcome.diagnosis.emergency_flag is True
        assert outcome.diagnosis.candidates == []
        assert dispatcher.kinds("u1") == ["emergency_alert"]
        assert "108" in dispatcher.sent[0].text
        assert audit_logger.count_events(action="emergency_raised") == 1

        events = shadow_store.get_history("u1").to_list()
        assert events[0].payload["symptoms"] == ["chest pain"]
        assert events[1].payload == {"conditions": [], "emergency": True}

    def test_only_reminders_until_acknowledged(self, service, user, dispatcher, shadow_store):
        _run(service.handle_message("u1", "I have chest pain radiating to my left arm"))
        dispatcher.clear()

        outcome = _run(service.handle_message("u1", "I quit smoking"))
        assert dispatcher.kinds("u1") == ["emergency_reminder"]
        assert outcome.state == ConversationState.EMERGENCY_ACTIVE.value
        # the lifestyle fact is still recorded
        assert shadow_store.get_snapshot("u1").lifestyle["habits"] == {"smoking": False}

        _run(service.handle_message("u1", "I am safe"))
        assert "emergency_cleared" in dispatcher.kinds("u1")
        assert service.sessions.peek("u1").state == ConversationState.IDLE

    def test_emergency_before_onboarding(self, service, dispatcher, shadow_store):
        outcome = _run(service.handle_message("stranger", "help, I can't breathe"))
        assert outcome.state == ConversationState.EMERGENCY_ACTIVE.value
        assert dispatcher.kinds("stranger") == ["emergency_alert"]
        assert "112" in dispatcher.sent[0].text
        assert not shadow_store.has_profile("stranger")

    def test_emergency_cancels_pending_analysis(self, service, user):
        service.vision = VisionAdapter(SlowAnalyzer(), RetryPolicy(10.0, 1, 0.0))

        async def scenario():
            image = asyncio.ensure_future(service.submit_image("u1", b"img"))
            await asyncio.sleep(0.05)
            assert service.pending_tasks("u1") == 1
            emergency = await service.handle_message("u1", "crushing chest pain")
            return await image, emergency

        image_outcome, emergency_outcome = _run(scenario())
        assert image_outcome.error == "vision analysis cancelled"
        assert emergency_outcome.state == ConversationState.EMERGENCY_ACTIVE.value
        assert service.pending_tasks("u1") == 0


class TestOnboarding:
    def test_chat_onboarding_creates_profile(self, service, shadow_store, dispatcher):
        _run(service.handle_message("new", "hello", language="sw"))
        assert dispatcher.sent[0].text.startswith("[sw] Welcome!")

        for answer in ("30", "female"):
            _run(service.handle_message("new", answer))
        assert not shadow_store.has_profile("new")
        outcome = _run(service.handle_message("new", "Kenya"))

        assert outcome.state == ConversationState.IDLE.value
        assert dispatcher.kinds("new")[-1] == "profile_confirmation"
        user = shadow_store.get_user("new")
        assert user.demographics == Demographics(age=30, gender="female", location="KE")
        assert user.preferences.language == "sw"

    def test_register_profile_directly(self, service, shadow_store):
        user = _run(service.register_profile("u9", Demographics(age=61, gender="male")))
        assert user.user_id == "u9"
        assert shadow_store.has_profile("u9")


class TestObservations:
    def test_voice_observation_runs_diagnosis(self, service, user, shadow_store):
        outcome = _run(service.submit_audio("u1", b"I have had fever, cough and fatigue since yesterday"))
        assert outcome.versions == [1, 2]
        assert outcome.diagnosis.top.condition == "influenza"
        first = shadow_store.get_history("u1").to_list()[0]
        assert first.type == EventType.VOICE_ANALYSIS
        assert first.payload["temporal_info"] == "since yesterday"

    def test_red_flag_in_voice_escalates(self, service, user):
        outcome = _run(service.submit_audio("u1", b"my face started to droop"))
        assert outcome.state == ConversationState.EMERGENCY_ACTIVE.value

    def test_failed_image_quality_is_logged_only(self, service, user, shadow_store, dispatcher):
        outcome = _run(service.submit_image("u1", b"img"))
        assert outcome.versions == [1]
        assert outcome.diagnosis is None
        assert dispatcher.sent == []
        assert "quality_check" in shadow_store.get_history("u1").to_list()[0].payload

    def test_unknown_user(self, service):
        with pytest.raises(NotFound):
            _run(service.submit_image("ghost", b"img"))

    def test_record_treatment_event(self, service, user, shadow_store):
        _run(service.record_event("u1", HealthEvent(
            type=EventType.DIAGNOSIS,
            payload={"conditions": [{"condition": "migraine", "confidence": 0.8, "urgency": "low"}]},
        )))
        _run(service.record_event("u1", HealthEvent(
            type=EventType.TREATMENT,
            payload={"condition": "migraine", "treatment": "rest", "status": "completed"},
        )))
        assert shadow_store.get_snapshot("u1").active_conditions == []


class TestDelivery:
    def test_failed_delivery_degrades(self, service, user):
        service.dispatcher = RecordingDispatcher(fail_times=10)
        outcome = _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        assert outcome.reports[0].delivered is False
        assert "messaging" in outcome.reports[0].error
        assert outcome.versions == [1, 2]

    def test_translation_outage_sends_english(self, service, shadow_store, dispatcher, mock_translator):
        shadow_store.register_user(make_user("u1", language="hi"))
        mock_translator.fail_times = 100
        _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        assert dispatcher.sent[0].text.startswith("Based on what you told me")


class TestLifecycle:
    def test_delete_profile(self, service, user, shadow_store):
        _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        assert _run(service.delete_profile("u1")) == 2
        assert not shadow_store.has_profile("u1")
        assert "u1" not in service.sessions
        with pytest.raises(NotFound):
            shadow_store.get_snapshot("u1")

    def test_delete_unknown_profile(self, service):
        with pytest.raises(NotFound):
            _run(service.delete_profile("ghost"))

    def test_message_after_delete_restarts_onboarding(self, service, user, dispatcher):
        _run(service.delete_profile("u1"))
        _run(service.handle_message("u1", "hi there"))
        assert dispatcher.kinds("u1") == ["onboarding_question"]

    def test_tick_times_out_feedback_and_evicts(self, service, user, clock):
        _run(service.handle_message("u1", "I have fever, cough and fatigue"))
        clock.advance(900)
        assert _run(service.tick()) == []
        assert service.sessions.peek("u1").state == ConversationState.IDLE

        clock.advance(2000)
        assert _run(service.tick()) == ["u1"]
        assert "u1" not in service.sessions

    def test_concurrent_messages_get_distinct_versions(self, service, user, shadow_store):
        async def scenario():
            return await asyncio.gather(
                service.handle_message("u1", "I have a fever"),
                service.handle_message("u1", "and a bad cough"),
                service.handle_message("u1", "I exercise 2 times a week"),
            )

        outcomes = _run(scenario())
        versions = sorted(v for o in outcomes for v in o.versions)
        assert versions == list(range(1, shadow_store.count_events("u1") + 1))
