"""Tests for the notification sweep (screening and seasonal reminders)."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest

from healthshadow.core.storage.models import Demographics, EventType, HealthEvent, Preferences, User
from healthshadow.domains.health.conversation.state_machine import ConversationState, IntentKind
from healthshadow.domains.health.notifications import NotificationSweep


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


JANUARY = date(2026, 1, 5)
JULY = date(2026, 7, 15)
FEBRUARY = date(2026, 2, 10)


@pytest.fixture
def sweep(shadow_store, sessions) -> NotificationSweep:
    return NotificationSweep(shadow_store, sessions)


class TestCollect:
    def test_screening_and_seasonal_reminders(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=40, location="IN", language="hi"))
        intents = sweep.collect(JULY)
        assert len(intents) == 1
        intent = intents[0]
        assert intent.kind == IntentKind.REMINDER
        assert intent.language == "hi"
        assert "blood pressure" in intent.text
        assert "Monsoon" in intent.text
        assert intent.data == {
            "snapshot_version": 0,
            "count": 2,
            "rules": ["blood_pressure_check", "monsoon_mosquito"],
        }

    def test_out_of_season_young_user_gets_nothing(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=25, location="IN"))
        assert sweep.collect(FEBRUARY) == []

    def test_risk_based_screening(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=25, location="ZZ"))
        for _ in range(3):
            shadow_store.append("u1", HealthEvent(
                type=EventType.IMAGE_ANALYSIS,
                payload={"indicators": {"skin_conditions": ["eczema"], "confidence": 0.9}},
            ))
        shadow_store.append("u1", HealthEvent(
            type=EventType.SYMPTOM, payload={"symptoms": ["rash", "itching", "dry skin"]},
        ))
        assert shadow_store.get_snapshot("u1").score_for("skin_disorder") >= 0.6
        texts = [i.text for i in sweep.collect(FEBRUARY)]
        assert texts and "skin changes" in texts[0]

    def test_weekly_cadence(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=50, location="US"))
        first = sweep.collect(JANUARY)
        assert first[0].data["rules"] == ["blood_pressure_check", "blood_sugar_test", "flu_season"]
        assert sweep.collect(JANUARY + timedelta(days=3)) == []
        # cadence allows a send, but every rule was sent recently
        assert sweep.collect(JANUARY + timedelta(days=7)) == []

    def test_seasonal_rule_repeats_monthly_in_season(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=50, location="US"))
        sweep.collect(JANUARY)
        intents = sweep.collect(JANUARY + timedelta(days=30))
        assert [i.data["rules"] for i in intents] == [["flu_season"]]
        assert intents[0].text.startswith("Flu season")

    def test_screening_rules_repeat_yearly(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=50, location="ZZ"))
        assert len(sweep.collect(JANUARY)) == 1
        for days in (7, 30, 180, 364):
            assert sweep.collect(JANUARY + timedelta(days=days)) == []
        intents = sweep.collect(JANUARY + timedelta(days=365))
        assert intents[0].data["rules"] == ["blood_pressure_check", "blood_sugar_test"]

    def test_daily_cadence(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=50, cadence="daily"))
        assert len(sweep.collect(date(2026, 3, 31))) == 1
        intents = sweep.collect(date(2026, 4, 1))
        assert [i.data["rules"] for i in intents] == [["summer_heat"]]

    def test_weekly_cadence_holds_back_new_rules(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=50, cadence="weekly"))
        assert len(sweep.collect(date(2026, 3, 31))) == 1
        assert sweep.collect(date(2026, 4, 1)) == []
        assert len(sweep.collect(date(2026, 4, 7))) == 1

    def test_cadence_off_is_skipped(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=70, cadence="off"))
        assert sweep.collect(JULY) == []

    def test_emergency_sessions_are_skipped(self, sweep, shadow_store, sessions):
        shadow_store.register_user(make_user("u1", age=70))
        sessions.get_or_create("u1", 0.0).state = ConversationState.EMERGENCY_ACTIVE
        assert sweep.collect(JULY) == []

    def test_sweep_never_writes(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=70))
        sweep.collect(JULY)
        assert shadow_store.count_events("u1") == 0

    def test_stale_snapshot_row_is_left_alone(self, sweep, shadow_store, shadow_db, audit_logger):
        shadow_store.register_user(make_user("u1", age=70))
        shadow_store.append("u1", HealthEvent(type=EventType.SYMPTOM, payload={"symptoms": ["cough"]}))
        with shadow_db.lock:
            shadow_db.connection.execute("UPDATE shadow_snapshots SET version = 99 WHERE user_id = 'u1'")

        intents = sweep.collect(JULY)

        assert intents[0].data["snapshot_version"] == 1
        with shadow_db.lock:
            row = shadow_db.connection.execute(
                "SELECT version FROM shadow_snapshots WHERE user_id = 'u1'"
            ).fetchone()
        assert row[0] == 99
        assert audit_logger.count_events(action="snapshot_rebuild") == 0

    def test_missing_snapshot_row_is_not_recreated(self, sweep, shadow_store, shadow_db):
        shadow_store.register_user(make_user("u1", age=70))
        shadow_store.append("u1", HealthEvent(type=EventType.SYMPTOM, payload={"symptoms": ["cough"]}))
        with shadow_db.lock:
            shadow_db.connection.execute("DELETE FROM shadow_snapshots WHERE user_id = 'u1'")

        assert len(sweep.collect(JULY)) == 1
        with shadow_db.lock:
            count = shadow_db.connection.execute("SELECT COUNT(*) FROM shadow_snapshots").fetchone()[0]
        assert count == 0


class TestDeletedProfiles:
    def test_send_history_is_dropped_with_the_profile(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=70))
        shadow_store.register_user(make_user("u2", age=70))
        assert len(sweep.collect(JULY)) == 2

        shadow_store.delete_profile("u1")
        assert sweep.collect(JULY + timedelta(days=1)) == []
        assert "u1" not in sweep._last_sent
        assert "u1" not in sweep._rule_sent
        assert "u2" in sweep._last_sent

    def test_reregistered_profile_starts_fresh(self, sweep, shadow_store):
        shadow_store.register_user(make_user("u1", age=70))
        assert len(sweep.collect(JULY)) == 1
        shadow_store.delete_profile("u1")
        sweep.collect(JULY)

        shadow_store.register_user(make_user("u1", age=70))
        assert len(sweep.collect(JULY + timedelta(days=1))) == 1


class TestSweepOnce:
    def test_delivers_translated_reminders(self, service, shadow_store, sessions, dispatcher):
        shadow_store.register_user(make_user("u1", age=45, language="sw", location="KE"))
        sweep = NotificationSweep(shadow_store, sessions, deliver=service.deliver)
        intents = _run(sweep.sweep_once(date(2026, 4, 1)))
        assert len(intents) == 1
        assert dispatcher.kinds("u1") == ["reminder"]
        assert dispatcher.sent[0].text.startswith("[sw] ")


class TestLoop:
    def test_loop_ticks_and_stops(self, shadow_store, sessions):
        async def scenario():
            ticks: list[int] = []

            async def tick():
                ticks.append(1)
                if len(ticks) == 1:
                    raise RuntimeError("first tick fails")

            sweep = NotificationSweep(
                shadow_store, sessions, tick=tick, tick_interval=0.01, check_interval=3600
            )
            await sweep.start()
            assert sweep.running
            await asyncio.sleep(0.1)
            await sweep.stop()
            return len(ticks), sweep.running

        count, running = _run(scenario())
        assert count >= 2
        assert running is False

    def test_double_start_is_harmless(self, shadow_store, sessions):
        async def scenario():
            sweep = NotificationSweep(shadow_store, sessions, check_interval=3600)
            await sweep.start()
            await sweep.start()
            await sweep.stop()

        _run(scenario())
