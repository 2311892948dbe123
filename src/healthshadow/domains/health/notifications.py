"""Notification sweep — background loop for proactive, read-only guidance.

The sweep reads snapshots without taking any per-user lock and never writes
to a profile. It produces two kinds of reminder:

* screening reminders, from the user's age and current risk scores;
* seasonal guidance, from the calendar month and the user's coarse location.

The user's cadence bounds how often any reminder is sent. Each rule also has
its own interval, so a yearly screening is not repeated every week. Users in
an active emergency and users with cadence ``off`` are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Awaitable, Callable

from healthshadow.core.errors import NotFound
from healthshadow.domains.health.conversation.state_machine import IntentKind, OutboundIntent

if TYPE_CHECKING:
    from healthshadow.core.storage.models import ShadowSnapshot, User
    from healthshadow.core.storage.shadow_store import ShadowStore
    from healthshadow.domains.health.conversation.sessions import SessionStore

logger = logging.getLogger(__name__)

CHECK_INTERVAL = 3600
TICK_INTERVAL = 60
CADENCE_DAYS = {"daily": 1, "weekly": 7}


@dataclass(frozen=True)
class ScreeningRule:
    id: str
    message: str
    min_age: int | None = None
    risk_condition: str | None = None
    min_score: float = 0.5
    interval_days: int = 365

    def applies(self, user: User, snapshot: ShadowSnapshot) -> bool:
        age = user.demographics.age
        if self.min_age is not None and age is not None and age >= self.min_age:
            return True
        if self.risk_condition is not None:
            return snapshot.score_for(self.risk_condition) >= self.min_score
        return False


@dataclass(frozen=True)
class SeasonalRule:
    id: str
    locations: tuple[str, ...]
    months: tuple[int, ...]
    message: str
    interval_days: int = 30

    def applies(self, user: User, today: date) -> bool:
        location = (user.demographics.location or "").upper()
        return location in self.locations and today.month in self.months


SCREENING_RULES = (
    ScreeningRule(
        "blood_pressure_check",
        "A blood pressure check once a year is recommended for you. Most pharmacies can do it in minutes.",
        min_age=40, risk_condition="hypertension",
    ),
    ScreeningRule(
        "blood_sugar_test",
        "Consider a blood sugar (HbA1c) test to screen for diabetes.",
        min_age=45, risk_condition="type_2_diabetes",
    ),
    ScreeningRule(
        "haemoglobin_test",
        "Your record suggests checking your haemoglobin level with a simple blood test.",
        risk_condition="anemia",
    ),
    ScreeningRule(
        "liver_function_test",
        "A liver function blood test would be worth discussing with a doctor.",
        risk_condition="liver_disease",
    ),
    ScreeningRule(
        "skin_check",
        "Please have a doctor look at the skin changes you have reported.",
        risk_condition="skin_disorder", min_score=0.6,
    ),
)

SEASONAL_RULES = (
    SeasonalRule(
        "monsoon_mosquito", ("IN",), (6, 7, 8, 9),
        "Monsoon season: empty standing water near your home and use mosquito nets to prevent dengue and malaria.",
    ),
    SeasonalRule(
        "summer_heat", ("IN",), (4, 5),
        "Heat wave season: drink water regularly and avoid the midday sun.",
    ),
    SeasonalRule(
        "rainy_season_malaria", ("KE", "NG"), (3, 4, 5, 10, 11),
        "Rainy season: sleep under a treated mosquito net and see a clinic quickly if you get a fever.",
    ),
    SeasonalRule(
        "flu_season", ("US", "GB"), (11, 12, 1, 2),
        "Flu season: ask about the yearly flu vaccine, especially if you are over 65 or have a long-term condition.",
    ),
)


class NotificationSweep:
    """Periodically builds reminder intents and hands them to ``deliver``.

    Usage::

        sweep = NotificationSweep(store, sessions, deliver=service.deliver, tick=service.tick)
        await sweep.start()
        ...
        await sweep.stop()
    """

    def __init__(
        self,
        store: ShadowStore,
        sessions: SessionStore,
        deliver: Callable[[list[OutboundIntent]], Awaitable[object]] | None = None,
        *,
        check_interval: float = CHECK_INTERVAL,
        tick: Callable[[], Awaitable[object]] | None = None,
        tick_interval: float = TICK_INTERVAL,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._deliver = deliver
        self._check_interval = check_interval
        self._tick = tick
        self._tick_interval = tick_interval
        self._today = today
        self._last_sent: dict[str, date] = {}
        self._rule_sent: dict[str, dict[str, date]] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("NotificationSweep already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("NotificationSweep started (interval=%ss)", self._check_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("NotificationSweep stopped")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_sweep: float | None = None
        while self._running:
            if self._tick is not None:
                try:
                    await self._tick()
                except Exception:
                    logger.exception("Session tick failed")
            if last_sweep is None or loop.time() - last_sweep >= self._check_interval:
                last_sweep = loop.time()
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Notification sweep failed")
            await asyncio.sleep(self._tick_interval if self._tick else self._check_interval)

    # ------------------------------------------------------------------

    def _is_due(self, user_id: str, cadence: str, today: date) -> bool:
        days = CADENCE_DAYS.get(cadence)
        if days is None:
            return False
        last = self._last_sent.get(user_id)
        return last is None or (today - last).days >= days

    def _prune(self, user_ids: list[str]) -> None:
        live = set(user_ids)
        for stale in [u for u in self._last_sent if u not in live]:
            del self._last_sent[stale]
        for stale in [u for u in self._rule_sent if u not in live]:
            del self._rule_sent[stale]

    def reminders_for(
        self, user: User, snapshot: ShadowSnapshot, today: date
    ) -> list[ScreeningRule | SeasonalRule]:
        """Rules that apply to ``user`` today and whose own interval has elapsed."""
        rules: list[ScreeningRule | SeasonalRule] = [
            rule for rule in SCREENING_RULES if rule.applies(user, snapshot)
        ]
        rules.extend(rule for rule in SEASONAL_RULES if rule.applies(user, today))
        sent = self._rule_sent.get(user.user_id, {})
        return [
            rule for rule in rules
            if rule.id not in sent or (today - sent[rule.id]).days >= rule.interval_days
        ]

    def collect(self, today: date | None = None) -> list[OutboundIntent]:
        """Build the intents that are due, without delivering them."""
        today = today or self._today()
        user_ids = self._store.list_user_ids()
        self._prune(user_ids)
        intents: list[OutboundIntent] = []
        for user_id in user_ids:
            session = self._sessions.peek(user_id)
            if session is not None and session.in_emergency:
                continue
            try:
                user = self._store.get_user(user_id)
                if not self._is_due(user_id, user.preferences.notification_cadence, today):
                    continue
                snapshot = self._store.peek_snapshot(user_id)
            except NotFound:
                continue  # deleted since list_user_ids()

            rules = self.reminders_for(user, snapshot, today)
            if not rules:
                continue
            self._last_sent[user_id] = today
            sent = self._rule_sent.setdefault(user_id, {})
            for rule in rules:
                sent[rule.id] = today
            intents.append(OutboundIntent(
                user_id=user_id,
                kind=IntentKind.REMINDER,
                text="\n".join(rule.message for rule in rules),
                language=user.preferences.language,
                data={
                    "snapshot_version": snapshot.version,
                    "count": len(rules),
                    "rules": [rule.id for rule in rules],
                },
            ))
        return intents

    async def sweep_once(self, today: date | None = None) -> list[OutboundIntent]:
        intents = self.collect(today)
        if intents and self._deliver is not None:
            await self._deliver(intents)
        logger.info("Notification sweep produced %d reminder(s)", len(intents))
        return intents
