"""Shared fixtures, fakes and a fixed clock for healthsync tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from src.healthsync.base import (
    ActivitySummary,
    BMISample,
    DayWindow,
    HealthProviderAdapter,
    Quantity,
    RawWeight,
    WorkoutSession,
)
from src.healthsync.config_loader import SyncConfig, build_sync_config
from src.healthsync.errors import AuthExpired, BackendRejected
from src.healthsync.state import EngineState
from src.services.scoring import ScoringBackend
from src.services.state_store import StateStore

TZ = ZoneInfo("America/Los_Angeles")
NOW = datetime(2026, 3, 10, 14, 30, tzinfo=TZ)
TODAY = NOW.date()
TEST_USER_ID = "user_2abc"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fake adapter
# ---------------------------------------------------------------------------


def make_summary(
    calories: float = 420,
    exercise: float = 25,
    stand: float = 9,
    move_goal: float | None = 600,
    exercise_goal: float | None = 45,
    stand_goal: float | None = 12,
) -> ActivitySummary:
    return ActivitySummary(
        active_energy=Quantity(calories, "kcal"),
        exercise_time=Quantity(exercise, "min"),
        stand_hours=stand,
        move_goal=move_goal,
        exercise_goal=exercise_goal,
        stand_goal=stand_goal,
    )


def make_workout(day: date, hour: int = 7, minutes: int = 30, workout_id: str | None = None) -> WorkoutSession:
    start = datetime(day.year, day.month, day.day, hour, 0, tzinfo=TZ)
    return WorkoutSession(
        id=workout_id if workout_id is not None else f"w-{day.isoformat()}-{hour}",
        type="running",
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        duration_minutes=minutes,
        calories=250,
        distance_meters=5000.0,
        provider="fake",
    )


class FakeAdapter(HealthProviderAdapter):
    """In-memory provider with per-feed values, delays and failures.

    Attributes:
        summaries: day → ActivitySummary; days absent use ``default_summary``.
        delays:    feed name → seconds to sleep before answering.
        failures:  feed name → exception to raise.
        calls:     feed name → number of calls.
    """

    PROVIDER_ID = "fake"
    DISPLAY_NAME = "Fake Provider"

    def __init__(self, available: bool = True, grant: bool = True) -> None:
        super().__init__()
        self.available = available
        self.grant = grant
        self.summaries: dict[date, ActivitySummary | None] = {}
        self.default_summary: ActivitySummary | None = make_summary()
        self.active_energy = Quantity(300, "kcal")
        self.exercise_time = Quantity(1200, "s")
        self.stand_samples = [Quantity(120, "s"), Quantity(30, "s"), Quantity(60, "s")]
        self.steps = 8500.0
        self.distance = Quantity(3.0, "mi")
        self.heart_rate = [60.0, 70.0, 80.0]
        self.workouts: list[WorkoutSession] = []
        self.weight: RawWeight | None = None
        self.weight_history: list[RawWeight] = []
        self.bmi: BMISample | None = None
        self.delays: dict[str, float] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: dict[str, int] = {}
        self.access_requests = 0

    async def _feed(self, name: str, value: Any) -> Any:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.delays:
            await asyncio.sleep(self.delays[name])
        if name in self.failures:
            raise self.failures[name]
        return value

    def is_available(self) -> bool:
        return self.available

    async def request_access(self) -> bool:
        self.access_requests += 1
        return await self._feed("request_access", self.grant)

    async def fetch_activity_summary(self, window: DayWindow) -> ActivitySummary | None:
        return await self._feed("summary", self.summaries.get(window.day, self.default_summary))

    async def fetch_active_energy(self, window: DayWindow) -> Quantity:
        return await self._feed("active_energy", self.active_energy)

    async def fetch_exercise_time(self, window: DayWindow) -> Quantity:
        return await self._feed("exercise_time", self.exercise_time)

    async def fetch_stand_samples(self, window: DayWindow) -> list[Quantity]:
        return await self._feed("stand", self.stand_samples)

    async def fetch_steps(self, window: DayWindow) -> float:
        return await self._feed("steps", self.steps)

    async def fetch_distance(self, window: DayWindow) -> Quantity:
        return await self._feed("distance", self.distance)

    async def fetch_heart_rate_samples(self, window: DayWindow) -> list[float]:
        return await self._feed("heart_rate", self.heart_rate)

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        sessions = [w for w in self.workouts if start <= w.start_time < end]
        return await self._feed("workouts", sessions)

    async def fetch_weight(self) -> RawWeight | None:
        return await self._feed("weight", self.weight)

    async def fetch_weight_history(self, days: int = 90) -> list[RawWeight]:
        return await self._feed("weight_history", self.weight_history)

    async def fetch_bmi(self) -> BMISample | None:
        return await self._feed("bmi", self.bmi)


# ---------------------------------------------------------------------------
# Fake backend and store
# ---------------------------------------------------------------------------


class InMemoryBackend(ScoringBackend):
    """Scoring backend double keeping upserts, events and milestones in dicts."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, date], Any] = {}
        self.submit_calls: list[date] = []
        self.events: dict[tuple[str, str, date], dict] = {}
        self.event_checks = 0
        self.milestones: dict[tuple[str, str], int] = {}
        self.reject_days: set[date] = set()
        self.auth_expired = False
        self.event_exists_delay = 0.0

    async def submit_daily_metrics(self, user_id: str, metrics: Any) -> None:
        if self.auth_expired:
            raise AuthExpired()
        self.submit_calls.append(metrics.date)
        if metrics.date in self.reject_days:
            raise BackendRejected("conflict", status_code=409)
        self.rows[(user_id, metrics.date)] = metrics

    async def event_exists(self, user_id: str, event_type: str, day: date) -> bool:
        self.event_checks += 1
        if self.event_exists_delay:
            await asyncio.sleep(self.event_exists_delay)
        return (user_id, event_type, day) in self.events

    async def create_event(self, user_id: str, event_type: str, day: date, payload: dict | None = None) -> None:
        self.events[(user_id, event_type, day)] = payload or {}

    async def milestone_recorded(self, user_id: str, milestone_id: str) -> bool:
        return (user_id, milestone_id) in self.milestones

    async def record_milestone(self, user_id: str, milestone_id: str, day_number: int) -> None:
        self.milestones[(user_id, milestone_id)] = day_number


class MemoryStateStore(StateStore):
    def __init__(self, sections: dict[str, dict] | None = None) -> None:
        self.data: dict[str, dict] = sections or {}
        self.saves = 0

    async def load(self, key: str) -> dict:
        return dict(self.data.get(key, {}))

    async def save(self, key: str, sections: dict) -> None:
        self.saves += 1
        self.data.setdefault(key, {}).update(sections)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Config with no inter-day delay and short deadlines."""
    return build_sync_config(
        {
            "backfill": {"bootstrap_days": 28, "max_catchup_days": 28, "inter_day_delay_ms": 0},
            "deadlines": {
                "connect": 0.5,
                "summary": 0.2,
                "sample": 0.2,
                "workouts": 0.2,
                "weight": 0.2,
                "backend": 0.2,
            },
            "streaks": {
                "lookback_days": 60,
                "milestones": {
                    7: {"id": "streak_7", "name": "One Week Strong", "reward": "badge:week"},
                    30: {"id": "streak_30", "name": "Monthly Momentum", "reward": "badge:month"},
                    100: {"id": "streak_100", "name": "Century Club", "reward": "badge:century"},
                    365: {"id": "streak_365", "name": "Year of Movement", "reward": "badge:year"},
                },
            },
        }
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def engine_state() -> EngineState:
    return EngineState()
