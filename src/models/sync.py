"""Pydantic models for the scoring backend payload and the sync API."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field, ValidationError

from src.healthsync.base import DailyMetrics
from src.healthsync.errors import BackendRejected
from src.models.base import HealthSyncBase


# ---------- Scoring backend ----------

class DailyScoreSubmission(HealthSyncBase):
    """One day's submission to the scoring service, upserted on (userId, date).

    Ranges match the scoring service's own plausibility checks so that an
    implausible day is rejected locally instead of costing a round-trip.
    """

    user_id: str = Field(alias="userId", min_length=1)
    date: date
    move_calories: int = Field(alias="moveCalories", ge=0, le=10000)
    exercise_minutes: int = Field(alias="exerciseMinutes", ge=0, le=1440)
    stand_hours: int = Field(alias="standHours", ge=0, le=24)
    steps: int = Field(ge=0, le=100000)
    distance_meters: float = Field(alias="distanceMeters", ge=0)
    workouts_completed: int = Field(alias="workoutsCompleted", ge=0)

    @classmethod
    def from_metrics(cls, user_id: str, metrics: DailyMetrics) -> "DailyScoreSubmission":
        """Build a submission from reconciled metrics.

        Raises:
            BackendRejected: If any value is outside the accepted range.
        """
        try:
            return cls(
                user_id=user_id,
                date=metrics.date,
                move_calories=metrics.active_calories,
                exercise_minutes=metrics.exercise_minutes,
                stand_hours=metrics.stand_hours,
                steps=metrics.steps,
                distance_meters=metrics.distance_meters,
                workouts_completed=metrics.workouts_completed,
            )
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise BackendRejected(f"Implausible daily values ({fields})") from exc

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------- API: goals ----------

class GoalsRead(HealthSyncBase):
    move_calories: int
    exercise_minutes: int
    stand_hours: int
    steps: int


class GoalsUpdate(HealthSyncBase):
    move_calories: int | None = Field(default=None, gt=0, le=10000)
    exercise_minutes: int | None = Field(default=None, gt=0, le=1440)
    stand_hours: int | None = Field(default=None, gt=0, le=24)
    steps: int | None = Field(default=None, gt=0, le=100000)


class WeightGoalUpdate(HealthSyncBase):
    goal_kg: float = Field(gt=0, le=500)


# ---------- API: metrics / streaks ----------

class DailyMetricsRead(HealthSyncBase):
    date: date
    active_calories: int
    exercise_minutes: int
    stand_hours: int
    steps: int
    distance_meters: float
    heart_rate_avg: int
    workouts_completed: int
    last_updated: datetime
    provider: str
    source: str
    goals: GoalsRead | None = None


class MilestoneRead(HealthSyncBase):
    milestone_id: str
    day_number: int
    reward_descriptor: str
    name: str = ""


class StreakRead(HealthSyncBase):
    current_streak_days: int
    longest_streak_days: int
    next_milestone_days: int | None = None
    days_to_next_milestone: int | None = None


# ---------- API: sync control ----------

class ProviderStatus(HealthSyncBase):
    provider_id: str
    display_name: str
    available: bool
    connected: bool
    last_sync_timestamp: datetime | None = None


class SyncStatusRead(HealthSyncBase):
    active_provider: str | None
    is_syncing: bool
    last_sync_error: str | None
    providers: list[ProviderStatus]


class SyncRunRequest(HealthSyncBase):
    user_id: str | None = None
    show_progress_indicator: bool = False


class SyncRunResult(HealthSyncBase):
    provider_id: str | None
    status: str
    days_synced: list[date] = Field(default_factory=list)
    days_failed: list[date] = Field(default_factory=list)
    error: str | None = None
    synced_at: datetime


class ConnectResult(HealthSyncBase):
    provider_id: str
    connected: bool
    error: str | None = None
