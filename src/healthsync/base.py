"""Base classes and canonical data models for the health sync engine.

Every provider adapter must subclass HealthProviderAdapter.  Adapters return
raw quantities in the provider's own units (``Quantity``); the metrics
reconciler normalizes them into the canonical ``DailyMetrics`` record, which
is the single source of truth consumed by the backfill engine, derived-event
detector, and API layer.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone, tzinfo
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.healthsync.config_loader import SyncConfig

logger = logging.getLogger("healthsync")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def local_now(tz: tzinfo | None = None) -> datetime:
    """Return the current time as a timezone-aware datetime.

    Args:
        tz: Device timezone.  When None the host's local zone is used.
    """
    if tz is None:
        return datetime.now().astimezone()
    return datetime.now(tz)


@dataclass(frozen=True)
class DayWindow:
    """Half-open query window ``[start, end)`` covering one local calendar day.

    For today ``end`` is "now"; for historical days it is 23:59:59 local so the
    provider's totals cover the whole day.

    Attributes:
        day:   Local calendar date.
        start: Local midnight at the start of ``day`` (tz-aware).
        end:   Effective end of the window (tz-aware).
    """

    day: date
    start: datetime
    end: datetime

    @classmethod
    def for_day(cls, day: date, now: datetime) -> "DayWindow":
        """Build the window for ``day`` as seen from local time ``now``.

        Raises:
            ValueError: If ``day`` is in the future relative to ``now``.
        """
        tz = now.tzinfo
        today = now.date()
        if day > today:
            raise ValueError(f"Cannot build a window for future day {day} (today is {today})")
        start = datetime.combine(day, time.min, tzinfo=tz)
        if day == today:
            end = now
        else:
            end = datetime.combine(day, time(23, 59, 59), tzinfo=tz)
        return cls(day=day, start=start, end=end)


# ---------------------------------------------------------------------------
# Raw provider values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quantity:
    """A raw measurement in the provider's unit, e.g. ``Quantity(3.1, "mi")``."""

    value: float
    unit: str

    @classmethod
    def zero(cls, unit: str) -> "Quantity":
        return cls(0.0, unit)


@dataclass(frozen=True)
class ActivitySummary:
    """A provider's authoritative per-day activity totals.

    Matches what the provider's first-party app displays.  Goal fields share
    the unit of their metric (``move_goal`` is in ``active_energy.unit``,
    ``exercise_goal`` in ``exercise_time.unit``) and are None when the provider
    does not report them.

    Attributes:
        active_energy: Active energy burned.
        exercise_time: Exercise duration.
        stand_hours:   Hours with at least one minute of standing.
        move_goal:     Move (active energy) goal.
        exercise_goal: Exercise duration goal.
        stand_goal:    Stand hours goal.
    """

    active_energy: Quantity
    exercise_time: Quantity
    stand_hours: float
    move_goal: float | None = None
    exercise_goal: float | None = None
    stand_goal: float | None = None

    def is_valid(self) -> bool:
        """Return False when any ring value is negative or not a finite number."""
        for value in (self.active_energy.value, self.exercise_time.value, self.stand_hours):
            if value is None or not math.isfinite(value) or value < 0:
                return False
        return True


# ---------------------------------------------------------------------------
# Canonical models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GoalSet:
    """The user's daily ring and step targets.

    Attributes:
        move_calories:    Active-energy goal in kcal.
        exercise_minutes: Exercise goal in minutes.
        stand_hours:      Stand goal in hours.
        steps:            Step goal.
    """

    move_calories: int = 500
    exercise_minutes: int = 30
    stand_hours: int = 12
    steps: int = 10000

    @classmethod
    def from_provider(
        cls,
        move_calories: float | None,
        exercise_minutes: float | None,
        stand_hours: float | None,
        steps: int,
    ) -> "GoalSet | None":
        """Build a GoalSet from provider-reported goals, all-or-nothing.

        The provider never supplies a step goal, so ``steps`` comes from the
        caller's stored GoalSet.

        Returns:
            A GoalSet if move, exercise and stand goals are all strictly
            positive, otherwise None (the stored GoalSet must be kept).
        """
        values = (move_calories, exercise_minutes, stand_hours)
        if any(v is None or not math.isfinite(v) or v <= 0 for v in values):
            return None
        return cls(
            move_calories=int(round(move_calories)),
            exercise_minutes=int(round(exercise_minutes)),
            stand_hours=int(round(stand_hours)),
            steps=steps,
        )

    def to_json(self) -> dict:
        return {
            "move_calories": self.move_calories,
            "exercise_minutes": self.exercise_minutes,
            "stand_hours": self.stand_hours,
            "steps": self.steps,
        }

    @classmethod
    def from_json(cls, data: dict) -> "GoalSet":
        """Load from persisted JSON, using defaults for missing or non-positive fields."""
        defaults = cls()
        kwargs: dict[str, int] = {}
        for name in ("move_calories", "exercise_minutes", "stand_hours", "steps"):
            value = HealthProviderAdapter._safe_int(data.get(name))
            kwargs[name] = value if value and value > 0 else getattr(defaults, name)
        return cls(**kwargs)


@dataclass(frozen=True)
class DailyMetrics:
    """One user-day's reconciled activity snapshot.

    Created by the reconciler and never mutated; a re-sync replaces it.
    All units are canonical: kcal, minutes, hours, meters, bpm.

    Attributes:
        date:               Local calendar date described.
        active_calories:    Active energy in kcal (move ring).
        exercise_minutes:   Exercise minutes (exercise ring).
        stand_hours:        Stand hours (stand ring).
        steps:              Step count.
        distance_meters:    Walking/running distance in meters.
        heart_rate_avg:     Average heart rate in bpm (0 when unknown).
        workouts_completed: Number of workouts started in the window.
        last_updated:       When the snapshot was assembled (tz-aware).
        provider:           Provider slug.
        source:             'summary' or 'samples', whichever supplied the ring values.
        goals:              Provider goals, present only if valid.
    """

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
    source: str = "summary"
    goals: GoalSet | None = None

    def to_json(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "active_calories": self.active_calories,
            "exercise_minutes": self.exercise_minutes,
            "stand_hours": self.stand_hours,
            "steps": self.steps,
            "distance_meters": self.distance_meters,
            "heart_rate_avg": self.heart_rate_avg,
            "workouts_completed": self.workouts_completed,
            "last_updated": self.last_updated.isoformat(),
            "provider": self.provider,
            "source": self.source,
            "goals": self.goals.to_json() if self.goals else None,
        }


@dataclass(frozen=True)
class WorkoutSession:
    """A single workout fetched from a provider.

    Attributes:
        id:               Provider-scoped id, or "" if the provider has none.
        type:             Canonical workout type slug.
        start_time:       Start timestamp (tz-aware).
        end_time:         End timestamp (tz-aware).
        duration_minutes: Duration in whole minutes.
        calories:         Energy burned in kcal.
        distance_meters:  Distance covered, if reported.
        provider:         Provider slug.
        source:           Recording app or device, e.g. "Apple Watch".
    """

    id: str
    type: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    calories: int
    distance_meters: float | None = None
    provider: str = "unknown"
    source: str | None = None

    @property
    def identity(self) -> str:
        """Stable identity: the provider id, or a (start, end) composite."""
        if self.id:
            return self.id
        return f"{self.start_time.isoformat()}/{self.end_time.isoformat()}"

    def local_day(self, tz: tzinfo | None) -> date:
        """Calendar day the session started on, in the device timezone."""
        start = self.start_time
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return start.astimezone(tz).date() if tz else start.astimezone().date()


@dataclass(frozen=True)
class WeightSample:
    """A body-weight reading normalized to kilograms."""

    value_kg: float
    measured_at: datetime

    def to_json(self) -> dict:
        return {"value_kg": self.value_kg, "measured_at": self.measured_at.isoformat()}


@dataclass(frozen=True)
class BMISample:
    """A body-mass-index reading."""

    value: float
    measured_at: datetime

    def to_json(self) -> dict:
        return {"value": self.value, "measured_at": self.measured_at.isoformat()}


@dataclass(frozen=True)
class RawWeight:
    """A weight reading in the provider's unit, before normalization."""

    quantity: Quantity
    measured_at: datetime


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class HealthProviderAdapter(ABC):
    """Abstract base class for all health data providers.

    Each provider adapter implements this interface to give the reconciler and
    orchestrator a uniform capability set.  Adapters perform no backend calls
    and no unit conversion.

    Subclasses must implement:
        - is_available()
        - request_access()
        - fetch_activity_summary()
        - fetch_active_energy()
        - fetch_exercise_time()
        - fetch_stand_samples()
        - fetch_steps()
        - fetch_distance()
        - fetch_heart_rate_samples()
        - fetch_workouts()

    Optional overrides (return None / [] by default):
        - fetch_weight()
        - fetch_weight_history()
        - fetch_bmi()
    """

    #: Unique slug, e.g. 'apple_health', 'oura'.
    PROVIDER_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    def __init__(self) -> None:
        self._authorized = False

    @property
    def authorized(self) -> bool:
        return self._authorized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if this provider can run here.

        Pure capability check (platform, configuration).  Never performs I/O.
        """

    @abstractmethod
    async def request_access(self) -> bool:
        """Run the one-time authorization handshake.

        Returns:
            True if access was granted, False on denial.  Must not raise for
            a denial.
        """

    async def connect(self) -> bool:
        """Authorize the adapter.  Idempotent.

        Returns True immediately if already authorized; otherwise delegates to
        ``request_access``.
        """
        if self._authorized:
            return True
        if not self.is_available():
            logger.info("%s: not available, cannot connect", self.PROVIDER_ID)
            return False
        self._authorized = await self.request_access()
        logger.info("%s: connect -> %s", self.PROVIDER_ID, self._authorized)
        return self._authorized

    async def disconnect(self) -> None:
        self._authorized = False
        logger.info("%s: disconnected", self.PROVIDER_ID)

    # ------------------------------------------------------------------
    # Reconciled metrics
    # ------------------------------------------------------------------

    async def fetch_metrics(
        self,
        day: date,
        now: datetime | None = None,
        stored_goals: GoalSet | None = None,
        config: SyncConfig | None = None,
    ) -> DailyMetrics | None:
        """Fetch one day's reconciled metrics.

        Absence of data is a valid zero-valued result; None is returned only
        when the provider could not be reached at all.

        Args:
            day:          Local calendar date.
            now:          Current local time (defaults to the host clock).
            stored_goals: The caller's stored goals (supplies the step goal).
            config:       Engine config for deadlines (defaults to the loaded one).
        """
        from src.healthsync.reconciler import MetricsReconciler

        clock = (lambda: now) if now is not None else None
        return await MetricsReconciler(self, config=config, clock=clock).reconcile(day, stored_goals)

    # ------------------------------------------------------------------
    # Raw feeds consumed by the reconciler
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_activity_summary(self, window: DayWindow) -> ActivitySummary | None:
        """Return the authoritative daily summary, or None if the provider has none."""

    @abstractmethod
    async def fetch_active_energy(self, window: DayWindow) -> Quantity:
        """Sum of active-energy samples in the window."""

    @abstractmethod
    async def fetch_exercise_time(self, window: DayWindow) -> Quantity:
        """Sum of exercise-time samples in the window."""

    @abstractmethod
    async def fetch_stand_samples(self, window: DayWindow) -> list[Quantity]:
        """Per-hour standing durations in the window, one entry per hour bucket."""

    @abstractmethod
    async def fetch_steps(self, window: DayWindow) -> float:
        """Step count in the window."""

    @abstractmethod
    async def fetch_distance(self, window: DayWindow) -> Quantity:
        """Walking/running distance in the window."""

    @abstractmethod
    async def fetch_heart_rate_samples(self, window: DayWindow) -> list[float]:
        """Heart-rate samples (bpm) in the window."""

    @abstractmethod
    async def fetch_workouts(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        """Workouts that started in ``[start, end)``."""

    async def fetch_workout_count(self, window: DayWindow) -> int:
        """Number of workouts started in the window."""
        return len(await self.fetch_workouts(window.start, window.end))

    # ------------------------------------------------------------------
    # Optional overrides: body measurements
    # ------------------------------------------------------------------

    async def fetch_weight(self) -> RawWeight | None:
        """Most recent body-weight reading, or None if unsupported."""
        return None

    async def fetch_weight_history(self, days: int = 90) -> list[RawWeight]:
        """Body-weight readings over the last ``days`` days, oldest first."""
        return []

    async def fetch_bmi(self) -> BMISample | None:
        """Most recent BMI reading, or None if unsupported."""
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: Any) -> datetime | None:
        """Parse an ISO-8601 string to a tz-aware datetime.

        Naive strings are assumed UTC.  Returns None if unparseable.
        """
        if not value or not isinstance(value, str):
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    @staticmethod
    def _iso(dt: datetime) -> str:
        """Format a datetime for provider query strings."""
        return dt.isoformat()
