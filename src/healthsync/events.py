"""Derived events: rings closed and personal records.

Runs once per sync, for today, after reconciliation.  Rings-closed is
evaluated first and is recorded at most once per user per day: an in-process
cache skips repeat checks, and the backend existence query is authoritative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from src.healthsync.base import DailyMetrics, GoalSet
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.deadline import with_deadline
from src.healthsync.state import PersonalRecordState
from src.healthsync.sync.dedup import InMemoryDedupCache, event_key
from src.services.scoring import ScoringBackend

logger = logging.getLogger("healthsync.events")

RINGS_CLOSED = "rings_closed"


@dataclass(frozen=True)
class RingProgress:
    """Progress ratios for the three rings.

    Attributes:
        move:     active_calories / move goal.
        exercise: exercise_minutes / exercise goal.
        stand:    stand_hours / stand goal.
    """

    move: float
    exercise: float
    stand: float

    @classmethod
    def from_metrics(cls, metrics: DailyMetrics, goals: GoalSet) -> "RingProgress":
        return cls(
            move=_ratio(metrics.active_calories, goals.move_calories),
            exercise=_ratio(metrics.exercise_minutes, goals.exercise_minutes),
            stand=_ratio(metrics.stand_hours, goals.stand_hours),
        )

    @property
    def closed_rings(self) -> list[str]:
        return [name for name in ("move", "exercise", "stand") if getattr(self, name) >= 1.0]

    @property
    def all_closed(self) -> bool:
        return len(self.closed_rings) == 3


def _ratio(value: float, goal: float) -> float:
    return value / goal if goal > 0 else 0.0


@dataclass(frozen=True)
class RecordUpdate:
    """One personal record that was beaten."""

    record: str
    previous: int
    value: int


def update_personal_records(
    records: PersonalRecordState, metrics: DailyMetrics, weekly_workouts: int | None = None
) -> tuple[PersonalRecordState, list[RecordUpdate]]:
    """Return the new records and the list of records beaten.

    A record only moves on a strict exceed; ties change nothing.
    """
    candidates = {
        "max_daily_calories": metrics.active_calories,
        "max_daily_steps": metrics.steps,
    }
    if weekly_workouts is not None:
        candidates["max_weekly_workouts"] = weekly_workouts

    changes: dict[str, int] = {}
    updates: list[RecordUpdate] = []
    for name, value in candidates.items():
        current = getattr(records, name)
        if value > current:
            changes[name] = value
            updates.append(RecordUpdate(record=name, previous=current, value=value))
    if not changes:
        return records, []
    return replace(records, **changes), updates


class DerivedEventDetector:
    """Detect and record derived events for one user-day.

    Args:
        backend: Scoring backend (existence check and create).
        config:  Engine config (backend deadline).
        dedup:   In-process cache shared for the engine's lifetime.
    """

    def __init__(
        self,
        backend: ScoringBackend,
        config: SyncConfig | None = None,
        dedup: InMemoryDedupCache | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or get_sync_config()
        self._dedup = dedup or InMemoryDedupCache()

    async def check_rings_closed(self, user_id: str, metrics: DailyMetrics, goals: GoalSet) -> RingProgress:
        """Record a rings-closed event if all three rings are closed.

        Returns the ring progress either way.  If the existence check cannot
        complete in time, no event is created.
        """
        progress = RingProgress.from_metrics(metrics, goals)
        if not progress.all_closed:
            return progress

        key = event_key(user_id, RINGS_CLOSED, metrics.date)
        if self._dedup.is_seen(key):
            logger.debug("Rings-closed already handled for %s on %s", user_id, metrics.date)
            return progress

        timeout = self._config.deadlines.backend
        exists = await with_deadline(
            self._backend.event_exists(user_id, RINGS_CLOSED, metrics.date),
            timeout,
            None,
            label="event_exists",
        )
        if exists is None:
            logger.warning("Rings-closed check timed out for %s on %s, skipping", user_id, metrics.date)
            return progress
        if not exists:
            created = await with_deadline(
                self._create(user_id, metrics), timeout, False, label="create_event"
            )
            if not created:
                return progress
            logger.info("All rings closed for %s on %s", user_id, metrics.date)
        self._dedup.mark_seen(key)
        return progress

    async def _create(self, user_id: str, metrics: DailyMetrics) -> bool:
        await self._backend.create_event(
            user_id,
            RINGS_CLOSED,
            metrics.date,
            {
                "moveCalories": metrics.active_calories,
                "exerciseMinutes": metrics.exercise_minutes,
                "standHours": metrics.stand_hours,
            },
        )
        return True
