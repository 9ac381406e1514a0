"""Persistent engine state.

``EngineState`` owns every entity that survives a restart.  It is persisted as
independent named sections so that one corrupt section cannot take the others
down with it: ``from_sections`` parses each one separately and falls back to
its default (with a warning) when parsing fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

from src.healthsync.base import GoalSet, HealthProviderAdapter, WeightSample

logger = logging.getLogger("healthsync.state")

_parse_dt = HealthProviderAdapter._parse_iso_datetime


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


# ---------------------------------------------------------------------------
# Per-provider records
# ---------------------------------------------------------------------------


@dataclass
class ProviderConnection:
    """Connection record for one known provider.

    Created disconnected for every known provider and never deleted;
    disconnecting only flips ``connected``.
    """

    provider_id: str
    connected: bool = False
    last_sync_timestamp: datetime | None = None

    def to_json(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "connected": self.connected,
            "last_sync_timestamp": _iso(self.last_sync_timestamp),
        }

    @classmethod
    def from_json(cls, data: dict) -> "ProviderConnection":
        return cls(
            provider_id=str(data["provider_id"]),
            connected=bool(data.get("connected", False)),
            last_sync_timestamp=_parse_dt(data.get("last_sync_timestamp")),
        )


@dataclass
class SyncCursor:
    """Backfill progress for one provider.

    Attributes:
        last_sync_timestamp:   Local time of the last successful day submission, or the
                               start of the oldest day a run failed to submit.
        initial_backfill_done: True once the bootstrap window has been submitted.
    """

    last_sync_timestamp: datetime | None = None
    initial_backfill_done: bool = False

    def to_json(self) -> dict:
        return {
            "last_sync_timestamp": _iso(self.last_sync_timestamp),
            "initial_backfill_done": self.initial_backfill_done,
        }

    @classmethod
    def from_json(cls, data: dict) -> "SyncCursor":
        return cls(
            last_sync_timestamp=_parse_dt(data.get("last_sync_timestamp")),
            initial_backfill_done=bool(data.get("initial_backfill_done", False)),
        )


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersonalRecordState:
    """Best-ever values.  Each field only ever increases."""

    max_daily_calories: int = 0
    max_daily_steps: int = 0
    max_weekly_workouts: int = 0

    def to_json(self) -> dict:
        return {
            "max_daily_calories": self.max_daily_calories,
            "max_daily_steps": self.max_daily_steps,
            "max_weekly_workouts": self.max_weekly_workouts,
        }

    @classmethod
    def from_json(cls, data: dict) -> "PersonalRecordState":
        return cls(
            max_daily_calories=max(0, int(data.get("max_daily_calories", 0))),
            max_daily_steps=max(0, int(data.get("max_daily_steps", 0))),
            max_weekly_workouts=max(0, int(data.get("max_weekly_workouts", 0))),
        )


@dataclass
class StreakState:
    """Stored streak.  ``last_active_day`` is the newest day the count includes."""

    current_streak_days: int = 0
    longest_streak_days: int = 0
    last_active_day: date | None = None

    def to_json(self) -> dict:
        return {
            "current_streak_days": self.current_streak_days,
            "longest_streak_days": self.longest_streak_days,
            "last_active_day": self.last_active_day.isoformat() if self.last_active_day else None,
        }

    @classmethod
    def from_json(cls, data: dict) -> "StreakState":
        last_active = data.get("last_active_day")
        return cls(
            current_streak_days=max(0, int(data.get("current_streak_days", 0))),
            longest_streak_days=max(0, int(data.get("longest_streak_days", 0))),
            last_active_day=date.fromisoformat(last_active) if last_active else None,
        )


@dataclass(frozen=True)
class MilestoneEvent:
    """A streak milestone queued for one-time presentation."""

    milestone_id: str
    day_number: int
    reward_descriptor: str
    name: str = ""

    def to_json(self) -> dict:
        return {
            "milestone_id": self.milestone_id,
            "day_number": self.day_number,
            "reward_descriptor": self.reward_descriptor,
            "name": self.name,
        }

    @classmethod
    def from_json(cls, data: dict) -> "MilestoneEvent":
        return cls(
            milestone_id=str(data["milestone_id"]),
            day_number=int(data["day_number"]),
            reward_descriptor=str(data.get("reward_descriptor", "")),
            name=str(data.get("name", "")),
        )


@dataclass
class WeightState:
    """Latest weight, history and target, all in kilograms."""

    current: WeightSample | None = None
    history: list[WeightSample] = field(default_factory=list)
    goal_kg: float | None = None
    bmi: float | None = None

    def to_json(self) -> dict:
        return {
            "current": self.current.to_json() if self.current else None,
            "history": [s.to_json() for s in self.history],
            "goal_kg": self.goal_kg,
            "bmi": self.bmi,
        }

    @classmethod
    def from_json(cls, data: dict) -> "WeightState":
        def _sample(raw: dict | None) -> WeightSample | None:
            if not raw:
                return None
            measured_at = _parse_dt(raw.get("measured_at"))
            if measured_at is None:
                return None
            return WeightSample(value_kg=float(raw["value_kg"]), measured_at=measured_at)

        history = [s for s in (_sample(r) for r in data.get("history") or []) if s]
        goal = data.get("goal_kg")
        bmi = data.get("bmi")
        return cls(
            current=_sample(data.get("current")),
            history=history,
            goal_kg=float(goal) if goal is not None else None,
            bmi=float(bmi) if bmi is not None else None,
        )


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

SECTIONS = (
    "connections",
    "cursors",
    "active_provider",
    "goals",
    "personal_records",
    "streak",
    "weight",
    "pending_milestones",
)


@dataclass
class EngineState:
    """Everything the orchestrator persists.

    Attributes:
        connections:        provider_id → ProviderConnection.
        cursors:            provider_id → SyncCursor.
        active_provider:    Provider the user last connected, if any.
        goals:              Current GoalSet.
        personal_records:   Best-ever values.
        streak:             Last computed streak.
        weight:             Weight readings and target.
        pending_milestones: Milestones awaiting presentation.
    """

    connections: dict[str, ProviderConnection] = field(default_factory=dict)
    cursors: dict[str, SyncCursor] = field(default_factory=dict)
    active_provider: str | None = None
    goals: GoalSet = field(default_factory=GoalSet)
    personal_records: PersonalRecordState = field(default_factory=PersonalRecordState)
    streak: StreakState = field(default_factory=StreakState)
    weight: WeightState = field(default_factory=WeightState)
    pending_milestones: list[MilestoneEvent] = field(default_factory=list)

    def ensure_providers(self, provider_ids: list[str]) -> None:
        """Create a disconnected record and empty cursor for each unseen provider."""
        for provider_id in provider_ids:
            self.connections.setdefault(provider_id, ProviderConnection(provider_id))
            self.cursors.setdefault(provider_id, SyncCursor())

    def cursor(self, provider_id: str) -> SyncCursor:
        return self.cursors.setdefault(provider_id, SyncCursor())

    def connection(self, provider_id: str) -> ProviderConnection:
        return self.connections.setdefault(provider_id, ProviderConnection(provider_id))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_sections(self) -> dict[str, Any]:
        return {
            "connections": {k: v.to_json() for k, v in self.connections.items()},
            "cursors": {k: v.to_json() for k, v in self.cursors.items()},
            "active_provider": self.active_provider,
            "goals": self.goals.to_json(),
            "personal_records": self.personal_records.to_json(),
            "streak": self.streak.to_json(),
            "weight": self.weight.to_json(),
            "pending_milestones": [m.to_json() for m in self.pending_milestones],
        }

    @classmethod
    def from_sections(cls, sections: dict[str, Any], default_goals: GoalSet | None = None) -> "EngineState":
        """Rebuild state from persisted sections.

        Missing sections take their defaults silently; sections that fail to
        parse take their defaults with a warning.
        """
        state = cls(goals=default_goals or GoalSet())

        parsers: dict[str, Callable[[Any], None]] = {
            "connections": lambda raw: setattr(
                state,
                "connections",
                {k: ProviderConnection.from_json(v) for k, v in raw.items()},
            ),
            "cursors": lambda raw: setattr(
                state, "cursors", {k: SyncCursor.from_json(v) for k, v in raw.items()}
            ),
            "active_provider": lambda raw: setattr(
                state, "active_provider", str(raw) if raw else None
            ),
            "goals": lambda raw: setattr(state, "goals", GoalSet.from_json(raw)),
            "personal_records": lambda raw: setattr(
                state, "personal_records", PersonalRecordState.from_json(raw)
            ),
            "streak": lambda raw: setattr(state, "streak", StreakState.from_json(raw)),
            "weight": lambda raw: setattr(state, "weight", WeightState.from_json(raw)),
            "pending_milestones": lambda raw: setattr(
                state, "pending_milestones", [MilestoneEvent.from_json(m) for m in raw]
            ),
        }

        for name, parse in parsers.items():
            if name not in sections or sections[name] is None:
                continue
            try:
                parse(sections[name])
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("State section %r is corrupt (%s), using defaults", name, exc)
        return state
