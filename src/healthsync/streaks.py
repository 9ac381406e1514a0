"""Activity streaks and streak milestones.

An activity day is a local calendar day with at least one workout session.
The current streak walks backwards from today:

- today without a session is skipped, neither counted nor breaking the streak
  (the user may still work out later);
- any other missing day ends the walk.

Sessions are only fetched for the lookback window.  When every day in it is
active, the stored streak is carried forward instead of capping the count.

Milestones (7, 30, 100, 365 days by default) fire when the new streak is
strictly greater than the stored one and lands exactly on a milestone, and
are recorded in the backend at most once per user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Iterable

from src.healthsync.base import HealthProviderAdapter, WorkoutSession, local_now
from src.healthsync.config_loader import Milestone, SyncConfig, get_sync_config
from src.healthsync.deadline import with_deadline
from src.healthsync.state import MilestoneEvent, StreakState
from src.healthsync.sync.dedup import InMemoryDedupCache, milestone_key
from src.services.scoring import ScoringBackend

logger = logging.getLogger("healthsync.streaks")


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def activity_days(sessions: Iterable[WorkoutSession], tz: tzinfo | None) -> set[date]:
    """Distinct local days on which at least one session started."""
    return {session.local_day(tz) for session in sessions}


def compute_streak(days: set[date], today: date, lookback_days: int = 60) -> int:
    """Length of the current streak ending today (or yesterday).

    >>> t = date(2024, 5, 10)
    >>> compute_streak({t, t - timedelta(1), t - timedelta(2), t - timedelta(5)}, t)
    3
    >>> compute_streak({t - timedelta(1), t - timedelta(2)}, t)
    2
    """
    streak = 0
    for offset in range(lookback_days):
        day = today - timedelta(days=offset)
        if day in days:
            streak += 1
        elif offset == 0:
            continue
        else:
            break
    return streak


def extend_streak(window_streak: int, today: date, lookback_days: int, previous: StreakState) -> int:
    """Carry a streak past the lookback window using the stored count.

    Only applies when every day of the window is active.  The stored streak
    must end inside the window (or the day before it) to be contiguous.

    >>> t = date(2024, 5, 10)
    >>> extend_streak(60, t, 60, StreakState(99, 99, t - timedelta(1)))
    100
    >>> extend_streak(60, t, 60, StreakState(99, 99, t - timedelta(90)))
    60
    """
    if window_streak < lookback_days or previous.last_active_day is None:
        return window_streak
    gap = (today - previous.last_active_day).days
    if gap < 0 or gap > lookback_days:
        return window_streak
    return max(window_streak, previous.current_streak_days + gap)


def longest_run(days: set[date]) -> int:
    """Longest run of consecutive days in ``days``."""
    best = 0
    for day in days:
        if day - timedelta(days=1) in days:
            continue
        length = 1
        while day + timedelta(days=length) in days:
            length += 1
        best = max(best, length)
    return best


def crossed_milestone(previous: int, current: int, milestones: list[Milestone]) -> Milestone | None:
    """Milestone reached by moving from ``previous`` to ``current``, if any."""
    if current <= previous:
        return None
    for milestone in milestones:
        if milestone.days == current:
            return milestone
    return None


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreakResult:
    """Outcome of one streak evaluation.

    Attributes:
        current_streak_days:  Current streak length.
        longest_streak_days:  Longest run inside the lookback window.
        next_milestone:       Next milestone beyond the current streak, if any.
        days_to_next:         Days until ``next_milestone``.
        weekly_workouts:      Sessions started in the trailing 7 days.
        milestone:            Milestone newly reached by this evaluation.
        last_active_day:      Newest day the current streak includes.
    """

    current_streak_days: int
    longest_streak_days: int
    next_milestone: Milestone | None
    days_to_next: int | None
    weekly_workouts: int
    milestone: MilestoneEvent | None = None
    last_active_day: date | None = None

    def to_state(self, previous: StreakState) -> StreakState:
        return StreakState(
            current_streak_days=self.current_streak_days,
            longest_streak_days=max(previous.longest_streak_days, self.longest_streak_days, self.current_streak_days),
            last_active_day=self.last_active_day,
        )


class StreakCalculator:
    """Fetch recent sessions and evaluate the streak for one user.

    Args:
        adapter: Provider adapter supplying workout sessions.
        backend: Scoring backend, used for the milestone existence check.
        config:  Engine config (lookback window, milestones, deadlines).
        clock:   Returns the current tz-aware local time.
        dedup:   Cache of milestones already settled in this process.
    """

    def __init__(
        self,
        adapter: HealthProviderAdapter,
        backend: ScoringBackend | None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        dedup: InMemoryDedupCache | None = None,
    ) -> None:
        self._adapter = adapter
        self._backend = backend
        self._config = config or get_sync_config()
        self._clock = clock or local_now
        self._dedup = dedup or InMemoryDedupCache()

    async def calculate(self, user_id: str | None, previous: StreakState) -> StreakResult | None:
        """Recompute the streak.

        Returns:
            The new StreakResult, or None if sessions could not be fetched
            (the caller keeps the previous streak).
        """
        now = self._clock()
        tz = now.tzinfo
        today = now.date()
        lookback = self._config.streaks.lookback_days
        start = datetime.combine(today - timedelta(days=lookback - 1), time.min, tzinfo=tz)

        try:
            sessions = await with_deadline(
                self._adapter.fetch_workouts(start, now),
                self._config.deadlines.workouts,
                None,
                label=f"{self._adapter.PROVIDER_ID}.workouts",
            )
        except Exception as exc:
            logger.warning("Streak: workout fetch failed for %s: %s", self._adapter.PROVIDER_ID, exc)
            return None
        if sessions is None:
            return None

        days = activity_days(sessions, tz)
        current = extend_streak(compute_streak(days, today, lookback), today, lookback, previous)
        last_active = (today if today in days else today - timedelta(days=1)) if current else None
        week_start = datetime.combine(today - timedelta(days=6), time.min, tzinfo=tz)
        weekly = sum(1 for s in sessions if s.start_time >= week_start)
        upcoming = self._config.next_milestone(current)

        milestone_event = None
        reached = crossed_milestone(previous.current_streak_days, current, self._config.streaks.milestones)
        if reached is not None:
            milestone_event = await self._award(user_id, reached, current)

        logger.info("Streak for %s: %d day(s) (was %d)", user_id or "local", current, previous.current_streak_days)
        return StreakResult(
            current_streak_days=current,
            longest_streak_days=longest_run(days),
            next_milestone=upcoming,
            days_to_next=(upcoming.days - current) if upcoming else None,
            weekly_workouts=weekly,
            milestone=milestone_event,
            last_active_day=last_active,
        )

    async def _award(self, user_id: str | None, milestone: Milestone, day_number: int) -> MilestoneEvent | None:
        """Record the milestone unless the backend already has it.

        Without a user or backend the milestone is queued locally only.
        """
        event = MilestoneEvent(
            milestone_id=milestone.id,
            day_number=day_number,
            reward_descriptor=milestone.reward,
            name=milestone.name,
        )
        if user_id is None or self._backend is None:
            return event

        key = milestone_key(user_id, milestone.id)
        if self._dedup.is_seen(key):
            return None

        timeout = self._config.deadlines.backend
        try:
            exists = await with_deadline(
                self._backend.milestone_recorded(user_id, milestone.id), timeout, None, label="milestone_recorded"
            )
            if exists is None:
                logger.info("Milestone %s check timed out for %s, skipping", milestone.id, user_id)
                return None
            if exists:
                logger.info("Milestone %s already recorded for %s", milestone.id, user_id)
                self._dedup.mark_seen(key)
                return None
            recorded = await with_deadline(
                self._record(user_id, milestone.id, day_number), timeout, False, label="record_milestone"
            )
        except Exception as exc:
            logger.warning("Milestone %s not recorded for %s: %s", milestone.id, user_id, exc)
            return None
        if not recorded:
            logger.info("Milestone %s record timed out for %s, skipping", milestone.id, user_id)
            return None
        self._dedup.mark_seen(key)
        logger.info("Milestone %s reached by %s", milestone.id, user_id)
        return event

    async def _record(self, user_id: str, milestone_id: str, day_number: int) -> bool:
        await self._backend.record_milestone(user_id, milestone_id, day_number)
        return True
